"""
Unit tests for guaranteed cleanup.
"""
import signal

import pytest

from dockgraph.exceptions import EngineError
from dockgraph.MANAGERS.resource_guard import ResourceGuard


def test_cleanups_run_in_reverse_order_once():
    calls = []
    guard = ResourceGuard()
    guard.register("first", lambda: calls.append("first"))
    guard.register("second", lambda: calls.append("second"))
    guard.cleanup()
    guard.cleanup()
    assert calls == ["second", "first"]


def test_cleanup_on_exception():
    calls = []
    with pytest.raises(RuntimeError):
        with ResourceGuard() as guard:
            guard.register("network", lambda: calls.append("network"))
            guard.register("container", lambda: calls.append("container"))
            raise RuntimeError("interrupted")
    assert calls == ["container", "network"]


def test_failing_cleanup_does_not_stop_the_others():
    calls = []

    def broken():
        raise EngineError("engine went away")

    with ResourceGuard() as guard:
        guard.register("volume", lambda: calls.append("volume"))
        guard.register("container", broken)
    assert calls == ["volume"]


def test_signal_handlers_are_restored():
    before = signal.getsignal(signal.SIGTERM)
    with ResourceGuard() as guard:
        assert signal.getsignal(signal.SIGTERM) == guard._handle_signal
    assert signal.getsignal(signal.SIGTERM) == before


def test_signal_runs_cleanup():
    calls = []
    guard = ResourceGuard()
    guard.register("container", lambda: calls.append("container"))
    with pytest.raises(KeyboardInterrupt):
        guard._handle_signal(signal.SIGINT, None)
    assert calls == ["container"]
    with pytest.raises(SystemExit) as excinfo:
        guard._handle_signal(signal.SIGTERM, None)
    assert excinfo.value.code == 128 + signal.SIGTERM
