"""
Shared fixtures: a command runner that records commands instead of running them.
"""
import logging
from typing import Callable, List, Optional

import pytest

from dockgraph.exceptions import CommandError
from dockgraph.RUNNERS.docker_cli import DockerCli
from dockgraph.RUNNERS.process_runner import CommandResult


class FakeRunner:
    """
    Answers commands from rules matched on a command prefix. The most recently
    added matching rule wins; unmatched commands succeed without output.
    """
    def __init__(self):
        self.commands: List[List[str]] = []
        self.calls: List[dict] = []
        self.rules = []

    def on(self, *prefix: str, returncode: int = 0, output: str = "",
           action: Optional[Callable[[List[str]], None]] = None) -> "FakeRunner":
        self.rules.append((list(prefix), returncode, output, action))
        return self

    def run(self, command, cwd=None, env=None, input=None, timeout=None, check=True,
            stdin=None, stdout=None, log_level=logging.INFO):
        command = [str(c) for c in command]
        self.commands.append(command)
        self.calls.append({"command": command, "cwd": cwd, "env": env, "input": input, "timeout": timeout})
        result = CommandResult(command=command, returncode=0)
        for prefix, returncode, output, action in reversed(self.rules):
            if command[:len(prefix)] == prefix:
                if action is not None:
                    action(command)
                result = CommandResult(command=command, returncode=returncode, output=output)
                break
        if check and not result.ok:
            raise CommandError(command, result.returncode, result.output)
        return result

    def ran(self, *prefix: str) -> List[List[str]]:
        """Every recorded command starting with `prefix`."""
        return [c for c in self.commands if c[:len(prefix)] == list(prefix)]

    def index(self, *prefix: str) -> int:
        """Position of the first recorded command starting with `prefix`."""
        for i, command in enumerate(self.commands):
            if command[:len(prefix)] == list(prefix):
                return i
        raise AssertionError(f"{' '.join(prefix)} was never run")


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def docker(runner):
    return DockerCli(runner=runner)
