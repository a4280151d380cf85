# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Guaranteed cleanup of ad hoc resources, whatever way a run ends.
"""
import atexit
import logging
import signal
import sys
import threading
from typing import Callable, Dict, List, Tuple

from ..exceptions import DockgraphError

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ResourceGuard:
    """
    Runs registered cleanups in reverse order of registration.

    Cleanups fire on normal exit of the `with` block, on exceptions, on
    SIGINT/SIGTERM and at interpreter shutdown. Each runs at most once.
    """
    def __init__(self):
        self._cleanups: List[Tuple[str, Callable[[], None]]] = []
        self._lock = threading.Lock()
        self._previous_handlers: Dict[int, object] = {}

    def register(self, description: str, cleanup: Callable[[], None]):
        """
        Registers a cleanup.

        :param description: Shown in logs when the cleanup runs or fails.
        :param cleanup: Callable without arguments.
        """
        with self._lock:
            self._cleanups.append((description, cleanup))

    def cleanup(self):
        """Runs and forgets every pending cleanup, newest first."""
        while True:
            with self._lock:
                if not self._cleanups:
                    return
                description, action = self._cleanups.pop()
            logger.debug("Cleaning up: %s", description)
            try:
                action()
            except DockgraphError as e:
                logger.error("Cleanup '%s' failed: %s", description, e)

    def _handle_signal(self, signum, frame):
        logger.warning("Received signal %s, cleaning up", signum)
        self.cleanup()
        self._restore_handlers()
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        sys.exit(128 + signum)

    def _install_handlers(self):
        # Handlers can only be installed from the main thread.
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def __enter__(self) -> "ResourceGuard":
        atexit.register(self.cleanup)
        self._install_handlers()
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            self.cleanup()
        finally:
            self._restore_handlers()
            atexit.unregister(self.cleanup)
        return False
