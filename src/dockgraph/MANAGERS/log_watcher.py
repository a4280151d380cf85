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
Watching of service log streams for expected messages.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence

from ..RUNNERS.process_runner import ProcessRunner

logger = logging.getLogger(__name__)


class LogWatcher:
    """
    Follows one log stream until a substring appears.

    The follow process is killed as soon as the pattern is found or the
    watch is cancelled, so no log-follow process outlives the watch.
    """
    def __init__(self,
                 service: str,
                 pattern: str,
                 command: Sequence[str],
                 env: Optional[Dict[str, str]] = None,
                 working_dir: Optional[str] = None):
        """
        Initializes the watcher.

        :param service: Service the stream belongs to.
        :param pattern: Substring to wait for.
        :param command: Command that prints the stream and keeps following it.
        :param env: Environment for the command.
        :param working_dir: Directory to run the command in.
        """
        self.service = service
        self.pattern = pattern
        self.command = list(command)
        self.env = env
        self.working_dir = working_dir
        self.process = ProcessRunner(f"logs-{service}")
        self.found = threading.Event()
        self._cancelled = False
        self._lock = threading.Lock()

    def watch(self) -> bool:
        """
        Blocks until the pattern is seen, the stream ends or the watch is cancelled.

        :return: True if the pattern was found.
        """
        with self._lock:
            if self._cancelled:
                return False
            self.process.start(self.command, env=self.env, working_dir=self.working_dir)
        try:
            for line in self.process.stdout:
                if self.pattern in line:
                    logger.info("[%s] Found '%s'", self.service, self.pattern)
                    self.found.set()
                    break
        finally:
            self.process.kill()
        return self.found.is_set()

    def cancel(self):
        with self._lock:
            self._cancelled = True
            self.process.kill()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid


def watch_all(watchers: List[LogWatcher], timeout: float) -> Dict[str, bool]:
    """
    Runs watchers concurrently on a shared pool with one overall timeout.

    Watchers still running when the timeout expires are cancelled.

    :param watchers: Watchers to run.
    :param timeout: Seconds to wait for all of them.
    :return: Service name to whether its pattern was found.
    """
    if not watchers:
        return {}
    with ThreadPoolExecutor(max_workers=len(watchers)) as pool:
        futures = {pool.submit(w.watch): w for w in watchers}
        _, not_done = wait(futures, timeout=timeout)
        for future in not_done:
            watcher = futures[future]
            logger.warning("[%s] Timed out waiting for '%s'", watcher.service, watcher.pattern)
            watcher.cancel()
    for future, watcher in futures.items():
        error = future.exception()
        if error is not None:
            logger.error("[%s] Log watch failed: %s", watcher.service, error)
    return {w.service: w.found.is_set() for w in watchers}
