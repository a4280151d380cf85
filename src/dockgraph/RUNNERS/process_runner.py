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
Execution of system processes with output capture, timeouts and lifecycle management.
"""
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import IO, Dict, List, Optional, Sequence

import psutil

from ..exceptions import CommandError, CommandTimeoutError, EngineError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a finished command."""
    command: List[str]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def kill_process_tree(pid: int, timeout: float = 5.0) -> None:
    """
    Kills a process and every descendant it spawned.

    :param pid: Root of the tree.
    :param timeout: Seconds to wait for the processes to disappear.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    procs = parent.children(recursive=True) + [parent]
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(procs, timeout=timeout)


class CommandRunner:
    """
    Runs short-lived commands to completion.

    Components receive a runner instead of calling subprocess directly so
    that tests can substitute a scripted one.
    """

    def run(self,
            command: Sequence[str],
            cwd: Optional[str] = None,
            env: Optional[Dict[str, str]] = None,
            input: Optional[str] = None,
            timeout: Optional[float] = None,
            check: bool = True,
            stdin: Optional[IO] = None,
            stdout: Optional[IO] = None,
            log_level: int = logging.INFO) -> CommandResult:
        """
        Runs a command and waits for it.

        Args:
            command: Command and arguments to execute.
            cwd: Directory to run in.
            env: Full environment for the process, inherits when None.
            input: Text fed to stdin.
            timeout: Seconds before the process tree is killed.
            check: Raise CommandError on a non-zero exit.
            stdin: File to read stdin from instead of `input`.
            stdout: File receiving stdout instead of capturing it.
            log_level: Level the captured output is logged at.

        Returns:
            CommandResult with captured output (stdout and stderr combined,
            or stderr only when stdout is redirected).

        Raises:
            EngineError: The executable could not be started.
            CommandTimeoutError: The timeout expired, the process was killed.
            CommandError: Non-zero exit and `check` is set.
        """
        command = [str(c) for c in command]
        logger.debug("Running: %s", " ".join(command))
        # Tools print whatever bytes they like, undecodable ones are replaced.
        text = stdout is None or not _is_binary(stdout)
        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                env=env,
                stdin=stdin if stdin is not None else (subprocess.PIPE if input is not None else None),
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE if stdout is not None else subprocess.STDOUT,
                encoding="utf-8" if text else None,
                errors="replace" if text else None,
                shell=False,
            )
        except OSError as e:
            raise EngineError(f"Failed to start '{command[0]}': {e}") from e

        try:
            out, err = process.communicate(input=input, timeout=timeout)
        except subprocess.TimeoutExpired:
            kill_process_tree(process.pid)
            process.communicate()
            raise CommandTimeoutError(command, timeout)

        output = out if stdout is None else err
        if isinstance(output, bytes):
            output = output.decode(errors="replace")
        output = output or ""
        for line in output.splitlines():
            logger.log(log_level, line)

        result = CommandResult(command=command, returncode=process.returncode, output=output)
        if check and not result.ok:
            raise CommandError(command, result.returncode, output)
        return result


def _is_binary(handle: IO) -> bool:
    return "b" in getattr(handle, "mode", "")


class ProcessRunner:
    """
    Manages the execution of a single long-running system process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be
                redirected. Output is readable through `stdout` otherwise.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self._log_handle = None

    def start(self,
              command: Sequence[str],
              env: Optional[Dict[str, str]] = None,
              working_dir: Optional[str] = None):
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.
        """
        stdout = subprocess.PIPE
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._log_handle = open(self.log_file, "w", encoding="utf-8", errors="replace")
            stdout = self._log_handle

        command = [str(c) for c in command]
        logger.info("[%s] Starting command: %s", self.name, " ".join(command))
        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                shell=False,
            )
        except OSError as e:
            self._close_log()
            raise EngineError(f"[{self.name}] Failed to start: {e}") from e

    @property
    def stdout(self):
        return self.process.stdout if self.process else None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Waits for the process to exit.

        Returns:
            Optional[int]: Exit code, or None if the timeout expired first.
        """
        if not self.process:
            return None
        try:
            code = self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._close_log()
        return code

    def stop(self, timeout: int = 10):
        """
        Stops the process by sending SIGTERM, followed by a kill of the whole
        process tree if it doesn't stop.

        Args:
            timeout (int): Seconds to wait for termination before killing.
        """
        if self.is_running():
            logger.debug("[%s] Stopping process...", self.name)
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                self.kill()
        self._close_log()

    def kill(self):
        """Force-kills the process and its descendants."""
        if self.process:
            kill_process_tree(self.process.pid)
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.error("[%s] Process %s survived kill", self.name, self.process.pid)
        self._close_log()

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        return self.process is not None and self.process.poll() is None

    def _close_log(self):
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None
