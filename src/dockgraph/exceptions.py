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
Exception hierarchy shared by every component.
"""
from typing import List, Optional, Sequence


class DockgraphError(Exception):
    """Base class for all errors raised by dockgraph."""


class ConfigurationError(DockgraphError):
    """Malformed option value or a missing mandatory setting."""


class DependencyCycleError(ConfigurationError):
    """The image definition files reference each other in a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")


class EngineError(DockgraphError):
    """The container engine is unreachable or misbehaving."""


class CommandError(EngineError):
    """
    A subprocess exited with a non-zero status.

    Carries the failing command and whatever output was captured so the
    step boundary can report it.
    """

    def __init__(self, command: Sequence[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = f"Command '{' '.join(self.command)}' exited with {returncode}"
        tail = output.strip().splitlines()[-10:]
        if tail:
            message += ":\n" + "\n".join(tail)
        super().__init__(message)


class ImageNotFoundError(EngineError):
    """The engine has no image for the given reference."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Image '{reference}' does not exist locally")


class CommandTimeoutError(DockgraphError):
    """A container-bound operation exceeded its wall-clock timeout."""

    def __init__(self, command: Sequence[str], timeout: float):
        self.command = list(command)
        self.timeout = timeout
        super().__init__(f"Command '{' '.join(self.command)}' timed out after {timeout:g}s")


class VerificationError(DockgraphError):
    """One or more post-run checks failed. All failures are reported together."""

    def __init__(self, message: str, failures: Optional[List[str]] = None):
        self.failures = list(failures or [])
        if self.failures:
            message = message + ":\n  " + "\n  ".join(self.failures)
        super().__init__(message)


class ExitCodeMismatchError(VerificationError):
    """A container or service exited with an unexpected code."""


class ChecksumMismatchError(VerificationError):
    """A downloaded artifact does not match its expected checksum."""

    def __init__(self, path: str, expected: str, calculated: str):
        self.path = path
        self.expected = expected
        self.calculated = calculated
        super().__init__(
            f"Checksum does not match for {path}. Expected: {expected}, Calculated: {calculated}"
        )
