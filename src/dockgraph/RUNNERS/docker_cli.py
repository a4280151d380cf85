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
Thin wrapper over the `docker` command line for the engine operations the
managers need.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..exceptions import CommandError, ImageNotFoundError
from .process_runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)


class DockerCli:
    """
    Issues engine commands through a command runner.

    Existence checks never raise for a missing object; they return False.
    """
    def __init__(self, runner: Optional[CommandRunner] = None, executable: str = "docker"):
        self.runner = runner or CommandRunner()
        self.executable = executable

    def run(self, *args: str, check: bool = True, **kwargs) -> CommandResult:
        return self.runner.run([self.executable, *args], check=check, **kwargs)

    def _succeeds(self, *args: str) -> bool:
        return self.run(*args, check=False, log_level=logging.DEBUG).ok

    # Images

    def image_exists(self, reference: str) -> bool:
        return self._succeeds("image", "inspect", reference)

    def image_inspect(self, reference: str) -> Dict[str, Any]:
        """
        Returns the engine's description of a local image.

        :raises ImageNotFoundError: No such image is loaded.
        :raises CommandError: The engine failed for any other reason.
        """
        result = self.run("image", "inspect", reference, check=False, log_level=logging.DEBUG)
        if not result.ok:
            if "no such image" in result.output.lower():
                raise ImageNotFoundError(reference)
            raise CommandError(result.command, result.returncode, result.output)
        data = json.loads(result.output)
        return data[0] if isinstance(data, list) else data

    def pull(self, reference: str):
        self.run("pull", reference)

    # Networks and volumes

    def network_exists(self, name: str) -> bool:
        return self._succeeds("network", "inspect", name)

    def network_create(self, name: str):
        self.run("network", "create", name)

    def network_remove(self, name: str):
        self.run("network", "rm", name)

    def volume_exists(self, name: str) -> bool:
        return self._succeeds("volume", "inspect", name)

    def volume_create(self, name: str):
        self.run("volume", "create", name)

    def volume_remove(self, name: str):
        self.run("volume", "rm", name)

    # Containers

    def container_exists(self, name: str) -> bool:
        return self._succeeds("container", "inspect", name)

    def container_running(self, name: str) -> bool:
        result = self.run("container", "inspect", "--format", "{{.State.Running}}", name,
                          check=False, log_level=logging.DEBUG)
        return result.ok and result.output.strip() == "true"

    def container_create(self, image: str,
                         name: Optional[str] = None,
                         options: Sequence[str] = (),
                         command: Sequence[str] = ()) -> str:
        """
        Creates a container without starting it.

        :return: Container identifier.
        """
        args = ["container", "create"]
        if name:
            args += ["--name", name]
        args += list(options) + [image] + list(command)
        lines = self.run(*args).output.strip().splitlines()
        return lines[-1] if lines else ""

    def container_start(self, container: str):
        self.run("container", "start", container)

    def container_stop(self, container: str):
        self.run("container", "stop", container)

    def container_remove(self, container: str, force: bool = False):
        args = ["container", "rm"]
        if force:
            args.append("-f")
        self.run(*args, container)

    def container_inspect(self, containers: Sequence[str]) -> List[Dict[str, Any]]:
        if not containers:
            return []
        return json.loads(self.run("inspect", *containers, log_level=logging.DEBUG).output)

    # Builders and registries

    def builder_exists(self, name: str) -> bool:
        return self._succeeds("buildx", "inspect", name)

    def login(self, registry: str, user: str, password: str):
        """
        Logs in with the password on stdin so it never shows in a process listing.

        :param registry: Registry host, the central registry when empty.
        """
        args = ["login", "--username", user, "--password-stdin"]
        if registry:
            args.append(registry)
        try:
            self.run(*args, input=password)
        except CommandError as e:
            # Do not leak the command output, it may echo credentials.
            raise CommandError(e.command, e.returncode) from None
