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
Models for composition files and the test definitions that sit beside them.
"""
import re
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

# ${VARIABLE:-default}, the whole image string must match.
IMAGE_PLACEHOLDER = re.compile(r"^\$\{(?P<variable>[^:}]+):-(?P<default>.+)\}$")

DEFAULT_TEST_TIMEOUT = 300.0


class ComposeService(BaseModel):
    """
    A single service of a composition, as far as the test runner cares.
    """
    name: str
    image: str = ""

    @property
    def variable(self) -> Optional[str]:
        """Name of the variable in a `${VAR:-default}` image template, if any."""
        match = IMAGE_PLACEHOLDER.match(self.image)
        return match.group("variable") if match else None

    def env(self, image: str) -> Optional[Tuple[str, str]]:
        """
        Environment override that points this service at a locally built image.

        :param image: Reference of the locally built image.
        :return: (variable, image) or None if the template has no placeholder.
        """
        variable = self.variable
        if variable is None:
            return None
        return variable, image


class CompositionDescriptor(BaseModel):
    """
    Service name to image template, parsed from a service-composition file.
    """
    services: Dict[str, ComposeService] = {}

    def image_environment(self, local_images: Dict[str, str]) -> Dict[str, str]:
        """
        Builds environment overrides for services that match locally built projects.

        Services without a same-named project keep their literal default and
        are treated as external.

        :param local_images: Project name to the reference of its built image.
        :return: Variable name to image reference.
        """
        env = {}
        for name, service in self.services.items():
            if name not in local_images:
                continue
            pair = service.env(local_images[name])
            if pair:
                env[pair[0]] = pair[1]
        return env

    def external_services(self, project_names) -> List[str]:
        """Services that do not match any buildable project and must be pulled."""
        return [name for name in self.services if name not in project_names]


class CompositionTestDefinition(BaseModel):
    """
    Expectations for a composition test, read from an optional test.yml.
    """
    timeout: float = DEFAULT_TEST_TIMEOUT
    exit_codes: Dict[str, int] = {}
    output: Dict[str, str] = {}
    environment: Dict[str, str] = {}


class ContainerTestDefinition(BaseModel):
    """
    A single-container test, read from container.yml.

    If `wait_for` is set the container counts as started once the message
    appears; it then gets `max_wait_for_failure` seconds to fail before it
    is stopped.
    """
    image: Optional[str] = None
    command: List[str] = []
    environment: Dict[str, str] = {}
    wait_for: Optional[str] = None
    max_wait_for_failure: float = 10.0
    timeout: float = DEFAULT_TEST_TIMEOUT
    exit_code: int = 0
