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
Parsers for Docker Compose YAML files and the test definitions next to them.
"""
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from ..exceptions import ConfigurationError
from ..MODELS.service_definition import (
    ComposeService,
    CompositionDescriptor,
    CompositionTestDefinition,
    ContainerTestDefinition,
)

T = TypeVar("T", bound=BaseModel)


class ComposeParser:
    """
    Parser for docker-compose.yml files.

    Image templates are kept verbatim: `${VAR:-default}` placeholders are
    resolved later against locally built projects, not against the
    environment.
    """
    def parse(self, compose_path: str) -> CompositionDescriptor:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed descriptor.
        """
        with open(compose_path, 'r') as f:
            content = f.read()
        try:
            return self.parse_from_string(content)
        except ConfigurationError as e:
            raise ConfigurationError(f"{compose_path}: {e}") from e

    def parse_from_string(self, content: str) -> CompositionDescriptor:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :return: Parsed descriptor.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid composition file: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Composition file must be a mapping")

        services = {}
        for name, spec in (data.get('services') or {}).items():
            services[name] = self._parse_service(str(name), spec or {})
        return CompositionDescriptor(services=services)

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ComposeService:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ComposeService instance.
        """
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Service '{name}' must be a mapping")
        return ComposeService(name=name, image=str(spec.get('image', '') or ''))


def _load_model(path: Path, model: Type[T]) -> T:
    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{path}: {e}") from e
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"{path}: {e}") from e


def parse_test_definition(path: Path, default_timeout: Optional[float] = None) -> CompositionTestDefinition:
    """
    Reads the optional test.yml of a composition test.

    :param path: Path to test.yml, may not exist.
    :param default_timeout: Timeout used when the file does not set one.
    :return: Expectations for the test.
    """
    if path.exists():
        definition = _load_model(path, CompositionTestDefinition)
        if default_timeout is not None and "timeout" not in definition.model_fields_set:
            definition.timeout = default_timeout
        return definition
    if default_timeout is not None:
        return CompositionTestDefinition(timeout=default_timeout)
    return CompositionTestDefinition()


def parse_container_test(path: Path) -> ContainerTestDefinition:
    """Reads the container.yml of a single-container test."""
    return _load_model(path, ContainerTestDefinition)
