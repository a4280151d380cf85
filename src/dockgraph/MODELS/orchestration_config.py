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
Models for overall orchestration configuration.

One OrchestrationConfig is built at the start of a run and handed to every
component; nothing looks configuration up on its own.
"""
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from .cache_config import CacheBackendConfig


class BuilderDriver(str, Enum):
    """
    Backend strategy used to execute image builds.

    - local: the engine's own builder, host platform only
    - container: a dedicated builder container on the registry network
    - remote: an existing remote/cluster builder selected by name
    """
    LOCAL = "local"
    CONTAINER = "container"
    REMOTE = "remote"


class BuilderConfig(BaseModel):
    """Settings for the dedicated builder instance."""
    name: str = "dockgraph"
    image: str = "moby/buildkit:v0.12.5"
    # Only used on Linux x86_64 hosts, other platforms bundle emulation.
    qemu_image: str = "tonistiigi/binfmt:qemu-v7.0.0-28"


class RegistryConfig(BaseModel):
    """
    The local registry container.

    The domain must contain a "." or the engine would read it as a user name
    on the central registry.
    """
    domain: str = "registry.dockgraph.dev"
    port: int = Field(default=5000, ge=1, le=65535)
    bind_port: bool = False
    container: str = "dockgraph-registry"
    network: str = "dockgraph-registry"
    volume: str = "dockgraph-registry"
    image: str = "registry:2"
    cert: Optional[Path] = None
    key: Optional[Path] = None
    # Root certificate the builder trusts the registry with, defaults to cert.
    ca: Optional[Path] = None
    # Credentials for pushing to the target repository, optional.
    user: str = ""
    password: str = ""

    @property
    def address(self) -> str:
        return self.domain if self.port == 443 else f"{self.domain}:{self.port}"

    @property
    def tls(self) -> bool:
        return self.cert is not None and self.key is not None

    @property
    def has_credentials(self) -> bool:
        return bool(self.user and self.password)


REPORT_EXTENSIONS = {
    "json": "json",
    "table": "md",
    "cyclonedx": "xml",
}


class ScanConfig(BaseModel):
    """SBOM generation and vulnerability report controls."""
    syft_image: str = "anchore/syft:latest"
    grype_image: str = "anchore/grype:latest"
    # Volume holding the vulnerability database between runs.
    db_volume: str = "dockgraph-grype"
    config: Optional[Path] = None
    # negligible, low, medium, high or critical. Empty never fails.
    fail_on_severity: str = ""
    format: str = "table"
    only_fixed: bool = False

    @property
    def report_extension(self) -> str:
        return REPORT_EXTENSIONS.get(self.format, "txt")


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for one orchestration run.
    """
    root: Path
    build_dir: Path
    repository: str = "local"
    tags: List[str] = []
    platforms: List[str] = []
    driver: BuilderDriver = BuilderDriver.LOCAL
    push: bool = False
    load: Optional[bool] = None
    no_cache: bool = False
    pull: bool = False
    primary_branch: str = "main"
    build_timeout: float = Field(default=3600.0, gt=0)
    test_timeout: float = Field(default=300.0, gt=0)
    jobs: int = Field(default=1, ge=1)
    is_ci: bool = False

    builder: BuilderConfig = Field(default_factory=BuilderConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    cache: CacheBackendConfig = Field(default_factory=CacheBackendConfig)
    cache_to_mode: Optional[str] = None
    scan: ScanConfig = Field(default_factory=ScanConfig)

    @model_validator(mode="after")
    def _check_combinations(self) -> "OrchestrationConfig":
        if self.cache_to_mode not in (None, "inline", "min", "max"):
            raise ValueError(f"Unknown cache.to-mode {self.cache_to_mode}")
        if self.driver == BuilderDriver.LOCAL and len(self.platforms) > 1:
            raise ValueError("the local driver only builds for the host platform")
        if len(self.platforms) > 1:
            if self.load:
                raise ValueError("multi-platform images cannot be loaded into the engine")
            if not self.push:
                raise ValueError("multi-platform images must be pushed")
        return self

    @property
    def builder_name(self) -> str:
        return "default" if self.driver == BuilderDriver.LOCAL else self.builder.name

    @property
    def uses_local_registry(self) -> bool:
        return self.repository == "local" and self.driver != BuilderDriver.LOCAL

    @property
    def image_repository(self) -> str:
        """Repository images are tagged into; 'local' means the local registry for builder containers."""
        if self.uses_local_registry:
            return self.registry.address
        return self.repository

    @property
    def should_load(self) -> bool:
        # Pushing and loading cannot be combined, pushed images are pulled instead.
        if self.load is not None:
            return self.load and not self.push
        return not self.push and len(self.platforms) <= 1

    @property
    def pull_after_push(self) -> bool:
        return self.push and self.driver != BuilderDriver.LOCAL

    @property
    def resolved_cache_to_mode(self) -> str:
        # The engine's own builder only supports inline cache exports.
        if self.cache_to_mode is not None:
            return self.cache_to_mode
        return "inline" if self.driver == BuilderDriver.LOCAL else "max"

    def project_build_dir(self, project: str) -> Path:
        return self.build_dir / project
