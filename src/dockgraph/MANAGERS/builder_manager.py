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
Lifecycle of the builder instance that executes image builds.
"""
import logging
import platform
import re
from pathlib import Path
from typing import Optional, Tuple

from jinja2 import Template
from pydantic import BaseModel

from ..exceptions import ConfigurationError
from ..MODELS.orchestration_config import BuilderDriver, OrchestrationConfig
from ..RUNNERS.docker_cli import DockerCli
from ..UTILS.tags import sanitize_tag
from .registry_manager import LIFECYCLE_LOCK, RegistryManager

logger = logging.getLogger(__name__)

BUILDKITD_TEMPLATE = """\
[worker.containerd]
  enabled = false
[worker.oci]
  enabled = true
{%- if is_ci %}
  gc = true
  gckeepstorage = {{ keep_storage }}
{%- else %}
  gc = false
{%- if registry %}
[registry."{{ registry }}"]
  insecure = false
{%- if ca %}
  ca = ["{{ ca }}"]
{%- endif %}
{%- if cert and key %}
  [[registry."{{ registry }}".keypair]]
    key = "{{ key }}"
    cert = "{{ cert }}"
{%- endif %}
{%- endif %}
{%- endif %}
"""

# MB of cache kept by the builder on storage constrained CI runners.
CI_KEEP_STORAGE = 8000

RUNNING_STATUS = re.compile(r"^Status:\s+running\s*$", re.MULTILINE)
EMULATED_HOST_PLATFORMS = ("linux/amd64", "linux/x86_64")


def render_buildkitd_config(is_ci: bool,
                            registry: Optional[str] = None,
                            cert: Optional[Path] = None,
                            key: Optional[Path] = None,
                            ca: Optional[Path] = None) -> str:
    """
    Renders buildkitd.toml for the dedicated builder.

    On CI garbage collection keeps storage bounded. Locally GC is off for
    speed, and the local registry is trusted with its certificates.
    """
    return Template(BUILDKITD_TEMPLATE).render(
        is_ci=is_ci,
        keep_storage=CI_KEEP_STORAGE,
        registry=registry,
        cert=cert,
        key=key,
        ca=ca or cert,
    ) + "\n"


class BuilderHandle(BaseModel):
    name: str


class BuilderManager:
    """
    Provisions the builder for the configured driver.

    - local: the engine's default builder, nothing to provision
    - container: a named builder container attached to the registry network
    - remote: an existing builder that must already be registered
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 docker: DockerCli,
                 registry: Optional[RegistryManager] = None,
                 marker_dir: Optional[Path] = None):
        """
        :param config: Run configuration.
        :param docker: Engine access.
        :param registry: Manager of the registry whose network the builder joins.
        :param marker_dir: Where host-wide markers are kept, ~/.cache/dockgraph by default.
        """
        self.config = config
        self.docker = docker
        self.registry = registry or RegistryManager(config.registry, docker)
        self.marker_dir = marker_dir or Path.home() / ".cache" / "dockgraph"

    @property
    def name(self) -> str:
        return self.config.builder_name

    @property
    def config_path(self) -> Path:
        return self.config.build_dir / "buildkitd.toml"

    def inspect(self) -> Tuple[bool, bool]:
        """
        :return: (exists, running) for the builder.
        """
        result = self.docker.run("buildx", "inspect", "--builder", self.name, check=False,
                                 log_level=logging.DEBUG)
        if not result.ok:
            return False, False
        return True, bool(RUNNING_STATUS.search(result.output))

    def write_config(self) -> Path:
        registry = self.config.registry
        content = render_buildkitd_config(
            is_ci=self.config.is_ci,
            registry=registry.address if self.config.uses_local_registry else None,
            cert=registry.cert.resolve() if registry.cert else None,
            key=registry.key.resolve() if registry.key else None,
            ca=registry.ca.resolve() if registry.ca else None,
        )
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(content)
        return self.config_path

    def needs_emulation(self, system: Optional[str] = None, machine: Optional[str] = None) -> bool:
        """
        Emulation is bundled with the engine everywhere except on Linux, and
        the installer image only supports x86_64 hosts.
        """
        system = system or platform.system()
        machine = (machine or platform.machine()).lower()
        if self.config.driver != BuilderDriver.CONTAINER:
            return False
        if system != "Linux" or machine not in ("x86_64", "amd64"):
            return False
        return any(p not in EMULATED_HOST_PLATFORMS for p in self.config.platforms)

    def install_emulation(self):
        """Installs binfmt handlers once per host, remembered with a marker file."""
        marker = self.marker_dir / f"binfmt-{sanitize_tag(self.config.builder.qemu_image)}"
        if marker.exists():
            return
        logger.info("Installing architecture emulation with %s", self.config.builder.qemu_image)
        self.docker.run("container", "run", "--rm", "--privileged",
                        self.config.builder.qemu_image, "--install", "all")
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()

    def ensure_builder(self) -> BuilderHandle:
        """
        Makes sure the builder for the configured driver is usable.

        :raises ConfigurationError: A remote builder is not registered.
        """
        driver = self.config.driver
        if driver == BuilderDriver.LOCAL:
            return BuilderHandle(name=self.name)
        if driver == BuilderDriver.REMOTE:
            if not self.docker.builder_exists(self.name):
                raise ConfigurationError(f"Remote builder '{self.name}' does not exist")
            return BuilderHandle(name=self.name)

        with LIFECYCLE_LOCK:
            if self.needs_emulation():
                self.install_emulation()
            handle = self.registry.ensure_registry()
            exists, running = self.inspect()
            if not exists:
                logger.info("Creating builder %s", self.name)
                self.docker.run(
                    "buildx", "create",
                    "--bootstrap",
                    "--config", str(self.write_config()),
                    "--driver", "docker-container",
                    "--driver-opt", f"image={self.config.builder.image},network={handle.network}",
                    "--name", self.name,
                )
            elif not running:
                self.docker.run("buildx", "inspect", self.name, "--bootstrap")
        return BuilderHandle(name=self.name)

    def destroy_builder(self):
        """Stops and removes the dedicated builder, other drivers own nothing."""
        if self.config.driver != BuilderDriver.CONTAINER:
            return
        with LIFECYCLE_LOCK:
            exists, running = self.inspect()
            if running:
                self.docker.run("buildx", "stop", self.name)
            if exists:
                logger.info("Removing builder %s", self.name)
                self.docker.run("buildx", "rm", self.name)

    def destroy_all(self):
        """
        Tears everything down. The builder and registry share the network and
        the registry uses the volume, so containers go first.
        """
        with LIFECYCLE_LOCK:
            self.destroy_builder()
            self.registry.destroy_registry()
            self.registry.destroy_network()
            self.registry.destroy_volume()

    def disk_usage(self) -> str:
        """Output of `buildx du` for the active builder, empty if it is not running."""
        exists, running = self.inspect()
        if not (exists and running):
            return ""
        return self.docker.run("buildx", "du", "--builder", self.name, log_level=logging.DEBUG).output

    def prune(self) -> str:
        """Removes the build cache of the active builder."""
        exists, running = self.inspect()
        if not (exists and running):
            return ""
        return self.docker.run("buildx", "prune", "--builder", self.name, "--force",
                               log_level=logging.DEBUG).output
