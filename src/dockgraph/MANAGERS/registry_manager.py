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
Lifecycle of the local registry container, its network and its volume.
"""
import logging
import threading
from typing import List

from pydantic import BaseModel
from tenacity import retry, retry_if_result, stop_after_delay, wait_fixed

from ..exceptions import EngineError
from ..MODELS.orchestration_config import RegistryConfig
from ..RUNNERS.docker_cli import DockerCli

logger = logging.getLogger(__name__)

# Serializes create and destroy of the shared registry/builder resources.
LIFECYCLE_LOCK = threading.RLock()


class RegistryHandle(BaseModel):
    address: str
    network: str
    volume: str


class RegistryManager:
    """
    Manages the singleton local registry.

    Every ensure operation checks existence before creating and running state
    before starting, so calling it again has no further effect.
    """
    def __init__(self, config: RegistryConfig, docker: DockerCli):
        """
        Initializes the registry manager.

        :param config: Registry settings.
        :param docker: Engine access.
        """
        self.config = config
        self.docker = docker

    def ensure_network(self):
        if not self.docker.network_exists(self.config.network):
            logger.info("Creating network %s", self.config.network)
            self.docker.network_create(self.config.network)

    def ensure_volume(self):
        if not self.docker.volume_exists(self.config.volume):
            logger.info("Creating volume %s", self.config.volume)
            self.docker.volume_create(self.config.volume)

    def container_options(self) -> List[str]:
        """Options for `docker container create` of the registry."""
        port = self.config.port
        options = [
            "--network", self.config.network,
            # Same name as the domain, so the builder can find it on the network.
            "--network-alias", self.config.domain,
            "--env", f"REGISTRY_HTTP_ADDR=0.0.0.0:{port}",
            "--env", "REGISTRY_STORAGE_DELETE_ENABLED=true",
        ]
        if self.config.tls:
            options += [
                "--env", "REGISTRY_HTTP_TLS_CERTIFICATE=/certs/cert.pem",
                "--env", "REGISTRY_HTTP_TLS_KEY=/certs/privkey.pem",
                "--volume", f"{self.config.cert.resolve()}:/certs/cert.pem:ro",
                "--volume", f"{self.config.key.resolve()}:/certs/privkey.pem:ro",
            ]
        options += ["--volume", f"{self.config.volume}:/var/lib/registry"]
        if self.config.bind_port:
            options += ["-p", f"{port}:{port}"]
        return options

    @retry(retry=retry_if_result(lambda running: not running), wait=wait_fixed(0.5),
           stop=stop_after_delay(30), retry_error_callback=lambda state: False)
    def _wait_running(self) -> bool:
        return self.docker.container_running(self.config.container)

    def ensure_registry(self) -> RegistryHandle:
        """
        Creates and starts the registry if needed.

        :return: Address, network and volume of the running registry.
        :raises EngineError: The registry did not reach the running state.
        """
        with LIFECYCLE_LOCK:
            self.ensure_network()
            self.ensure_volume()
            name = self.config.container
            if not self.docker.container_exists(name):
                logger.info("Creating registry %s at %s", name, self.config.address)
                self.docker.container_create(self.config.image, name=name, options=self.container_options())
            if not self.docker.container_running(name):
                self.docker.container_start(name)
                if not self._wait_running():
                    raise EngineError(f"Registry container {name} did not start")
        return RegistryHandle(address=self.config.address, network=self.config.network, volume=self.config.volume)

    def destroy_registry(self):
        """Stops and removes the registry container."""
        with LIFECYCLE_LOCK:
            name = self.config.container
            if self.docker.container_running(name):
                self.docker.container_stop(name)
            if self.docker.container_exists(name):
                logger.info("Removing registry %s", name)
                self.docker.container_remove(name)

    def destroy_network(self):
        """Removes the network. Containers attached to it must be removed first."""
        with LIFECYCLE_LOCK:
            if self.docker.network_exists(self.config.network):
                self.docker.network_remove(self.config.network)

    def destroy_volume(self):
        """Removes the volume. The registry container must be removed first."""
        with LIFECYCLE_LOCK:
            if self.docker.volume_exists(self.config.volume):
                self.docker.volume_remove(self.config.volume)
