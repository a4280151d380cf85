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
Running of single-container tests.
"""
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

from ..exceptions import CommandTimeoutError, ConfigurationError, DockgraphError
from ..MODELS.container_run import ContainerRunRecord, ServiceExit
from ..MODELS.image_descriptor import Project
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import ContainerTestDefinition
from ..PARSERS.compose_parser import parse_container_test
from ..RUNNERS.docker_cli import DockerCli
from .composition_runner import TestResult, TestState
from .log_watcher import LogWatcher, watch_all
from .resource_guard import ResourceGuard

logger = logging.getLogger(__name__)

CONTAINER_FILE = "container.yml"


class ContainerTest(BaseModel):
    """A container.yml under <project>/tests/<name>/."""
    project: str
    name: str
    directory: Path

    @property
    def definition_file(self) -> Path:
        return self.directory / CONTAINER_FILE

    @property
    def id(self) -> str:
        return f"{self.project}/{self.name}"


def discover_container_tests(project: Project) -> List[ContainerTest]:
    if not project.tests_dir.is_dir():
        return []
    return [
        ContainerTest(project=project.name, name=d.name, directory=d)
        for d in sorted(project.tests_dir.iterdir())
        if (d / CONTAINER_FILE).is_file()
    ]


class ContainerTestRunner:
    """
    Starts one container, waits for it to exit (or to log a start-up message
    and then stay up for a grace period), and checks its exit code.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 docker: DockerCli,
                 local_images: Dict[str, str],
                 guard: Optional[ResourceGuard] = None):
        self.config = config
        self.docker = docker
        self.local_images = local_images
        self.guard = guard

    def output_dir(self, test: ContainerTest) -> Path:
        return self.config.project_build_dir(test.project) / "tests" / test.name

    def image_for(self, test: ContainerTest, definition: ContainerTestDefinition) -> str:
        if definition.image:
            return definition.image
        if test.project not in self.local_images:
            raise ConfigurationError(f"{test.id}: no image configured and project image is unknown")
        return self.local_images[test.project]

    def create(self, test: ContainerTest, definition: ContainerTestDefinition) -> ContainerRunRecord:
        image = self.image_for(test, definition)
        options = []
        for key, value in sorted(definition.environment.items()):
            options += ["--env", f"{key}={value}"]
        container_id = self.docker.container_create(image, options=options, command=definition.command)
        record = ContainerRunRecord(container_id=container_id, image=image, name=test.id,
                                    log_path=self.output_dir(test) / "container.log")
        if self.guard is not None:
            self.guard.register(f"remove container {container_id}", lambda: self.remove(record))
        return record

    def remove(self, record: ContainerRunRecord):
        if record.removed:
            return
        self.docker.run("container", "rm", "-f", record.container_id, check=False)
        record.removed = True

    def wait(self, record: ContainerRunRecord, definition: ContainerTestDefinition) -> List[str]:
        """
        Waits for exit, or for the start-up message and the grace period.

        :return: Failures observed while waiting.
        """
        if definition.wait_for:
            watcher = LogWatcher(record.name, definition.wait_for,
                                 ["docker", "container", "logs", "--follow", record.container_id])
            found = watch_all([watcher], definition.timeout)
            if not found[record.name]:
                return [f"Container did not log '{definition.wait_for}' within {definition.timeout:g}s"]
            # Started, give it the chance to fail before it is stopped.
            time.sleep(definition.max_wait_for_failure)
            return []
        try:
            self.docker.run("container", "wait", record.container_id, timeout=definition.timeout)
        except CommandTimeoutError as e:
            return [str(e)]
        return []

    def run(self, test: ContainerTest) -> TestResult:
        """Runs one container test, failures are collected into the result."""
        definition = parse_container_test(test.definition_file)
        self.output_dir(test).mkdir(parents=True, exist_ok=True)
        record = self.create(test, definition)
        failures: List[str] = []
        outcome = TestState.CREATED
        try:
            self.docker.container_start(record.container_id)
            record.status = "running"
            outcome = TestState.UP
            failures += self.wait(record, definition)
            outcome = TestState.TIMEOUT if failures else TestState.CONDITIONS_MET
            self.docker.container_stop(record.container_id)
            info = self.docker.container_inspect([record.container_id])[0]
            state = info.get("State") or {}
            record.exit_code = int(state.get("ExitCode", -1))
            record.status = state.get("Status", "")
            with open(record.log_path, "w") as log:
                self.docker.run("container", "logs", "--timestamps", record.container_id, stdout=log, check=False)
        except DockgraphError as e:
            failures.append(str(e))
        finally:
            self.remove(record)

        exits = []
        if record.exit_code is not None:
            exits.append(ServiceExit(service=test.name, container_id=record.container_id,
                                     exit_code=record.exit_code, status=record.status))
            if record.exit_code != definition.exit_code:
                outcome = TestState.EXIT_CODE_MISMATCH
                failures.append(f"Container {record.image} ({record.container_id}) exited with "
                                f"{record.exit_code} (expected {definition.exit_code}) and status {record.status}")
        if failures:
            logger.error("%s failed:\n  %s", test.id, "\n  ".join(failures))
        return TestResult(project=test.project, name=test.name, passed=not failures, outcome=outcome,
                          exits=exits, failures=failures, log_path=record.log_path)
