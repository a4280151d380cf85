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
Running of service-composition tests against locally built images.
"""
import hashlib
import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from ..exceptions import CommandTimeoutError, DockgraphError, ExitCodeMismatchError, VerificationError
from ..MODELS.container_run import ServiceExit
from ..MODELS.image_descriptor import Project
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import CompositionDescriptor, CompositionTestDefinition
from ..PARSERS.compose_parser import ComposeParser, parse_test_definition
from ..RUNNERS.docker_cli import DockerCli
from ..RUNNERS.process_runner import ProcessRunner
from .log_watcher import LogWatcher, watch_all
from .resource_guard import ResourceGuard

logger = logging.getLogger(__name__)

COMPOSE_FILE = "docker-compose.yml"
DEFINITION_FILE = "test.yml"
SERVICE_LABEL = "com.docker.compose.service"


class TestState(str, Enum):
    CREATED = "created"
    PULLED = "pulled"
    UP = "up"
    CONDITIONS_MET = "conditions-met"
    TIMEOUT = "timeout"
    EXIT_CODE_MISMATCH = "exit-code-mismatch"
    TORN_DOWN = "torn-down"


class CompositionTest(BaseModel):
    """A docker-compose.yml under <project>/tests/<name>/."""
    project: str
    name: str
    directory: Path

    @property
    def compose_file(self) -> Path:
        return self.directory / COMPOSE_FILE

    @property
    def definition_file(self) -> Path:
        return self.directory / DEFINITION_FILE

    @property
    def id(self) -> str:
        return f"{self.project}/{self.name}"


class TestResult(BaseModel):
    project: str
    name: str
    passed: bool
    skipped: bool = False
    # State the composition was in before teardown, or the exit code mismatch.
    outcome: Optional[TestState] = None
    exits: List[ServiceExit] = []
    failures: List[str] = []
    log_path: Optional[Path] = None

    @property
    def id(self) -> str:
        return f"{self.project}/{self.name}"


def discover_tests(project: Project) -> List[CompositionTest]:
    """Finds composition tests of a project, in name order."""
    if not project.tests_dir.is_dir():
        return []
    return [
        CompositionTest(project=project.name, name=d.name, directory=d)
        for d in sorted(project.tests_dir.iterdir())
        if (d / COMPOSE_FILE).is_file()
    ]


def compose_project_name(test: CompositionTest) -> str:
    return re.sub(r"[^a-z0-9_-]", "_", f"{test.project}_{test.name}".lower())


def check_exit_codes(exits: Iterable[ServiceExit],
                     expected: Dict[str, int],
                     services: Iterable[str] = ()) -> None:
    """
    Compares every service's exit code to its expectation, 0 unless overridden.

    A service that is expected, explicitly or by being part of `services`,
    but left no container behind is a mismatch too.

    :raises ExitCodeMismatchError: Listing every mismatch, not just the first.
    """
    exits = list(exits)
    failures = []
    for service_exit in exits:
        want = expected.get(service_exit.service, 0)
        if service_exit.exit_code != want:
            failures.append(
                f"Service {service_exit.service} exited with {service_exit.exit_code} "
                f"(expected {want}) and status {service_exit.status}"
            )
    seen = {e.service for e in exits}
    for service in sorted((set(services) | set(expected)) - seen):
        failures.append(f"Service {service} has no container (expected {expected.get(service, 0)})")
    if failures:
        raise ExitCodeMismatchError("Unexpected exit codes", failures)


class CompositionTestRunner:
    """
    Brings a composition up, waits for it to exit or for its services to log
    the expected messages, tears it down and verifies exit codes.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 docker: DockerCli,
                 project_names: Iterable[str],
                 local_images: Dict[str, str],
                 guard: Optional[ResourceGuard] = None):
        """
        Initializes the runner.

        Args:
            config: Run configuration.
            docker: Engine access.
            project_names: Every buildable project, services named alike are not pulled.
            local_images: Project name to the reference of its built image.
            guard: Receives teardown so it also happens on abnormal termination.
        """
        self.config = config
        self.docker = docker
        self.project_names = set(project_names)
        self.local_images = local_images
        self.guard = guard
        self.parser = ComposeParser()
        self.state = TestState.CREATED

    def output_dir(self, test: CompositionTest) -> Path:
        return self.config.project_build_dir(test.project) / "tests" / test.name

    def command(self, test: CompositionTest, *args: str) -> List[str]:
        return ["docker", "compose", "--project-name", compose_project_name(test),
                "--file", str(test.compose_file), *args]

    def environment(self, descriptor: CompositionDescriptor, definition: CompositionTestDefinition) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(descriptor.image_environment(self.local_images))
        env.update(definition.environment)
        return env

    def fingerprint(self, test: CompositionTest, descriptor: CompositionDescriptor) -> str:
        """Hash over the digests of local images used and the files of the test directory."""
        sha = hashlib.sha256()
        for name in sorted(descriptor.services):
            digest = self.config.project_build_dir(name) / "digest.json"
            if name in self.project_names and digest.exists():
                sha.update(name.encode())
                sha.update(digest.read_bytes())
        for path in sorted(p for p in test.directory.rglob("*") if p.is_file()):
            sha.update(path.relative_to(test.directory).as_posix().encode())
            sha.update(path.read_bytes())
        return sha.hexdigest()

    def _inputs_file(self, test: CompositionTest) -> Path:
        return self.output_dir(test) / "inputs.json"

    def is_up_to_date(self, test: CompositionTest, fingerprint: str) -> bool:
        path = self._inputs_file(test)
        return path.exists() and json.loads(path.read_text()).get("fingerprint") == fingerprint

    def _invoke(self, test: CompositionTest, env: Dict[str, str], *args: str, check: bool = True, stdout=None):
        return self.docker.runner.run(self.command(test, *args), cwd=str(test.directory), env=env,
                                      check=check, stdout=stdout)

    def pull(self, test: CompositionTest, descriptor: CompositionDescriptor, env: Dict[str, str]):
        """Pulls services that are not built locally."""
        external = descriptor.external_services(self.project_names)
        if external:
            self._invoke(test, env, "pull", *external)
        self.state = TestState.PULLED

    def up(self, test: CompositionTest, definition: CompositionTestDefinition, env: Dict[str, str]) -> List[str]:
        """
        Starts the composition and waits for it.

        :return: Failures observed while waiting.
        """
        process = ProcessRunner(f"compose-{test.id}", log_file=str(self.output_dir(test) / "up.log"))
        process.start(self.command(test, "up", "--abort-on-container-exit"), env=env,
                      working_dir=str(test.directory))
        self.state = TestState.UP
        failures = []
        try:
            if definition.output:
                # Completion is decided by the watchers, the exit of `up` is ignored.
                watchers = [
                    LogWatcher(service, pattern, self.command(test, "logs", "--follow", "--no-color", service),
                               env=env, working_dir=str(test.directory))
                    for service, pattern in sorted(definition.output.items())
                ]
                found = watch_all(watchers, definition.timeout)
                missing = [s for s, ok in found.items() if not ok]
                for service in missing:
                    failures.append(f"Service {service} did not log '{definition.output[service]}' "
                                    f"within {definition.timeout:g}s")
                self.state = TestState.TIMEOUT if missing else TestState.CONDITIONS_MET
            else:
                code = process.wait(timeout=definition.timeout)
                if code is None:
                    process.kill()
                    self.state = TestState.TIMEOUT
                    failures.append(str(CommandTimeoutError(self.command(test, "up"), definition.timeout)))
                else:
                    self.state = TestState.CONDITIONS_MET
        finally:
            process.stop()
        return failures

    def inspect(self, test: CompositionTest, env: Dict[str, str]) -> List[ServiceExit]:
        """Exit state of every container of the composition."""
        result = self._invoke(test, env, "ps", "-aq")
        containers = [line.strip() for line in result.output.splitlines() if line.strip()]
        exits = []
        for info in self.docker.container_inspect(containers):
            labels = (info.get("Config") or {}).get("Labels") or {}
            state = info.get("State") or {}
            exits.append(ServiceExit(
                service=labels.get(SERVICE_LABEL, info.get("Name", "").lstrip("/")),
                container_id=info.get("Id", ""),
                exit_code=int(state.get("ExitCode", -1)),
                status=state.get("Status", ""),
            ))
        return sorted(exits, key=lambda e: e.service)

    def tear_down(self, test: CompositionTest, env: Dict[str, str]) -> Tuple[List[ServiceExit], List[str]]:
        """
        Stops services so exit codes settle, records them, saves logs and removes
        the composition with its volumes.

        Every stage is attempted even if an earlier one fails.

        :return: Exit state of the services and the failures met on the way.
        """
        failures: List[str] = []
        exits: List[ServiceExit] = []
        try:
            try:
                self._invoke(test, env, "stop")
            except DockgraphError as e:
                failures.append(f"Failed to stop services: {e}")
            try:
                exits = self.inspect(test, env)
            except DockgraphError as e:
                failures.append(f"Failed to read exit codes: {e}")
            with open(self.output_dir(test) / "compose.log", "w", encoding="utf-8") as log:
                try:
                    self._invoke(test, env, "logs", "--no-color", "--timestamps", stdout=log, check=False)
                except DockgraphError as e:
                    failures.append(f"Failed to save logs: {e}")
        finally:
            self._invoke(test, env, "down", "-v", check=False)
            self.state = TestState.TORN_DOWN
        return exits, failures

    def run(self, test: CompositionTest) -> TestResult:
        """
        Runs one test through its full lifecycle.

        Verification problems are collected into the result instead of raised.
        """
        self.state = TestState.CREATED
        descriptor = self.parser.parse(str(test.compose_file))
        definition = parse_test_definition(test.definition_file, self.config.test_timeout)
        fingerprint = self.fingerprint(test, descriptor)
        if self.is_up_to_date(test, fingerprint):
            logger.info("%s is up to date", test.id)
            return TestResult(project=test.project, name=test.name, passed=True, skipped=True)

        output_dir = self.output_dir(test)
        output_dir.mkdir(parents=True, exist_ok=True)
        env = self.environment(descriptor, definition)

        # Left-overs of an interrupted run.
        self._invoke(test, env, "down", "-v", check=False)
        if self.guard is not None:
            self.guard.register(f"down {test.id}", lambda: self._invoke(test, env, "down", "-v", check=False))

        failures: List[str] = []
        try:
            self.pull(test, descriptor, env)
            failures += self.up(test, definition, env)
        except DockgraphError as e:
            failures.append(str(e))
        finally:
            outcome = self.state
            exits, teardown_failures = self.tear_down(test, env)
        failures += teardown_failures

        # Nothing ran when pulling failed, there are no exit codes to judge.
        if outcome not in (TestState.CREATED, TestState.PULLED):
            try:
                check_exit_codes(exits, definition.exit_codes, descriptor.services)
            except ExitCodeMismatchError as e:
                outcome = TestState.EXIT_CODE_MISMATCH
                failures += e.failures

        passed = not failures
        if passed:
            self._inputs_file(test).write_text(json.dumps({"fingerprint": fingerprint}))
        else:
            logger.error("%s failed:\n  %s", test.id, "\n  ".join(failures))
        return TestResult(project=test.project, name=test.name, passed=passed, outcome=outcome, exits=exits,
                          failures=failures, log_path=output_dir / "compose.log")


def raise_for_failures(results: Iterable[TestResult]) -> None:
    """Raises one error describing every failed test."""
    failures = []
    for result in results:
        failures += [f"{result.id}: {f}" for f in result.failures]
    if failures:
        raise VerificationError("Tests failed", failures)
