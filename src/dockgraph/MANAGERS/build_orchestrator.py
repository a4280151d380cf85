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
Orchestration of Build Steps across the project graph.
"""
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from ..BUILDERS.image_builder import BuildResult, BuildState, BuildStep
from ..MODELS.orchestration_config import OrchestrationConfig
from ..RUNNERS.dependency_resolver import ProjectGraph
from ..RUNNERS.docker_cli import DockerCli
from ..UTILS.repo_info import RepoInfo

logger = logging.getLogger(__name__)


class BuildReport(BaseModel):
    """Terminal state of every step of a run, in execution order."""
    results: List[BuildResult] = []

    @property
    def failed(self) -> List[BuildResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def succeeded(self) -> bool:
        return not self.failed

    def get(self, project: str) -> Optional[BuildResult]:
        for result in self.results:
            if result.project == project:
                return result
        return None

    def summary(self) -> List[str]:
        lines = []
        for result in self.results:
            line = f"{result.project:20} {result.state.value}"
            if result.error:
                line += f"  {result.error.splitlines()[0]}"
            lines.append(line)
        return lines


class BuildOrchestrator:
    """
    Runs the Build Steps of the requested projects and their dependencies.

    A step starts only after every upstream step reached a successful
    terminal state. When a step fails its dependents are SKIPPED while
    unrelated steps continue.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 graph: ProjectGraph,
                 repo: RepoInfo,
                 docker: DockerCli,
                 step_factory: Callable[..., BuildStep] = BuildStep):
        self.config = config
        self.graph = graph
        self.repo = repo
        self.docker = docker
        self.step_factory = step_factory

    def _step(self, name: str) -> BuildStep:
        return self.step_factory(
            self.graph.projects[name],
            self.config,
            self.repo,
            self.docker,
            upstream=sorted(self.graph.dependencies(name)),
        )

    def _run_step(self, name: str) -> BuildResult:
        logger.info("Starting build step %s", name)
        return self._step(name).run()

    def run(self, targets: Optional[Iterable[str]] = None) -> BuildReport:
        """
        Builds the targets in dependency order.

        :param targets: Project names, every project when None.
        :return: Report of terminal states.
        """
        order = self.graph.order(targets)
        pending = list(order)
        done: Dict[str, BuildResult] = {}
        running: Dict[Future, str] = {}
        report = BuildReport()

        def finish(result: BuildResult):
            done[result.project] = result
            report.results.append(result)

        with ThreadPoolExecutor(max_workers=self.config.jobs) as pool:
            while pending or running:
                for name in list(pending):
                    deps = self.graph.dependencies(name)
                    blocked = [d for d in deps if d in done and not done[d].succeeded]
                    if blocked:
                        pending.remove(name)
                        logger.warning("Skipping %s, upstream %s did not build", name, ", ".join(sorted(blocked)))
                        finish(BuildResult(project=name, state=BuildState.SKIPPED,
                                           error=f"upstream failed: {', '.join(sorted(blocked))}"))
                    elif all(d in done for d in deps) and len(running) < self.config.jobs:
                        pending.remove(name)
                        running[pool.submit(self._run_step, name)] = name

                if not running:
                    continue
                completed, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in completed:
                    running.pop(future)
                    finish(future.result())
        return report
