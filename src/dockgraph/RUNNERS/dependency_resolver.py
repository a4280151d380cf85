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
Dependency resolution between image projects to determine build order.
"""
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from ..exceptions import ConfigurationError, DependencyCycleError
from ..MODELS.image_descriptor import Project
from ..PARSERS.dockerfile_parser import resolve

logger = logging.getLogger(__name__)

SKIPPED_DIRECTORIES = {"build", "tests", "node_modules"}


def discover_projects(root: Path) -> Dict[str, Project]:
    """
    Finds every directory below the root that contains a Dockerfile.

    Hidden directories, build output and test folders are not searched.

    :param root: Directory to search.
    :return: Project name to project.
    :raises ConfigurationError: Two projects share a directory name.
    """
    projects: Dict[str, Project] = {}
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d not in SKIPPED_DIRECTORIES)
        directory = Path(current)
        if directory == root or "Dockerfile" not in files:
            continue
        name = directory.name
        if name in projects:
            raise ConfigurationError(
                f"Duplicate project name '{name}': {projects[name].directory} and {directory}"
            )
        projects[name] = Project(name=name, directory=directory)
    return projects


class ProjectGraph:
    """
    Directed graph of projects, an edge pointing from a project to each
    sibling image its definition file references.
    """
    def __init__(self, projects: Dict[str, Project], edges: Dict[str, Set[str]]):
        self.projects = projects
        self.edges = edges
        self._check_cycles()

    @classmethod
    def discover(cls, root: Path) -> "ProjectGraph":
        """
        Discovers projects under `root` and resolves their dependencies.

        Every definition file is read once before any edge is added, so the
        full set of project names is known when references are matched.
        """
        projects = discover_projects(root)
        texts = {name: project.dockerfile.read_text() for name, project in projects.items()}
        return cls.from_texts(projects, texts)

    @classmethod
    def from_texts(cls, projects: Dict[str, Project], texts: Dict[str, str]) -> "ProjectGraph":
        names = set(projects)
        edges = {name: resolve(texts[name], names - {name}) for name in projects}
        for name, deps in sorted(edges.items()):
            if deps:
                logger.debug("%s depends on %s", name, ", ".join(sorted(deps)))
        return cls(projects, edges)

    def _check_cycles(self):
        visited: Set[str] = set()
        path: List[str] = []
        on_path: Set[str] = set()

        def visit(name: str):
            if name in on_path:
                raise DependencyCycleError(path[path.index(name):] + [name])
            if name in visited:
                return
            on_path.add(name)
            path.append(name)
            for dep in sorted(self.edges.get(name, ())):
                visit(dep)
            path.pop()
            on_path.remove(name)
            visited.add(name)

        for name in sorted(self.projects):
            visit(name)

    def dependencies(self, name: str) -> Set[str]:
        """Direct upstream projects of `name`."""
        return set(self.edges.get(name, ()))

    def order(self, targets: Optional[Iterable[str]] = None) -> List[str]:
        """
        Determines the build order using a topological sort.

        :param targets: Projects to build, every project when None.
        :return: Targets and their transitive dependencies, dependencies first.
        :raises ConfigurationError: A target is not a known project.
        """
        targets = sorted(self.projects) if targets is None else list(targets)
        unknown = [t for t in targets if t not in self.projects]
        if unknown:
            raise ConfigurationError(f"Unknown project(s): {', '.join(unknown)}")

        ordered: List[str] = []
        visited: Set[str] = set()

        def visit(name):
            if name in visited:
                return
            visited.add(name)
            for dep in sorted(self.edges.get(name, ())):
                visit(dep)
            ordered.append(name)

        for name in targets:
            visit(name)
        return ordered
