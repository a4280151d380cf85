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
Models describing the image a Build Step produces and the context it is built from.
"""
from pathlib import Path
from typing import List

from pydantic import BaseModel, field_validator

from ..PARSERS.ignore_parser import is_excluded, parse_ignore_file


class ImageDescriptor(BaseModel):
    """
    Addresses every tag of one built image.

    repository + name + tag uniquely identifies a pullable image. Derived
    fresh on every run, never persisted.
    """
    repository: str
    name: str
    tags: List[str]

    @field_validator("tags")
    @classmethod
    def _tags_not_empty(cls, tags: List[str]) -> List[str]:
        if not tags:
            raise ValueError("an image needs at least one tag")
        # Keep first-seen order, drop duplicates.
        return list(dict.fromkeys(tags))

    def reference(self, tag: str) -> str:
        """Fully qualified reference for one tag."""
        return f"{self.repository}/{self.name}:{tag}"

    @property
    def references(self) -> List[str]:
        return [self.reference(tag) for tag in self.tags]

    @property
    def primary_reference(self) -> str:
        """The reference used to inspect the image after a build."""
        return self.reference(self.tags[0])


class BuildContext(BaseModel):
    """
    Snapshot of what is sent to the builder. Immutable during a run.
    """
    model_config = {"frozen": True}

    source_dir: Path
    dockerfile: Path
    excludes: List[str] = []

    def files(self) -> List[Path]:
        """
        Lists files in the context that are not excluded by the ignore patterns.

        :return: Sorted paths relative to the source directory.
        """
        result = []
        for path in sorted(self.source_dir.rglob("*")):
            if not path.is_file():
                continue
            relative = path.relative_to(self.source_dir)
            if is_excluded(relative.as_posix(), self.excludes):
                continue
            result.append(relative)
        return result


class Project(BaseModel):
    """
    A directory holding an image definition file. The directory name is the
    image name.
    """
    name: str
    directory: Path

    @property
    def dockerfile(self) -> Path:
        return self.directory / "Dockerfile"

    @property
    def tests_dir(self) -> Path:
        return self.directory / "tests"

    def build_context(self) -> BuildContext:
        """Snapshot of the context, honouring the project's .dockerignore."""
        return BuildContext(
            source_dir=self.directory,
            dockerfile=self.dockerfile,
            excludes=parse_ignore_file(self.directory / ".dockerignore"),
        )
