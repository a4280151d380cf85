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
Models used to decide whether an image changed between builds.
"""
from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field

# Fields written by `docker buildx build --metadata-file`.
IMAGE_DIGEST_FIELD = "containerimage.digest"
CONFIG_DIGEST_FIELD = "containerimage.config.digest"


class ApproximateDigest(BaseModel):
    """
    Not the image digest but an approximation of it that ignores timestamps.

    Taken from the engine's view of a tagged image. Two images are unchanged
    iff both the configuration and the filesystem layers are equal.
    """
    model_config = ConfigDict(populate_by_name=True)

    config: Dict[str, Any] = {}
    root_fs: Dict[str, Any] = Field(default_factory=dict, alias="rootFS")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class BuildMetadataRecord(BaseModel):
    """
    Location of the flat JSON file produced by a build invocation.

    Read-only once written; missing until the first build of a project.
    """
    path: Path

    @property
    def exists(self) -> bool:
        return self.path.exists()
