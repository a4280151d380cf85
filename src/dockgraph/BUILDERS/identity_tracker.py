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
Tracking of built image identity, used to skip work when nothing changed.
"""
import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from ..exceptions import EngineError, VerificationError
from ..MODELS.identity import ApproximateDigest, BuildMetadataRecord
from ..RUNNERS.docker_cli import DockerCli

logger = logging.getLogger(__name__)


def is_up_to_date(previous: Optional[ApproximateDigest], current: ApproximateDigest) -> bool:
    """
    True iff a previous digest was recorded and equals the current one.
    """
    return previous is not None and previous == current


def read_metadata_field(record: BuildMetadataRecord, field: str) -> str:
    """
    Reads one field of a build metadata file.

    :param record: The metadata file.
    :param field: Field name, e.g. "containerimage.digest".
    :return: The trimmed value, or "" before the first build.
    :raises EngineError: The file is not a JSON object.
    :raises VerificationError: The file exists but lacks the field.
    """
    if not record.exists:
        return ""
    try:
        data = json.loads(record.path.read_text())
    except json.JSONDecodeError as e:
        raise EngineError(f"Malformed build metadata {record.path}: {e}") from e
    if not isinstance(data, dict):
        raise EngineError(f"Malformed build metadata {record.path}: expected an object")
    if field not in data:
        raise VerificationError(f"Build metadata {record.path} has no field '{field}'")
    return str(data[field]).strip()


def read_digest(path: Path) -> Optional[ApproximateDigest]:
    """Loads a persisted approximate digest, None if there is none yet."""
    if not path.exists():
        return None
    try:
        return ApproximateDigest.model_validate_json(path.read_text())
    except ValidationError as e:
        raise EngineError(f"Malformed digest file {path}: {e}") from e


def write_digest(path: Path, digest: ApproximateDigest):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(digest.to_json())


class IdentityTracker:
    """
    Derives image identity from the engine.
    """
    def __init__(self, docker: DockerCli):
        self.docker = docker

    def compute_approximate_digest(self, image_ref: str) -> ApproximateDigest:
        """
        Extracts configuration and filesystem layer identity of a local image.

        :param image_ref: Reference of a loaded image.
        :return: The approximate digest.
        :raises ImageNotFoundError: The engine has no such image.
        """
        info = self.docker.image_inspect(image_ref)
        return ApproximateDigest(config=info.get("Config") or {}, root_fs=info.get("RootFS") or {})

    def images_exist(self, references: Iterable[str]) -> bool:
        """True if every reference is loaded in the engine."""
        for ref in references:
            if not self.docker.image_exists(ref):
                logger.debug("Image %s is not loaded", ref)
                return False
        return True
