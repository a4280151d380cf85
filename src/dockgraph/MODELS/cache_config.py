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
Models for the build cache backends passed to the image builder.

Each backend is toggled for import and export independently. Several may be
enabled at once; the composer emits separate directives for each.
"""
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


class CacheMode(str, Enum):
    """
    Which layers are exported.

    - min: only layers of the resulting image
    - max: layers of every intermediate step
    """
    MIN = "min"
    MAX = "max"


class CacheBackend(BaseModel):
    """Fields every backend shares."""
    enable_import: bool = False
    enable_export: bool = False
    mode: Optional[CacheMode] = None


class InlineCache(CacheBackend):
    """Embeds cache metadata in the image itself, pushed together with it."""


class RegistryCache(CacheBackend):
    """Pushes the cache as a separate image to a registry repository."""
    repository: str = ""
    tag_prefix: str = "cache"
    # estargz should be used with oci-mediatypes=true.
    compression: str = "estargz"
    # gzip and estargz accept 0-9, zstd 0-22.
    compression_level: int = Field(default=5, ge=0, le=22)
    user: str = ""
    password: str = ""
    # The local registry accepts pushes without credentials.
    local: bool = False

    @property
    def has_credentials(self) -> bool:
        return self.local or bool(self.user and self.password)


class LocalCache(CacheBackend):
    """Exports the cache to a directory on the host, one sub-directory per image."""
    directory: Path = Path("build") / "cache"
    compression: str = "estargz"
    compression_level: int = Field(default=5, ge=0, le=22)


class GitHubActionsCache(CacheBackend):
    """CI-native cache, addressed through the runtime endpoint/token pair."""
    url: str = ""
    token: str = ""

    @property
    def has_credentials(self) -> bool:
        return bool(self.url and self.token)


class S3Cache(CacheBackend):
    """Stores cache metadata and layers in an S3 compatible bucket."""
    region: str = "us-east-1"
    bucket: str = "dockgraph-build-cache"
    endpoint_url: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)


class CacheBackendConfig(BaseModel):
    """
    All cache backends known to the composer, in the order their directives
    are emitted.
    """
    inline: InlineCache = Field(default_factory=InlineCache)
    registry: RegistryCache = Field(default_factory=RegistryCache)
    local: LocalCache = Field(default_factory=LocalCache)
    gha: GitHubActionsCache = Field(default_factory=GitHubActionsCache)
    s3: S3Cache = Field(default_factory=S3Cache)

    def export_mode(self, backend: CacheBackend, to_mode: str) -> str:
        """
        Mode for a backend's export directive.

        :param backend: One of the backends above.
        :param to_mode: The run-wide "inline", "min" or "max" setting.
        :return: "min" or "max".
        """
        if backend.mode is not None:
            return backend.mode.value
        if to_mode in (CacheMode.MIN.value, CacheMode.MAX.value):
            return to_mode
        return CacheMode.MAX.value
