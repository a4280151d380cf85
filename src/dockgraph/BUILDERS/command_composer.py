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
Composition of image build command lines from the image, cache and output settings.

compose() is pure apart from warnings: identical inputs always yield the
same argument list.
"""
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from ..MODELS.cache_config import CacheBackendConfig
from ..MODELS.image_descriptor import ImageDescriptor

logger = logging.getLogger(__name__)


class CacheScope(BaseModel):
    """Version control names that cache references are keyed on."""
    branch: str = "main"
    commit: str = ""
    primary_branch: str = "main"


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


def _flags(flag: str, values: Iterable[str]) -> List[str]:
    args = []
    for value in values:
        args += [flag, value]
    return args


def _inline(image: ImageDescriptor, cache: CacheBackendConfig, to_mode: str) -> List[str]:
    args = []
    if cache.inline.enable_import:
        # Always look in latest, so a new branch gets hits from the trunk.
        refs = _unique([image.reference("latest")] + image.references)
        args += _flags("--cache-from", [f"type=registry,ref={ref}" for ref in refs])
    # An inline to-mode turns a registry export into an inline one.
    if cache.inline.enable_export or (to_mode == "inline" and cache.registry.enable_export):
        args += ["--cache-to", "type=inline"]
    return args


def _registry(image: ImageDescriptor, cache: CacheBackendConfig, scope: CacheScope, to_mode: str) -> List[str]:
    args = []
    backend = cache.registry
    repository = backend.repository or image.repository
    ref = f"{repository}/{image.name}"

    def tag(name):
        return f"{backend.tag_prefix}-{name}"

    if backend.enable_import:
        refs = _unique([f"{ref}:{tag(scope.primary_branch)}", f"{ref}:{tag(scope.branch)}"])
        args += _flags("--cache-from", [f"type=registry,ref={r}" for r in refs])
    if backend.enable_export and to_mode != "inline":
        if not backend.has_credentials:
            logger.warning("%s: skipping registry cache export, no credentials for %s", image.name, repository)
        else:
            args += ["--cache-to", ",".join([
                "type=registry",
                f"mode={cache.export_mode(backend, to_mode)}",
                f"compression={backend.compression}",
                f"compression-level={backend.compression_level}",
                f"ref={ref}:{tag(scope.branch)}",
            ])]
    return args


def _local(image: ImageDescriptor, cache: CacheBackendConfig, to_mode: str) -> List[str]:
    args = []
    backend = cache.local
    directory = Path(backend.directory) / image.name
    if backend.enable_import:
        args += ["--cache-from", f"type=local,src={directory}"]
    if backend.enable_export:
        args += ["--cache-to", ",".join([
            "type=local",
            f"dest={directory}",
            f"mode={cache.export_mode(backend, to_mode)}",
            f"compression={backend.compression}",
            f"compression-level={backend.compression_level}",
        ])]
    return args


def _gha(image: ImageDescriptor, cache: CacheBackendConfig, to_mode: str) -> List[str]:
    backend = cache.gha
    if not (backend.enable_import or backend.enable_export):
        return []
    if not backend.has_credentials:
        logger.warning("%s: skipping GitHub Actions cache, ACTIONS_CACHE_URL and ACTIONS_RUNTIME_TOKEN are required",
                       image.name)
        return []
    attributes = [f"scope={image.name}", f"url={backend.url}", f"token={backend.token}"]
    args = []
    if backend.enable_import:
        args += ["--cache-from", ",".join(["type=gha"] + attributes)]
    if backend.enable_export:
        args += ["--cache-to", ",".join(["type=gha"] + attributes + [f"mode={cache.export_mode(backend, to_mode)}"])]
    return args


def _s3(image: ImageDescriptor, cache: CacheBackendConfig, scope: CacheScope, to_mode: str) -> List[str]:
    args = []
    backend = cache.s3
    attributes = [f"region={backend.region}", f"bucket={backend.bucket}"]
    if backend.endpoint_url:
        attributes.append(f"endpoint_url={backend.endpoint_url}")
    if backend.has_credentials:
        attributes += [f"access_key_id={backend.access_key_id}", f"secret_access_key={backend.secret_access_key}"]

    # The commit is the exact match, branch and trunk are fallbacks.
    names = [f"{image.name}-{n}" for n in (scope.commit, scope.branch, scope.primary_branch) if n]
    if backend.enable_import:
        args += _flags("--cache-from", [",".join(["type=s3", f"name={n}"] + attributes) for n in _unique(names)])
    if backend.enable_export:
        if not backend.has_credentials:
            logger.warning("%s: skipping S3 cache export, no credentials", image.name)
        else:
            export_names = ";".join(_unique(f"{image.name}-{n}" for n in (scope.commit, scope.branch) if n))
            args += ["--cache-to", ",".join(
                ["type=s3", f"name={export_names}", f"mode={cache.export_mode(backend, to_mode)}"] + attributes
            )]
    return args


def output_directive(image: ImageDescriptor, push: bool, load: bool) -> str:
    """
    The single output directive of a build.

    The builder cannot push and load at once, push wins and the pushed tags
    are pulled afterwards.
    """
    names = ",".join(image.references)
    if push or not load:
        return f'type=image,"name={names}",push={str(push).lower()}'
    return f'type=docker,"name={names}"'


def compose(image: ImageDescriptor,
            cache: CacheBackendConfig,
            platforms: Iterable[str],
            push: bool,
            load: bool,
            scope: Optional[CacheScope] = None,
            to_mode: str = "max") -> List[str]:
    """
    Builds the platform, cache and output arguments for one image.

    :param image: Repository, name and tags of the image.
    :param cache: Enabled cache backends.
    :param platforms: Target platforms, empty for the host platform.
    :param push: Push the tags to the repository.
    :param load: Load the image into the engine, ignored when pushing.
    :param scope: Branch and commit the cache is keyed on.
    :param to_mode: "inline", "min" or "max".
    :return: Platform flag, then cache flags per backend in a fixed order, then the output flag.
    """
    scope = scope or CacheScope()
    args: List[str] = []
    # Sorted, a set of platforms has no stable iteration order across processes.
    platforms = sorted(set(platforms))
    if platforms:
        args += ["--platform", ",".join(platforms)]
    args += _inline(image, cache, to_mode)
    args += _registry(image, cache, scope, to_mode)
    args += _local(image, cache, to_mode)
    args += _gha(image, cache, to_mode)
    args += _s3(image, cache, scope, to_mode)
    args += ["--output", output_directive(image, push, load)]
    return args


class BuildOptions(BaseModel):
    """
    Every option of one `docker buildx build` invocation.
    """
    builder: str
    dockerfile: Path
    metadata_file: Path
    context: Path
    progress: str = "plain"
    build_args: Dict[str, str] = {}
    labels: Dict[str, str] = {}
    no_cache: bool = False
    pull: bool = False

    def to_args(self, composed: List[str]) -> List[str]:
        """
        Maps the options onto the command line, with the composed arguments
        placed before the context.
        """
        args = [
            "docker", "buildx", "build",
            "--builder", self.builder,
            "--progress", self.progress,
            "--file", str(self.dockerfile),
            "--metadata-file", str(self.metadata_file),
        ]
        for key, value in self.build_args.items():
            args += ["--build-arg", f"{key}={value}"]
        for key, value in self.labels.items():
            args += ["--label", f"{key}={value}"]
        if self.no_cache:
            args.append("--no-cache")
        if self.pull:
            args.append("--pull")
        return args + list(composed) + [str(self.context)]
