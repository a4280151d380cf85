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
Builders for turning one project's Dockerfile into a tagged image, skipping
the work when neither inputs nor the resulting image changed.
"""
import hashlib
import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

from ..exceptions import DockgraphError, ImageNotFoundError
from ..MODELS.identity import (
    CONFIG_DIGEST_FIELD,
    IMAGE_DIGEST_FIELD,
    ApproximateDigest,
    BuildMetadataRecord,
)
from ..MODELS.image_descriptor import BuildContext, ImageDescriptor, Project
from ..MODELS.orchestration_config import BuilderDriver, OrchestrationConfig
from ..RUNNERS.docker_cli import DockerCli
from ..UTILS.repo_info import RepoInfo
from .command_composer import BuildOptions, CacheScope, compose
from .identity_tracker import (
    IdentityTracker,
    is_up_to_date,
    read_digest,
    read_metadata_field,
    write_digest,
)

logger = logging.getLogger(__name__)

METADATA_FILE = "build.json"
DIGEST_FILE = "digest.json"
INPUTS_FILE = "build-inputs.json"


class BuildState(str, Enum):
    IDLE = "idle"
    CONTEXT_PREPARED = "context-prepared"
    COMPOSED = "composed"
    BUILDING = "building"
    VERIFYING = "verifying"
    UP_TO_DATE = "up-to-date"
    BUILT = "built"
    FAILED = "failed"
    # An upstream step failed, this one never started.
    SKIPPED = "skipped"


class BuildResult(BaseModel):
    """Terminal outcome of one Build Step."""
    project: str
    state: BuildState
    references: List[str] = []
    digest: str = ""
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state in (BuildState.UP_TO_DATE, BuildState.BUILT)


def digest_path(config: OrchestrationConfig, project: str) -> Path:
    """Where a project's approximate digest is persisted."""
    return config.project_build_dir(project) / DIGEST_FILE


def image_descriptor(config: OrchestrationConfig, repo: RepoInfo, project: str) -> ImageDescriptor:
    """The image a project builds to, with the configured or derived tags."""
    return ImageDescriptor(
        repository=config.image_repository,
        name=project,
        tags=config.tags or repo.default_tags(),
    )


def registry_host(repository: str) -> str:
    """The registry part of a repository, empty for the central registry."""
    first = repository.split("/")[0]
    if "." in first or ":" in first or first == "localhost":
        return first
    return ""


# The CI cache endpoint and its token change from job to job.
CI_CACHE_CREDENTIALS = re.compile(r",(?:url|token)=[^,]*")


def stable_arguments(command: List[str]) -> List[str]:
    """The command line without values that change between otherwise identical runs."""
    return [CI_CACHE_CREDENTIALS.sub("", arg) if arg.startswith("type=gha") else arg for arg in command]


class BuildStep:
    """
    Builds the image of a single project.

    Moves IDLE -> CONTEXT_PREPARED -> COMPOSED and then either straight to
    UP_TO_DATE, or BUILDING -> VERIFYING -> BUILT. Any error ends in FAILED.
    """
    def __init__(self,
                 project: Project,
                 config: OrchestrationConfig,
                 repo: RepoInfo,
                 docker: DockerCli,
                 upstream: Optional[List[str]] = None):
        """
        Args:
            project: The project to build.
            config: Run configuration.
            repo: Version control state of the run.
            docker: Engine access.
            upstream: Projects whose images this one is built from.
        """
        self.project = project
        self.config = config
        self.repo = repo
        self.docker = docker
        self.tracker = IdentityTracker(docker)
        self.upstream = sorted(upstream or [])

        self.build_dir = config.project_build_dir(project.name)
        self.metadata = BuildMetadataRecord(path=self.build_dir / METADATA_FILE)
        self.digest_file = self.build_dir / DIGEST_FILE
        self.inputs_file = self.build_dir / INPUTS_FILE

        self.state = BuildState.IDLE
        self.history: List[BuildState] = [BuildState.IDLE]
        self.context: Optional[BuildContext] = None
        self.image: Optional[ImageDescriptor] = None
        self.command: List[str] = []

    def _transition(self, state: BuildState):
        logger.debug("%s: %s -> %s", self.project.name, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    @property
    def name(self) -> str:
        return self.project.name

    def prepare_context(self):
        """
        Snapshots the build context and checks that every upstream image was
        recorded by its own Build Step.
        """
        if not self.project.dockerfile.exists():
            raise DockgraphError(f"Missing required file {self.project.dockerfile}")
        for dep in self.upstream:
            path = digest_path(self.config, dep)
            if not path.exists():
                raise DockgraphError(f"Upstream image '{dep}' has not been built, {path} is missing")
        self.context = self.project.build_context()
        self._transition(BuildState.CONTEXT_PREPARED)

    @property
    def tags(self) -> List[str]:
        return self.config.tags or self.repo.default_tags()

    def build_environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({
            "SOURCE_DATE_EPOCH": self.repo.commit_time,
            "BUILDX_BUILDER": self.config.builder_name,
            "REPOSITORY": self.config.image_repository,
            "TAGS": ",".join(self.tags),
        })
        return env

    def compose_command(self):
        """Derives the image tags and the full build command line."""
        self.image = image_descriptor(self.config, self.repo, self.project.name)
        scope = CacheScope(
            branch=self.repo.sanitized_branch,
            commit=self.repo.commit,
            primary_branch=self.config.primary_branch,
        )
        composed = compose(
            self.image,
            self.config.cache,
            self.config.platforms,
            push=self.config.push,
            load=self.config.should_load,
            scope=scope,
            to_mode=self.config.resolved_cache_to_mode,
        )
        options = BuildOptions(
            builder=self.config.builder_name,
            dockerfile=self.project.dockerfile,
            metadata_file=self.metadata.path,
            context=self.project.directory,
            build_args={"repository": self.config.image_repository, "tag": self.image.tags[0]},
            no_cache=self.config.no_cache,
            pull=self.config.pull,
        )
        self.command = options.to_args(composed)
        self._transition(BuildState.COMPOSED)

    def fingerprint(self) -> str:
        """
        Hash over everything that feeds the build: context files, the
        definition file, upstream digests and the command line.
        """
        sha = hashlib.sha256()
        for relative in self.context.files():
            sha.update(relative.as_posix().encode())
            sha.update(hashlib.sha256((self.context.source_dir / relative).read_bytes()).digest())
        sha.update(self.project.dockerfile.read_bytes())
        for dep in self.upstream:
            sha.update(dep.encode())
            sha.update(digest_path(self.config, dep).read_bytes())
        sha.update("\0".join(stable_arguments(self.command)).encode())
        return sha.hexdigest()

    def _previous_fingerprint(self) -> Optional[str]:
        if not self.inputs_file.exists():
            return None
        return json.loads(self.inputs_file.read_text()).get("fingerprint")

    @property
    def expects_local_image(self) -> bool:
        return self.config.should_load or self.config.pull_after_push or self.config.driver == BuilderDriver.LOCAL

    def is_up_to_date(self, fingerprint: str) -> bool:
        """
        The cache-hit check, made before any build subprocess starts.
        """
        if not self.metadata.exists or self._previous_fingerprint() != fingerprint:
            return False
        previous = read_digest(self.digest_file)
        if previous is None:
            return False
        if not self.expects_local_image:
            return True
        try:
            current = self.tracker.compute_approximate_digest(self.image.primary_reference)
        except ImageNotFoundError:
            return False
        return is_up_to_date(previous, current)

    def _login(self):
        registry = self.config.registry
        if not self.config.push or self.config.uses_local_registry or not registry.has_credentials:
            return
        self.docker.login(registry_host(self.config.image_repository), registry.user, registry.password)

    def build(self):
        """Runs the builder with the composed command line."""
        self._transition(BuildState.BUILDING)
        self._login()
        self.build_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Building %s", ", ".join(self.image.references))
        self.docker.runner.run(
            self.command,
            cwd=str(self.project.directory),
            env=self.build_environment(),
            timeout=self.config.build_timeout,
        )

    @property
    def digest_field(self) -> str:
        # The engine's own builder reports the loaded config digest when pushing.
        if self.config.builder_name == "default" and self.config.push:
            return CONFIG_DIGEST_FIELD
        return IMAGE_DIGEST_FIELD

    def verify(self) -> str:
        """
        Checks the build produced what downstream steps need, then records
        the approximate digest.

        :return: Digest reported by the builder.
        :raises ImageNotFoundError: The image should be loaded but is not.
        """
        self._transition(BuildState.VERIFYING)
        digest = read_metadata_field(self.metadata, self.digest_field)
        if self.config.pull_after_push:
            for ref in self.image.references:
                self.docker.pull(ref)
        if self.config.should_load and not self.tracker.images_exist(self.image.references):
            raise ImageNotFoundError(self.image.primary_reference)

        if self.expects_local_image:
            approximate = self.tracker.compute_approximate_digest(self.image.primary_reference)
        else:
            # Nothing to inspect locally, the builder's digest stands in.
            approximate = ApproximateDigest(config={"Digest": digest})
        write_digest(self.digest_file, approximate)
        return digest

    def run(self) -> BuildResult:
        """
        Drives the step to a terminal state.

        Errors are converted into a FAILED result here, so sibling steps keep
        going.
        """
        digest = ""
        try:
            self.prepare_context()
            self.compose_command()
            fingerprint = self.fingerprint()
            if self.is_up_to_date(fingerprint):
                logger.info("%s is up to date", self.name)
                self._transition(BuildState.UP_TO_DATE)
                digest = read_metadata_field(self.metadata, self.digest_field)
            else:
                self.build()
                digest = self.verify()
                self.inputs_file.write_text(json.dumps({"fingerprint": fingerprint}))
                self._transition(BuildState.BUILT)
        except (DockgraphError, OSError, ValueError) as e:
            logger.error("%s failed: %s", self.name, e)
            self._transition(BuildState.FAILED)
            return BuildResult(project=self.name, state=self.state, error=str(e),
                               references=self.image.references if self.image else [])
        return BuildResult(project=self.name, state=self.state, digest=digest, references=self.image.references)
