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
Version control facts gathered once per run.
"""
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

from ..RUNNERS.process_runner import CommandRunner
from .tags import default_tags, sanitize_tag

logger = logging.getLogger(__name__)


class RepoInfo(BaseModel):
    """
    Commit, branch and tag information of the checkout being built.

    Computed once and passed by value, so every Build Step of a run sees
    the same state.
    """
    commit: str = ""
    branch: str = "main"
    commit_tags: List[str] = []
    all_tags: List[str] = []
    # Seconds since epoch of the HEAD commit, used as SOURCE_DATE_EPOCH.
    commit_time: str = "0"

    @property
    def sanitized_branch(self) -> str:
        return sanitize_tag(self.branch)

    def default_tags(self) -> List[str]:
        return default_tags(self.commit_tags, self.all_tags, self.branch)

    @classmethod
    def from_git(cls,
                 root: Path,
                 runner: Optional[CommandRunner] = None,
                 env: Optional[Dict[str, str]] = None) -> "RepoInfo":
        """
        Reads the repository state with git.

        On CI the checkout is usually detached, so the branch is taken from
        GITHUB_HEAD_REF (pull requests) or GITHUB_REF_NAME instead.

        :param root: Directory inside the working tree.
        :param runner: Command runner, a real one when None.
        :param env: Environment to consult, os.environ when None.
        """
        runner = runner or CommandRunner()
        env = os.environ if env is None else env

        def git(*args: str) -> str:
            return runner.run(["git", *args], cwd=str(root)).output.strip()

        branch = env.get("GITHUB_HEAD_REF") or env.get("GITHUB_REF_NAME")
        if not branch:
            branch = git("rev-parse", "--abbrev-ref", "HEAD")

        info = cls(
            commit=git("rev-parse", "HEAD"),
            branch=branch,
            commit_tags=git("tag", "--points-at", "HEAD").split(),
            all_tags=git("tag", "--list").split(),
            commit_time=git("log", "-1", "--pretty=%ct") or "0",
        )
        logger.debug("Repository at %s on branch %s", info.commit, info.branch)
        return info
