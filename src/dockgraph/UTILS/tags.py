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
Utilities for deriving registry-safe image tags from version control state.
"""
import re
from typing import Iterable, List, Optional, Tuple

UNSAFE_TAG_CHARACTERS = re.compile(r"[^a-zA-Z0-9._-]")
RELEASE_VERSION = re.compile(r"^(?P<major>[0-9]+)\.(?P<minor>[0-9]+)\.(?P<patch>[0-9]+)$")


def sanitize_tag(value: str) -> str:
    """
    Replaces every character a registry does not accept in a tag with "-".

    >>> sanitize_tag("feature/foo bar")
    'feature-foo-bar'
    """
    return UNSAFE_TAG_CHARACTERS.sub("-", value)


def parse_version(tag: str) -> Optional[Tuple[int, int, int]]:
    """Returns (major, minor, patch) for a plain X.Y.Z tag, None for anything else, prereleases included."""
    match = RELEASE_VERSION.match(tag)
    if not match:
        return None
    return int(match.group("major")), int(match.group("minor")), int(match.group("patch"))


def is_latest(version: str, all_tags: Iterable[str]) -> bool:
    """
    Checks whether a release is the highest release in the repository.

    :param version: An X.Y.Z tag.
    :param all_tags: Every tag in the repository, prereleases are ignored.
    """
    parsed = parse_version(version)
    if parsed is None:
        return False
    releases = [v for v in (parse_version(t) for t in all_tags) if v is not None]
    return all(parsed >= other for other in releases)


def default_tags(commit_tags: Iterable[str], all_tags: Iterable[str], branch: str) -> List[str]:
    """
    Derives the tag set used when none is configured.

    A release tag on the current commit yields the exact version, major.minor
    and major, plus "latest" when it is the highest release. Otherwise the
    sanitized branch name is used.

    :param commit_tags: Tags pointing at the current commit.
    :param all_tags: Every tag in the repository.
    :param branch: Current branch name.
    :return: Ordered, de-duplicated tags.
    """
    all_tags = list(all_tags)
    releases = [t for t in commit_tags if parse_version(t) is not None]
    if not releases:
        return [sanitize_tag(branch)]

    version = max(releases, key=parse_version)
    major, minor, _ = parse_version(version)
    tags = [version, f"{major}.{minor}", str(major)]
    if is_latest(version, all_tags + [version]):
        tags.append("latest")
    return tags


def split_tags(value: str) -> List[str]:
    """Parses a comma separated tag option into sanitized, de-duplicated tags."""
    tags = [sanitize_tag(t.strip()) for t in value.split(",")]
    return list(dict.fromkeys(t for t in tags if t))
