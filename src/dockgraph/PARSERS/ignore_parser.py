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
Parsers for .dockerignore files and matching of their patterns.
"""
import fnmatch
from pathlib import Path
from typing import List


def parse_ignore_file(path: Path) -> List[str]:
    """
    Reads exclusion patterns from an ignore file.

    :param path: Path to the ignore file, may not exist.
    :return: Patterns in file order, comments and blank lines removed.
    """
    if not path.exists():
        return []
    return parse_ignore_string(path.read_text())


def parse_ignore_string(content: str) -> List[str]:
    patterns = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        # Patterns are relative to the context root.
        if line.startswith("/"):
            line = line[1:]
        if line.startswith("!/"):
            line = "!" + line[2:]
        patterns.append(line.rstrip("/"))
    return patterns


def _matches(relative_path: str, pattern: str) -> bool:
    if pattern == "**":
        return True
    if fnmatch.fnmatchcase(relative_path, pattern):
        return True
    if pattern.startswith("**/") and fnmatch.fnmatchcase(relative_path, pattern[3:]):
        return True
    # A matched directory excludes everything below it.
    parts = relative_path.split("/")
    for i in range(1, len(parts)):
        if fnmatch.fnmatchcase("/".join(parts[:i]), pattern):
            return True
    return False


def is_excluded(relative_path: str, patterns: List[str]) -> bool:
    """
    Checks a context-relative path against ignore patterns.

    Later patterns win; a leading "!" re-includes a previously excluded path.

    :param relative_path: POSIX path relative to the context root.
    :param patterns: Patterns from :func:`parse_ignore_file`.
    :return: True if the path is excluded from the context.
    """
    excluded = False
    for pattern in patterns:
        negate = pattern.startswith("!")
        if negate:
            pattern = pattern[1:]
        if _matches(relative_path, pattern):
            excluded = not negate
    return excluded
