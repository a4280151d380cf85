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
Parsers for Dockerfiles, extracting instructions and references to sibling images.
"""
import json
import re
from typing import Iterable, List, Set

from ..MODELS.dockerfile_ast import Instruction

# Definition files are templated, so sibling images are always written as
# ${repository}/<name>:<tag> or ${repository}/<name>@<digest>.
REQUIRED_IMAGE_PATTERN = re.compile(r"\$\{repository\}/(?P<image>[^:@/\s\"'}]+)(?=[:@])")


def resolve(file_text: str, all_project_names: Iterable[str]) -> Set[str]:
    """
    Finds the sibling projects an image definition depends on.

    References that do not name a known project are assumed to be external,
    already published images and are dropped.

    :param file_text: Content of the image definition file.
    :param all_project_names: Names of every buildable project.
    :return: Names of the upstream projects, possibly empty.
    """
    known = set(all_project_names)
    found = set()
    for line in file_text.splitlines():
        for match in REQUIRED_IMAGE_PATTERN.finditer(line):
            found.add(match.group("image"))
    return found & known


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(dockerfile_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        instructions = []

        content = re.sub(r'^\s*#.*$', '', content, flags=re.MULTILINE)
        # Only a backslash directly before the newline continues a line.
        content = re.sub(r'\\\s*\n', ' ', content)

        pattern = re.compile(r'^\s*([A-Za-z]+)\s+(.*)$', re.MULTILINE)

        for match in pattern.finditer(content):
            inst = match.group(1).upper()
            args_str = match.group(2).strip()

            if args_str.startswith('[') and args_str.endswith(']'):
                try:
                    args = json.loads(args_str)
                except json.JSONDecodeError:
                    args = [args_str]
            else:
                args = args_str.split() if inst in ("FROM", "ARG") else [args_str]

            instructions.append(Instruction(
                instruction=inst,
                arguments=[str(a) for a in args],
                raw=match.group(0).strip()
            ))

        return instructions

    def base_images(self, content: str) -> List[str]:
        """
        Lists the images named by FROM instructions, skipping stage aliases.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[str]: Image references in order of appearance.
        """
        images = []
        stages = set()
        for inst in self.parse_from_string(content):
            if inst.instruction != "FROM":
                continue
            args = [a for a in inst.arguments if not a.startswith("--")]
            if not args:
                continue
            if args[0].lower() not in stages:
                images.append(args[0])
            if len(args) >= 3 and args[1].upper() == "AS":
                stages.add(args[2].lower())
        return images
