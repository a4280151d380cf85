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
Models for containers started by test runs.
"""
from pathlib import Path
from typing import Optional

from pydantic import BaseModel


class ContainerRunRecord(BaseModel):
    """
    Tracks one ad hoc container from start to removal.

    Created at start, updated at stop/inspect, and the container is removed
    at teardown.
    """
    container_id: str
    image: str
    log_path: Path
    name: str = ""
    exit_code: Optional[int] = None
    status: str = "created"
    removed: bool = False


class ServiceExit(BaseModel):
    """Exit state of one composition service after teardown."""
    service: str
    container_id: str
    exit_code: int
    status: str = ""
