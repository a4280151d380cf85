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
Utilities for downloading artifacts and verifying their checksums.
"""
import hashlib
import logging
import shutil
import urllib.error
import urllib.request
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..exceptions import ChecksumMismatchError, EngineError

logger = logging.getLogger(__name__)


def sha256sum(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def default_destination(url: str, downloads_dir: Path) -> Path:
    """The last path segment of the URL inside the downloads directory."""
    filename = Path(urlparse(url).path).name or "download"
    return downloads_dir / filename


@retry(
    retry=retry_if_exception_type(urllib.error.URLError),
    wait=wait_fixed(2),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _fetch(url: str, dest: Path) -> None:
    logger.info("Downloading %s", url)
    with urllib.request.urlopen(url) as response, open(dest, "wb") as out:
        shutil.copyfileobj(response, out)


def download(url: str, sha256: str, dest: Optional[Path] = None, downloads_dir: Path = Path("build") / "downloads") -> Path:
    """
    Fetches a URL to a file and checks its SHA-256.

    Any previous file at the destination is replaced.

    :param url: Location of the artifact.
    :param sha256: Expected hex digest.
    :param dest: Target file, derived from the URL when None.
    :param downloads_dir: Directory used for derived destinations.
    :return: Path of the verified file.
    :raises ChecksumMismatchError: The content does not match `sha256`, the file is removed.
    :raises EngineError: The URL could not be fetched.
    """
    dest = Path(dest) if dest else default_destination(url, downloads_dir)
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.exists():
        dest.unlink()
    try:
        _fetch(url, dest)
    except urllib.error.URLError as e:
        dest.unlink(missing_ok=True)
        raise EngineError(f"Failed to download {url}: {e.reason}") from e
    calculated = sha256sum(dest)
    if calculated != sha256.lower():
        dest.unlink()
        raise ChecksumMismatchError(str(dest), sha256, calculated)
    logger.info("Verified %s", dest)
    return dest
