"""
Unit tests for verified downloads, served from file:// URLs.
"""
import hashlib

import pytest

from dockgraph.exceptions import ChecksumMismatchError, EngineError
from dockgraph.UTILS.download import default_destination, download, sha256sum


def test_download_verifies_checksum(tmp_path):
    source = tmp_path / "tool.tar.gz"
    source.write_bytes(b"release artifact")
    expected = hashlib.sha256(b"release artifact").hexdigest()

    path = download(source.as_uri(), expected.upper(), downloads_dir=tmp_path / "downloads")
    assert path == tmp_path / "downloads" / "tool.tar.gz"
    assert path.read_bytes() == b"release artifact"
    assert sha256sum(path) == expected


def test_download_checksum_mismatch(tmp_path):
    source = tmp_path / "tool.tar.gz"
    source.write_bytes(b"tampered")
    dest = tmp_path / "out" / "tool"
    with pytest.raises(ChecksumMismatchError) as excinfo:
        download(source.as_uri(), "0" * 64, dest=dest)
    assert excinfo.value.expected == "0" * 64
    assert excinfo.value.calculated == hashlib.sha256(b"tampered").hexdigest()
    assert "Checksum does not match" in str(excinfo.value)
    assert not dest.exists()


def test_download_replaces_previous_file(tmp_path):
    source = tmp_path / "new"
    source.write_bytes(b"new")
    dest = tmp_path / "dest"
    dest.write_bytes(b"old content")
    download(source.as_uri(), hashlib.sha256(b"new").hexdigest(), dest=dest)
    assert dest.read_bytes() == b"new"


def test_default_destination(tmp_path):
    assert default_destination("https://example.com/a/b/grype.tar.gz?x=1", tmp_path) == tmp_path / "grype.tar.gz"
    assert default_destination("https://example.com/", tmp_path) == tmp_path / "download"


def test_download_unreachable_url(tmp_path):
    dest = tmp_path / "out" / "tool"
    with pytest.raises(EngineError) as excinfo:
        download((tmp_path / "missing.tar.gz").as_uri(), "0" * 64, dest=dest)
    assert "Failed to download" in str(excinfo.value)
    assert not dest.exists()
