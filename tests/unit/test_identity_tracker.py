"""
Unit tests for image identity tracking.
"""
import json

import pytest

from dockgraph.BUILDERS.identity_tracker import (
    IdentityTracker,
    is_up_to_date,
    read_digest,
    read_metadata_field,
    write_digest,
)
from dockgraph.exceptions import CommandError, EngineError, ImageNotFoundError, VerificationError
from dockgraph.MODELS.identity import IMAGE_DIGEST_FIELD, ApproximateDigest, BuildMetadataRecord

INSPECT = [{
    "Id": "sha256:1111",
    "Created": "2024-01-01T00:00:00Z",
    "Config": {"Env": ["PATH=/usr/bin"], "Cmd": ["sh"]},
    "RootFS": {"Type": "layers", "Layers": ["sha256:aaaa", "sha256:bbbb"]},
}]


def test_is_up_to_date():
    digest = ApproximateDigest(config={"Cmd": ["sh"]}, root_fs={"Layers": ["sha256:aaaa"]})
    same = ApproximateDigest(config={"Cmd": ["sh"]}, root_fs={"Layers": ["sha256:aaaa"]})
    other_layers = ApproximateDigest(config={"Cmd": ["sh"]}, root_fs={"Layers": ["sha256:cccc"]})
    other_config = ApproximateDigest(config={"Cmd": ["bash"]}, root_fs={"Layers": ["sha256:aaaa"]})

    assert is_up_to_date(digest, same)
    assert not is_up_to_date(None, same)
    assert not is_up_to_date(digest, other_layers)
    assert not is_up_to_date(digest, other_config)


def test_read_metadata_field(tmp_path):
    record = BuildMetadataRecord(path=tmp_path / "build.json")
    assert read_metadata_field(record, IMAGE_DIGEST_FIELD) == ""

    record.path.write_text(json.dumps({IMAGE_DIGEST_FIELD: " sha256:abcd\n"}))
    assert read_metadata_field(record, IMAGE_DIGEST_FIELD) == "sha256:abcd"

    with pytest.raises(VerificationError):
        read_metadata_field(record, "containerimage.config.digest")

    record.path.write_text("{not json")
    with pytest.raises(EngineError):
        read_metadata_field(record, IMAGE_DIGEST_FIELD)


def test_digest_file_round_trip_uses_engine_field_names(tmp_path):
    path = tmp_path / "base" / "digest.json"
    assert read_digest(path) is None
    digest = ApproximateDigest(config={"Cmd": ["sh"]}, root_fs={"Layers": ["sha256:aaaa"]})
    write_digest(path, digest)
    assert json.loads(path.read_text()) == {"config": {"Cmd": ["sh"]}, "rootFS": {"Layers": ["sha256:aaaa"]}}
    assert read_digest(path) == digest


def test_compute_approximate_digest(runner, docker):
    runner.on("docker", "image", "inspect", output=json.dumps(INSPECT))
    digest = IdentityTracker(docker).compute_approximate_digest("localhost:5000/base:main")
    assert digest.config == INSPECT[0]["Config"]
    assert digest.root_fs == INSPECT[0]["RootFS"]
    assert runner.commands == [["docker", "image", "inspect", "localhost:5000/base:main"]]


def test_compute_approximate_digest_missing_image(runner, docker):
    runner.on("docker", "image", "inspect", returncode=1, output="No such image")
    with pytest.raises(ImageNotFoundError):
        IdentityTracker(docker).compute_approximate_digest("localhost:5000/base:main")


def test_compute_approximate_digest_engine_unreachable(runner, docker):
    runner.on("docker", "image", "inspect", returncode=1,
              output="Cannot connect to the Docker daemon at unix:///var/run/docker.sock")
    with pytest.raises(CommandError) as excinfo:
        IdentityTracker(docker).compute_approximate_digest("localhost:5000/base:main")
    assert not isinstance(excinfo.value, ImageNotFoundError)


def test_images_exist(runner, docker):
    runner.on("docker", "image", "inspect", "b:1", returncode=1)
    tracker = IdentityTracker(docker)
    assert tracker.images_exist(["a:1"])
    assert not tracker.images_exist(["a:1", "b:1"])
