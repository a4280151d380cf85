"""
Unit tests for registry and builder lifecycle management.
"""
from pathlib import Path

import pytest

from dockgraph.config import load_config
from dockgraph.exceptions import ConfigurationError, EngineError
from dockgraph.MANAGERS.builder_manager import BuilderManager, render_buildkitd_config
from dockgraph.MANAGERS.registry_manager import RegistryManager

RUNNING_BUILDER = "Name: dockgraph\nDriver: docker-container\n\nNodes:\nName: dockgraph0\nStatus: running\n"
STOPPED_BUILDER = "Name: dockgraph\nDriver: docker-container\n\nNodes:\nName: dockgraph0\nStatus: inactive\n"


def container_config(tmp_path, **overrides):
    values = {"driver": "container"}
    values.update(overrides)
    return load_config(tmp_path, overrides=values, env={})


def nothing_exists(runner):
    for kind in ("network", "volume", "container"):
        runner.on("docker", kind, "inspect", returncode=1)
    runner.on("docker", "buildx", "inspect", returncode=1)


def test_render_buildkitd_config_ci():
    content = render_buildkitd_config(is_ci=True)
    assert "[worker.oci]\n  enabled = true" in content
    assert "gc = true" in content
    assert "gckeepstorage = 8000" in content
    assert "registry" not in content


def test_render_buildkitd_config_local_registry():
    content = render_buildkitd_config(is_ci=False, registry="registry.dockgraph.dev:5000",
                                      cert=Path("/certs/cert.pem"), key=Path("/certs/key.pem"))
    assert "gc = false" in content
    assert '[registry."registry.dockgraph.dev:5000"]' in content
    assert 'ca = ["/certs/cert.pem"]' in content
    assert 'key = "/certs/key.pem"' in content
    assert content.endswith("\n")


def test_registry_container_options(tmp_path):
    config = container_config(tmp_path, **{"registry.bind-port": "true"}).registry
    options = RegistryManager(config, None).container_options()
    assert options[:4] == ["--network", "dockgraph-registry", "--network-alias", "registry.dockgraph.dev"]
    assert "REGISTRY_HTTP_ADDR=0.0.0.0:5000" in options
    assert "dockgraph-registry:/var/lib/registry" in options
    assert options[-2:] == ["-p", "5000:5000"]
    assert not any("TLS" in option for option in options)


def test_registry_tls_options(tmp_path):
    config = container_config(tmp_path, **{"registry.cert": "cert.pem", "registry.key": "key.pem"}).registry
    options = RegistryManager(config, None).container_options()
    assert "REGISTRY_HTTP_TLS_CERTIFICATE=/certs/cert.pem" in options
    assert f"{(tmp_path / 'cert.pem').resolve()}:/certs/cert.pem:ro" in options


def test_ensure_registry_creates_everything(tmp_path, runner, docker):
    nothing_exists(runner)
    runner.on("docker", "container", "inspect", "--format", "{{.State.Running}}", returncode=1)
    runner.on("docker", "container", "create", output="0123abcd\n")

    manager = RegistryManager(container_config(tmp_path).registry, docker)
    # Once started, report the container as running.
    runner.on("docker", "container", "start",
              action=lambda c: runner.on("docker", "container", "inspect", "--format", "{{.State.Running}}",
                                         output="true\n"))
    handle = manager.ensure_registry()

    assert handle.address == "registry.dockgraph.dev:5000"
    assert runner.ran("docker", "network", "create", "dockgraph-registry")
    assert runner.ran("docker", "volume", "create", "dockgraph-registry")
    create = runner.ran("docker", "container", "create")[0]
    assert create[3:5] == ["--name", "dockgraph-registry"]
    assert create[-1] == "registry:2"
    assert runner.ran("docker", "container", "start", "dockgraph-registry")


def test_ensure_registry_is_idempotent(tmp_path, runner, docker):
    runner.on("docker", "container", "inspect", "--format", "{{.State.Running}}", output="true\n")
    RegistryManager(container_config(tmp_path).registry, docker).ensure_registry()
    assert not runner.ran("docker", "network", "create")
    assert not runner.ran("docker", "volume", "create")
    assert not runner.ran("docker", "container", "create")
    assert not runner.ran("docker", "container", "start")


def test_ensure_registry_fails_when_not_running(tmp_path, runner, docker, monkeypatch):
    runner.on("docker", "container", "inspect", "--format", "{{.State.Running}}", output="false\n")
    manager = RegistryManager(container_config(tmp_path).registry, docker)
    monkeypatch.setattr(RegistryManager, "_wait_running", lambda self: False)
    with pytest.raises(EngineError):
        manager.ensure_registry()


def test_local_driver_needs_no_builder(tmp_path, runner, docker):
    handle = BuilderManager(load_config(tmp_path, env={}), docker).ensure_builder()
    assert handle.name == "default"
    assert runner.commands == []


def test_remote_builder_must_exist(tmp_path, runner, docker):
    runner.on("docker", "buildx", "inspect", returncode=1)
    config = load_config(tmp_path, overrides={"driver": "remote", "builder.name": "cluster"}, env={})
    with pytest.raises(ConfigurationError):
        BuilderManager(config, docker).ensure_builder()

    runner.on("docker", "buildx", "inspect", "cluster", returncode=0)
    assert BuilderManager(config, docker).ensure_builder().name == "cluster"


def test_container_builder_is_created_after_registry(tmp_path, runner, docker):
    nothing_exists(runner)
    runner.on("docker", "container", "inspect", "--format", "{{.State.Running}}", output="true\n")
    runner.on("docker", "container", "create", output="0123abcd\n")
    config = container_config(tmp_path)
    manager = BuilderManager(config, docker, marker_dir=tmp_path / "markers")
    manager.ensure_builder()

    create = runner.ran("docker", "buildx", "create")[0]
    assert runner.index("docker", "network", "create") < runner.index("docker", "buildx", "create")
    assert "image=moby/buildkit:v0.12.5,network=dockgraph-registry" in create
    assert create[-2:] == ["--name", "dockgraph"]
    assert (config.build_dir / "buildkitd.toml").exists()


def test_stopped_builder_is_bootstrapped(tmp_path, runner, docker):
    runner.on("docker", "container", "inspect", "--format", "{{.State.Running}}", output="true\n")
    runner.on("docker", "buildx", "inspect", "--builder", "dockgraph", output=STOPPED_BUILDER)
    BuilderManager(container_config(tmp_path), docker, marker_dir=tmp_path).ensure_builder()
    assert runner.ran("docker", "buildx", "inspect", "dockgraph", "--bootstrap")
    assert not runner.ran("docker", "buildx", "create")


def test_emulation_installed_once(tmp_path, runner, docker):
    config = container_config(tmp_path, platforms="linux/amd64,linux/arm64", push="true")
    manager = BuilderManager(config, docker, marker_dir=tmp_path / "markers")
    assert manager.needs_emulation("Linux", "x86_64")
    assert not manager.needs_emulation("Darwin", "x86_64")
    assert not manager.needs_emulation("Linux", "aarch64")

    manager.install_emulation()
    manager.install_emulation()
    assert len(runner.ran("docker", "container", "run", "--rm", "--privileged")) == 1


def test_destroy_all_order(tmp_path, runner, docker):
    runner.on("docker", "buildx", "inspect", "--builder", "dockgraph", output=RUNNING_BUILDER)
    runner.on("docker", "container", "inspect", "--format", "{{.State.Running}}", output="true\n")
    BuilderManager(container_config(tmp_path), docker).destroy_all()

    order = [runner.index("docker", "buildx", "stop"),
             runner.index("docker", "buildx", "rm"),
             runner.index("docker", "container", "stop"),
             runner.index("docker", "container", "rm"),
             runner.index("docker", "network", "rm"),
             runner.index("docker", "volume", "rm")]
    assert order == sorted(order)


def test_disk_usage_and_prune_need_running_builder(tmp_path, runner, docker):
    manager = BuilderManager(container_config(tmp_path), docker)
    runner.on("docker", "buildx", "inspect", returncode=1)
    assert manager.disk_usage() == ""
    assert manager.prune() == ""

    runner.on("docker", "buildx", "inspect", "--builder", "dockgraph", output=RUNNING_BUILDER)
    runner.on("docker", "buildx", "du", output="Total: 1.2GB\n")
    assert manager.disk_usage() == "Total: 1.2GB\n"
    manager.prune()
    assert runner.ran("docker", "buildx", "prune", "--builder", "dockgraph", "--force")
