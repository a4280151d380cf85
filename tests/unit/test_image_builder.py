"""
Unit tests for Build Steps and their orchestration over the project graph.
"""
import json
import sys
from pathlib import Path

from dockgraph.BUILDERS.image_builder import BuildState, BuildStep, digest_path, registry_host, stable_arguments
from dockgraph.config import load_config
from dockgraph.exceptions import CommandError
from dockgraph.MANAGERS.build_orchestrator import BuildOrchestrator
from dockgraph.RUNNERS.dependency_resolver import ProjectGraph
from dockgraph.RUNNERS.process_runner import CommandRunner
from dockgraph.UTILS.repo_info import RepoInfo

REPO = RepoInfo(commit="abc123", branch="feature/x", commit_time="1700000000")

INSPECT = json.dumps([{
    "Config": {"Cmd": ["sh"]},
    "RootFS": {"Type": "layers", "Layers": ["sha256:aaaa"]},
}])


def write_project(root: Path, name: str, dockerfile: str):
    directory = root / name
    directory.mkdir(parents=True)
    (directory / "Dockerfile").write_text(dockerfile)
    (directory / "app.txt").write_text(f"{name}\n")


def write_metadata(command):
    path = Path(command[command.index("--metadata-file") + 1])
    path.write_text(json.dumps({"containerimage.digest": f"sha256:{path.parent.name}"}))


def fake_engine(runner, fail=()):
    def build(command):
        context = Path(command[-1]).name
        if context in fail:
            raise CommandError(command, 1, "failed to solve")
        write_metadata(command)

    runner.on("docker", "buildx", "build", action=build)
    runner.on("docker", "image", "inspect", output=INSPECT)


def builds(runner):
    return [Path(c[-1]).name for c in runner.ran("docker", "buildx", "build")]


def test_registry_host():
    assert registry_host("registry.example.com/team") == "registry.example.com"
    assert registry_host("localhost:5000") == "localhost:5000"
    assert registry_host("team") == ""


def test_build_step_builds_then_is_up_to_date(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    fake_engine(runner)
    config = load_config(tmp_path, env={})
    graph = ProjectGraph.discover(config.root)

    step = BuildStep(graph.projects["base"], config, REPO, docker)
    result = step.run()
    assert result.state == BuildState.BUILT
    assert result.digest == "sha256:base"
    assert result.references == ["local/base:feature-x"]
    assert step.history == [BuildState.IDLE, BuildState.CONTEXT_PREPARED, BuildState.COMPOSED,
                            BuildState.BUILDING, BuildState.VERIFYING, BuildState.BUILT]
    assert digest_path(config, "base").exists()

    call = runner.calls[runner.index("docker", "buildx", "build")]
    assert call["env"]["SOURCE_DATE_EPOCH"] == "1700000000"
    assert call["env"]["TAGS"] == "feature-x"
    assert call["timeout"] == config.build_timeout
    assert call["command"][-3:-1] == ['--output', 'type=docker,"name=local/base:feature-x"']

    again = BuildStep(graph.projects["base"], config, REPO, docker)
    result = again.run()
    assert result.state == BuildState.UP_TO_DATE
    assert result.digest == "sha256:base"
    assert len(builds(runner)) == 1


def test_changed_context_rebuilds(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    fake_engine(runner)
    config = load_config(tmp_path, env={})
    graph = ProjectGraph.discover(config.root)
    BuildStep(graph.projects["base"], config, REPO, docker).run()

    (tmp_path / "base" / "app.txt").write_text("changed\n")
    assert BuildStep(graph.projects["base"], config, REPO, docker).run().state == BuildState.BUILT

    (tmp_path / "base" / ".dockerignore").write_text("notes.md\n")
    BuildStep(graph.projects["base"], config, REPO, docker).run()
    (tmp_path / "base" / "notes.md").write_text("ignored\n")
    assert BuildStep(graph.projects["base"], config, REPO, docker).run().state == BuildState.UP_TO_DATE
    assert len(builds(runner)) == 3


def test_missing_image_forces_rebuild(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    fake_engine(runner)
    config = load_config(tmp_path, env={})
    graph = ProjectGraph.discover(config.root)
    BuildStep(graph.projects["base"], config, REPO, docker).run()

    runner.on("docker", "image", "inspect", returncode=1, output="Error: No such image: local/base:feature-x")
    result = BuildStep(graph.projects["base"], config, REPO, docker).run()
    # Rebuilt, but the image still is not loaded afterwards.
    assert result.state == BuildState.FAILED
    assert "does not exist locally" in result.error
    assert len(builds(runner)) == 2


def test_unreachable_engine_fails_instead_of_rebuilding(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    fake_engine(runner)
    config = load_config(tmp_path, env={})
    graph = ProjectGraph.discover(config.root)
    BuildStep(graph.projects["base"], config, REPO, docker).run()

    runner.on("docker", "image", "inspect", returncode=1, output="Cannot connect to the Docker daemon")
    result = BuildStep(graph.projects["base"], config, REPO, docker).run()
    assert result.state == BuildState.FAILED
    assert "Cannot connect" in result.error
    assert len(builds(runner)) == 1


def test_missing_upstream_digest_fails_before_building(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    write_project(tmp_path, "web", "FROM ${repository}/base:${tag}\n")
    config = load_config(tmp_path, env={})
    graph = ProjectGraph.discover(config.root)

    result = BuildStep(graph.projects["web"], config, REPO, docker, upstream=["base"]).run()
    assert result.state == BuildState.FAILED
    assert "base" in result.error
    assert runner.commands == []


def test_push_logs_in_and_records_builder_digest(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    fake_engine(runner)
    env = {"DOCKGRAPH_REGISTRY_USER": "ci", "DOCKGRAPH_REGISTRY_PASSWORD": "secret"}
    config = load_config(tmp_path, overrides={
        "driver": "remote", "push": "true", "repository": "registry.example.com/team",
        "tags": "1.0", "builder.name": "cluster",
    }, env=env)
    graph = ProjectGraph.discover(config.root)

    result = BuildStep(graph.projects["base"], config, REPO, docker).run()
    assert result.state == BuildState.BUILT
    login = runner.calls[runner.index("docker", "login")]
    assert login["command"][-1] == "registry.example.com"
    assert login["input"] == "secret"
    # Pushed with a builder container, so the tags are pulled back.
    assert runner.ran("docker", "pull", "registry.example.com/team/base:1.0")
    assert runner.index("docker", "login") < runner.index("docker", "buildx", "build")


def test_orchestrator_builds_dependencies_first(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    write_project(tmp_path, "runtime", "FROM ${repository}/base:${tag}\n")
    write_project(tmp_path, "web", "FROM ${repository}/runtime:${tag}\n")
    write_project(tmp_path, "tool", "FROM alpine\n")
    fake_engine(runner)
    config = load_config(tmp_path, overrides={"jobs": "2"}, env={})
    graph = ProjectGraph.discover(config.root)

    report = BuildOrchestrator(config, graph, REPO, docker).run(["web"])
    assert report.succeeded
    assert [r.project for r in report.results] == ["base", "runtime", "web"]
    assert builds(runner) == ["base", "runtime", "web"]


def test_orchestrator_skips_dependents_of_failures(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    write_project(tmp_path, "web", "FROM ${repository}/base:${tag}\n")
    write_project(tmp_path, "tool", "FROM alpine\n")
    fake_engine(runner, fail={"base"})
    config = load_config(tmp_path, env={})
    graph = ProjectGraph.discover(config.root)

    report = BuildOrchestrator(config, graph, REPO, docker).run()
    assert not report.succeeded
    assert report.get("base").state == BuildState.FAILED
    assert "failed to solve" in report.get("base").error
    assert report.get("web").state == BuildState.SKIPPED
    assert report.get("web").error == "upstream failed: base"
    assert report.get("tool").state == BuildState.BUILT
    assert "web" not in builds(runner)
    assert sorted(r.project for r in report.failed) == ["base", "web"]
    assert any(line.startswith("web") and "skipped" in line for line in report.summary())


def test_undecodable_build_output_and_corrupt_records(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    write_project(tmp_path, "tool", "FROM alpine\n")

    def noisy_build(command):
        CommandRunner().run([sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'caf\\xe9\\n')"])
        write_metadata(command)

    runner.on("docker", "buildx", "build", action=noisy_build)
    runner.on("docker", "image", "inspect", output=INSPECT)
    config = load_config(tmp_path, env={})
    graph = ProjectGraph.discover(config.root)

    report = BuildOrchestrator(config, graph, REPO, docker).run()
    assert report.succeeded

    (config.project_build_dir("base") / "build-inputs.json").write_text("{not json")
    report = BuildOrchestrator(config, graph, REPO, docker).run()
    assert report.get("base").state == BuildState.FAILED
    assert report.get("tool").state == BuildState.UP_TO_DATE


def test_stable_arguments_drop_ci_cache_credentials():
    command = ["--cache-from", "type=gha,scope=base,url=https://cache/,token=abc",
               "--cache-to", "type=gha,scope=base,url=https://cache/,token=abc,mode=max",
               "--label", "token=kept"]
    assert stable_arguments(command) == ["--cache-from", "type=gha,scope=base",
                                         "--cache-to", "type=gha,scope=base,mode=max",
                                         "--label", "token=kept"]


def test_rotating_ci_token_keeps_step_up_to_date(tmp_path, runner, docker):
    write_project(tmp_path, "base", "FROM alpine\n")
    fake_engine(runner)
    overrides = {"cache.gha.enable.import": "true"}

    def run_with_token(token):
        env = {"ACTIONS_CACHE_URL": "https://cache.example.com/", "ACTIONS_RUNTIME_TOKEN": token}
        config = load_config(tmp_path, overrides=overrides, env=env)
        graph = ProjectGraph.discover(config.root)
        return BuildStep(graph.projects["base"], config, REPO, docker).run()

    assert run_with_token("first").state == BuildState.BUILT
    assert run_with_token("second").state == BuildState.UP_TO_DATE
    assert len(builds(runner)) == 1
