"""
Unit tests for project discovery and dependency ordering.
"""
from pathlib import Path

import pytest

from dockgraph.exceptions import ConfigurationError, DependencyCycleError
from dockgraph.MODELS.image_descriptor import Project
from dockgraph.RUNNERS.dependency_resolver import ProjectGraph, discover_projects


def make_project(root: Path, name: str, dockerfile: str) -> Path:
    directory = root / name
    directory.mkdir(parents=True)
    (directory / "Dockerfile").write_text(dockerfile)
    return directory


def graph_from(texts):
    projects = {name: Project(name=name, directory=Path("/src") / name) for name in texts}
    return ProjectGraph.from_texts(projects, texts)


def test_discover_projects(tmp_path):
    make_project(tmp_path, "base", "FROM alpine\n")
    make_project(tmp_path / "services", "web", "FROM ${repository}/base:${tag}\n")
    make_project(tmp_path, "build/base", "FROM scratch\n")
    make_project(tmp_path, ".hidden", "FROM scratch\n")
    make_project(tmp_path / "web" / "tests", "fixture", "FROM scratch\n")
    (tmp_path / "Dockerfile").write_text("FROM scratch\n")

    projects = discover_projects(tmp_path)
    assert sorted(projects) == ["base", "web"]
    assert projects["web"].directory == tmp_path / "services" / "web"


def test_discover_rejects_duplicate_names(tmp_path):
    make_project(tmp_path / "a", "base", "FROM alpine\n")
    make_project(tmp_path / "b", "base", "FROM alpine\n")
    with pytest.raises(ConfigurationError):
        discover_projects(tmp_path)


def test_graph_from_directory(tmp_path):
    make_project(tmp_path, "base", "FROM alpine\n")
    make_project(tmp_path, "web", "FROM ${repository}/base:${tag}\n")
    graph = ProjectGraph.discover(tmp_path)
    assert graph.dependencies("web") == {"base"}
    assert graph.dependencies("base") == set()
    assert graph.order() == ["base", "web"]


def test_order_puts_dependencies_first():
    graph = graph_from({
        "app": "FROM ${repository}/runtime:${tag}\nCOPY --from=${repository}/assets:${tag} /a /a\n",
        "runtime": "FROM ${repository}/base:${tag}\n",
        "assets": "FROM ${repository}/base:${tag}\n",
        "base": "FROM alpine\n",
        "tool": "FROM alpine\n",
    })
    order = graph.order(["app"])
    assert order == ["base", "assets", "runtime", "app"]
    full = graph.order()
    assert set(full) == {"app", "runtime", "assets", "base", "tool"}
    for name in full:
        for dep in graph.dependencies(name):
            assert full.index(dep) < full.index(name)


def test_unknown_target():
    graph = graph_from({"base": "FROM alpine\n"})
    with pytest.raises(ConfigurationError):
        graph.order(["nope"])


def test_cycle_is_reported():
    with pytest.raises(DependencyCycleError) as excinfo:
        graph_from({
            "a": "FROM ${repository}/b:1\n",
            "b": "FROM ${repository}/c:1\n",
            "c": "FROM ${repository}/a:1\n",
        })
    assert excinfo.value.cycle == ["a", "b", "c", "a"]
    assert "a -> b -> c -> a" in str(excinfo.value)


def test_self_reference_is_ignored():
    graph = graph_from({"base": "FROM ${repository}/base:previous\n"})
    assert graph.dependencies("base") == set()
