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
Command Line Interface for dockgraph.
"""
import functools
import logging
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional

import click

from ..BUILDERS.image_builder import image_descriptor
from ..config import load_config, parse_override
from ..exceptions import ConfigurationError, DockgraphError
from ..MANAGERS.build_orchestrator import BuildOrchestrator, BuildReport
from ..MANAGERS.builder_manager import BuilderManager
from ..MANAGERS.composition_runner import CompositionTestRunner, discover_tests, raise_for_failures
from ..MANAGERS.container_runner import ContainerTestRunner, discover_container_tests
from ..MANAGERS.resource_guard import ResourceGuard
from ..PARSERS.compose_parser import ComposeParser
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..RUNNERS.dependency_resolver import ProjectGraph
from ..RUNNERS.docker_cli import DockerCli
from ..SCANNERS.scan_pipeline import ScanPipeline
from ..UTILS.download import download
from ..UTILS.repo_info import RepoInfo

logger = logging.getLogger(__name__)


def handle_errors(func):
    """Reports dockgraph errors on stderr and exits with status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DockgraphError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return wrapper


def _config(ctx, **extra: Optional[str]):
    overrides = dict(ctx.obj['overrides'])
    overrides.update({k: v for k, v in extra.items() if v is not None})
    return load_config(ctx.obj['root'], overrides)


def _flag(value: Optional[bool]) -> Optional[str]:
    if value is None:
        return None
    return "true" if value else "false"


class Session:
    """Everything one command needs to build images."""
    def __init__(self, config):
        self.config = config
        self.docker = DockerCli()
        self.graph = ProjectGraph.discover(config.root)
        self.repo = RepoInfo.from_git(config.root, runner=self.docker.runner)
        self.builders = BuilderManager(config, self.docker)

    def image(self, project: str) -> str:
        return image_descriptor(self.config, self.repo, project).primary_reference

    def build(self, targets: Optional[List[str]]) -> BuildReport:
        self.builders.ensure_builder()
        report = BuildOrchestrator(self.config, self.graph, self.repo, self.docker).run(targets)
        for line in report.summary():
            click.echo(line)
        if not report.succeeded:
            failed = ", ".join(r.project for r in report.failed)
            raise DockgraphError(f"Build failed for {failed}")
        return report


@click.group()
@click.option('--root', default='.', type=click.Path(file_okay=False), help='Directory holding the projects')
@click.option('--property', '-P', 'properties', multiple=True, help='Override a property, key=value')
@click.option('--verbose', '-v', is_flag=True, help='Show debug output')
@click.option('--quiet', '-q', is_flag=True, help='Only show warnings and errors')
@click.pass_context
def cli(ctx, root, properties, verbose, quiet):
    """
    dockgraph - builds, tests and scans graphs of container images.

    Every directory holding a Dockerfile is a project. Projects that build
    FROM ${repository}/<project> depend on that project.
    """
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj['root'] = Path(root)
    try:
        ctx.obj['overrides'] = dict(parse_override(p) for p in properties)
    except DockgraphError as e:
        raise click.BadParameter(str(e), param_hint="'--property'")


@cli.command()
@click.argument('projects', nargs=-1)
@click.option('--tag', '-t', 'tags', multiple=True, help='Tag to apply, repeatable')
@click.option('--platform', 'platforms', multiple=True, help='Target platform, repeatable')
@click.option('--push/--no-push', default=None, help='Push images to the repository')
@click.option('--load/--no-load', default=None, help='Load images into the engine')
@click.option('--driver', type=click.Choice(['local', 'container', 'remote']), default=None)
@click.option('--jobs', '-j', type=int, default=None, help='Build steps to run at once')
@click.option('--cache', 'caches', multiple=True, help='Enable a cache direction, e.g. registry.import')
@click.pass_context
@handle_errors
def build(ctx, projects, tags, platforms, push, load, driver, jobs, caches):
    """Build projects and everything they depend on."""
    extra: Dict[str, Optional[str]] = {
        "tags": ",".join(tags) or None,
        "platforms": ",".join(platforms) or None,
        "push": _flag(push),
        "load": _flag(load),
        "driver": driver,
        "jobs": str(jobs) if jobs is not None else None,
    }
    for cache in caches:
        backend, _, direction = cache.partition(".")
        if direction not in ("import", "export"):
            raise click.BadParameter(f"expected <backend>.import or <backend>.export, got '{cache}'",
                                     param_hint="'--cache'")
        extra[f"cache.{backend}.enable.{direction}"] = "true"
    session = Session(_config(ctx, **extra))
    session.build(list(projects) or None)


@cli.command()
@click.argument('projects', nargs=-1)
@click.pass_context
@handle_errors
def test(ctx, projects):
    """Build projects and run their composition and container tests."""
    session = Session(_config(ctx))
    graph = session.graph
    unknown = [p for p in projects if p not in graph.projects]
    if unknown:
        raise ConfigurationError(f"Unknown project(s): {', '.join(unknown)}")
    targets = list(projects) or sorted(graph.projects)

    compositions = [t for name in targets for t in discover_tests(graph.projects[name])]
    containers = [t for name in targets for t in discover_container_tests(graph.projects[name])]

    # Services of a composition that are built here are built first.
    needed = set(targets)
    parser = ComposeParser()
    for composition in compositions:
        services = parser.parse(str(composition.compose_file)).services
        needed.update(name for name in services if name in graph.projects)

    with ResourceGuard() as guard:
        report = session.build(sorted(needed))
        local_images = {r.project: session.image(r.project) for r in report.results if r.succeeded}
        compose_runner = CompositionTestRunner(session.config, session.docker, graph.projects, local_images, guard)
        container_runner = ContainerTestRunner(session.config, session.docker, local_images, guard)
        results = [compose_runner.run(t) for t in compositions]
        results += [container_runner.run(t) for t in containers]

    for result in results:
        status = "skipped" if result.skipped else "passed" if result.passed else "failed"
        click.echo(f"{result.id:30} {status}")
    raise_for_failures(results)


@cli.command()
@click.argument('project')
@click.pass_context
@handle_errors
def sbom(ctx, project):
    """Generate the SBOM of a project's image."""
    session = Session(_config(ctx, load="true"))
    session.build([project])
    path = ScanPipeline(session.config, session.docker).generate_sbom(project, session.image(project))
    click.echo(str(path))


@cli.command()
@click.argument('project')
@click.option('--format', 'output_format', default=None, help='Report format, e.g. table, json, sarif')
@click.option('--fail-on', default=None, help='Fail at or above this severity')
@click.option('--only-fixed', is_flag=True, help='Only report vulnerabilities with a fix')
@click.option('--config', 'config_file', default=None, help='Scanner configuration file')
@click.pass_context
@handle_errors
def report(ctx, project, output_format, fail_on, only_fixed, config_file):
    """Scan a project's image for vulnerabilities."""
    session = Session(_config(
        ctx,
        load="true",
        **{
            "scan.format": output_format,
            "scan.fail-on-severity": fail_on,
            "scan.only-fixed": "true" if only_fixed else None,
            "scan.config": config_file,
        },
    ))
    session.build([project])
    scanner = ScanPipeline(session.config, session.docker)
    scanner.update_database()
    sbom_path = scanner.generate_sbom(project, session.image(project))
    click.echo(str(scanner.report(project, sbom_path)))


@cli.command('update-db')
@click.pass_context
@handle_errors
def update_db(ctx):
    """Refresh the vulnerability database."""
    config = _config(ctx)
    updated = ScanPipeline(config, DockerCli()).update_database()
    click.echo("Database updated." if updated else "Database is up to date.")


@cli.command()
@click.pass_context
@handle_errors
def graph(ctx):
    """Show projects in build order with their dependencies."""
    config = _config(ctx)
    project_graph = ProjectGraph.discover(config.root)
    parser = DockerfileParser()
    click.echo(f"{'PROJECT':20} {'DEPENDS ON':30} {'FROM'}")
    click.echo("-" * 70)
    for name in project_graph.order():
        project = project_graph.projects[name]
        deps = ", ".join(sorted(project_graph.edges[name])) or "-"
        bases = ", ".join(parser.base_images(project.dockerfile.read_text()))
        click.echo(f"{name:20} {deps:30} {bases}")


@cli.command()
@click.pass_context
@handle_errors
def clean(ctx):
    """Remove the builder, registry, their network and volume, and the build directory."""
    config = _config(ctx)
    BuilderManager(config, DockerCli()).destroy_all()
    if config.build_dir.exists():
        shutil.rmtree(config.build_dir)
    click.echo("Cleaned.")


@cli.command('destroy-registry')
@click.pass_context
@handle_errors
def destroy_registry(ctx):
    """Remove the local registry. The builder attached to its network goes too."""
    config = _config(ctx)
    manager = BuilderManager(config, DockerCli())
    manager.destroy_builder()
    manager.registry.destroy_registry()
    manager.registry.destroy_network()
    click.echo("Registry removed.")


@cli.command('destroy-builder')
@click.pass_context
@handle_errors
def destroy_builder(ctx):
    """Remove the dedicated builder container."""
    BuilderManager(_config(ctx), DockerCli()).destroy_builder()
    click.echo("Builder removed.")


@cli.command('disk-usage')
@click.pass_context
@handle_errors
def disk_usage(ctx):
    """Show build cache usage of the builder."""
    click.echo(BuilderManager(_config(ctx), DockerCli()).disk_usage())


@cli.command()
@click.pass_context
@handle_errors
def prune(ctx):
    """Remove the build cache of the builder."""
    click.echo(BuilderManager(_config(ctx), DockerCli()).prune())


@cli.command()
@click.argument('url')
@click.option('--sha256', required=True, help='Expected checksum of the file')
@click.option('--dest', type=click.Path(dir_okay=False), default=None, help='Where to save the file')
@click.pass_context
@handle_errors
def fetch(ctx, url, sha256, dest):
    """Download a file and verify its checksum."""
    config = _config(ctx)
    path = download(url, sha256, Path(dest) if dest else None, downloads_dir=config.build_dir / "downloads")
    click.echo(str(path))


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
