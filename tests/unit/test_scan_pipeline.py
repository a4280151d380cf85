"""
Unit tests for SBOM generation and vulnerability reports.
"""
import pytest

from dockgraph.config import load_config
from dockgraph.exceptions import CommandError, VerificationError
from dockgraph.SCANNERS.scan_pipeline import ScanPipeline


def pipeline(tmp_path, docker, **overrides):
    return ScanPipeline(load_config(tmp_path, overrides=overrides, env={}), docker)


def record_digest(tmp_path, content='{"config": {}, "rootFS": {}}'):
    path = tmp_path / "build" / "web" / "digest.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


def test_generate_sbom_is_skipped_while_digest_unchanged(tmp_path, runner, docker):
    record_digest(tmp_path)
    scanner = pipeline(tmp_path, docker)
    sbom = scanner.generate_sbom("web", "local/web:main")
    assert sbom == tmp_path.resolve() / "build" / "web" / "sbom.json"
    assert runner.ran("docker", "container", "run", "--rm", "-v")[0][-4:] == [
        "anchore/syft:latest", "-o", "json", "local/web:main"
    ]

    scanner.generate_sbom("web", "local/web:main")
    assert len(runner.commands) == 1

    record_digest(tmp_path, '{"config": {"Cmd": ["sh"]}, "rootFS": {}}')
    scanner.generate_sbom("web", "local/web:main")
    assert len(runner.commands) == 2


def test_grype_command(tmp_path, docker):
    (tmp_path / "grype.yaml").write_text("ignore: []\n")
    scanner = pipeline(tmp_path, docker, **{
        "scan.config": "grype.yaml",
        "scan.fail-on-severity": "high",
        "scan.only-fixed": "true",
        "scan.format": "json",
    })
    command = scanner.grype_command()
    assert "GRYPE_DB_AUTO_UPDATE=false" in command
    assert "dockgraph-grype:/cache" in command
    assert f"{(tmp_path / 'grype.yaml').resolve()}:/grype.yaml" in command
    assert command[command.index("anchore/grype:latest") + 1:] == [
        "--config", "/grype.yaml", "--fail-on", "high", "--only-fixed", "-o", "json"
    ]
    assert scanner.report_path("web").name == "web-grype.json"


def test_report_failure_maps_to_verification_error(tmp_path, runner, docker):
    sbom = tmp_path / "sbom.json"
    sbom.write_text("{}")
    (tmp_path / "build" / "web").mkdir(parents=True)
    runner.on("docker", "container", "run", "--rm", "-i", returncode=1, output="discovered vulnerabilities")

    with pytest.raises(VerificationError) as excinfo:
        pipeline(tmp_path, docker, **{"scan.fail-on-severity": "critical"}).report("web", sbom)
    assert "critical" in str(excinfo.value)

    with pytest.raises(CommandError):
        pipeline(tmp_path, docker).report("web", sbom)


def test_report_writes_table(tmp_path, runner, docker):
    sbom = tmp_path / "sbom.json"
    sbom.write_text("{}")
    (tmp_path / "build" / "web").mkdir(parents=True)
    report = pipeline(tmp_path, docker).report("web", sbom)
    assert report.name == "web-grype.md"
    assert report.exists()


def test_update_database_only_when_stale(tmp_path, runner, docker):
    scanner = pipeline(tmp_path, docker)
    runner.on("docker", "volume", "inspect", returncode=1)
    assert not scanner.update_database()
    assert runner.ran("docker", "volume", "create", "dockgraph-grype")
    assert not [c for c in runner.commands if c[-2:] == ["db", "update"]]

    runner.on(*scanner._db_command("status"), returncode=1)
    assert scanner.update_database() is True
    assert [c for c in runner.commands if c[-2:] == ["db", "update"]]
