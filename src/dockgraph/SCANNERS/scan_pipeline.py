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
Software bill of materials generation and vulnerability reporting for built images.

Both scanners run as containers: syft reads the image through the engine
socket, grype reads the SBOM on stdin with its database on a volume.
"""
import hashlib
import json
import logging
from pathlib import Path
from typing import List, Optional

from ..exceptions import CommandError, VerificationError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..RUNNERS.docker_cli import DockerCli

logger = logging.getLogger(__name__)

DB_CACHE_DIR = "/cache"
CONTAINER_CONFIG = "/grype.yaml"


class ScanPipeline:
    """
    SBOM -> vulnerability report, per project.
    """
    def __init__(self, config: OrchestrationConfig, docker: DockerCli):
        self.config = config
        self.scan = config.scan
        self.docker = docker

    def sbom_path(self, project: str) -> Path:
        return self.config.project_build_dir(project) / "sbom.json"

    def report_path(self, project: str) -> Path:
        return self.config.project_build_dir(project) / f"{project}-grype.{self.scan.report_extension}"

    def _sbom_inputs(self, project: str) -> Path:
        return self.config.project_build_dir(project) / "sbom-inputs.json"

    def image_digest(self, project: str) -> str:
        """Hash of the project's recorded approximate digest, empty if never built."""
        path = self.config.project_build_dir(project) / "digest.json"
        if not path.exists():
            return ""
        return hashlib.sha256(path.read_bytes()).hexdigest()

    def syft_command(self, image: str) -> List[str]:
        return [
            "docker", "container", "run", "--rm",
            "-v", "/var/run/docker.sock:/var/run/docker.sock",
            self.scan.syft_image,
            "-o", "json",
            image,
        ]

    def generate_sbom(self, project: str, image: str) -> Path:
        """
        Writes sbom.json for an image, skipped while the image digest is unchanged.

        :param project: Project the image belongs to.
        :param image: Reference of the loaded image.
        :return: Path of the SBOM.
        """
        sbom = self.sbom_path(project)
        digest = self.image_digest(project)
        inputs = self._sbom_inputs(project)
        if digest and sbom.exists() and inputs.exists() and json.loads(inputs.read_text()).get("digest") == digest:
            logger.info("SBOM of %s is up to date", project)
            return sbom

        sbom.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Generating SBOM for %s", image)
        with open(sbom, "w") as output:
            self.docker.runner.run(self.syft_command(image), stdout=output)
        inputs.write_text(json.dumps({"digest": digest}))
        return sbom

    def grype_command(self, fail_on: Optional[str] = None) -> List[str]:
        command = [
            "docker", "container", "run", "--rm", "-i",
            "-e", f"GRYPE_DB_CACHE_DIR={DB_CACHE_DIR}",
            "-e", "GRYPE_DB_AUTO_UPDATE=false",
            "-v", f"{self.scan.db_volume}:{DB_CACHE_DIR}",
        ]
        if self.scan.config:
            command += ["-v", f"{Path(self.scan.config).resolve()}:{CONTAINER_CONFIG}"]
        command.append(self.scan.grype_image)
        if self.scan.config:
            command += ["--config", CONTAINER_CONFIG]
        fail_on = fail_on if fail_on is not None else self.scan.fail_on_severity
        if fail_on:
            command += ["--fail-on", fail_on]
        if self.scan.only_fixed:
            command.append("--only-fixed")
        command += ["-o", self.scan.format]
        return command

    def report(self, project: str, sbom: Optional[Path] = None) -> Path:
        """
        Matches the SBOM against the vulnerability database.

        :return: Path of the report.
        :raises VerificationError: Vulnerabilities at or above the fail-on severity.
        """
        sbom = sbom or self.sbom_path(project)
        report = self.report_path(project)
        logger.info("Writing vulnerability report %s", report)
        with open(sbom, "r") as source, open(report, "w") as output:
            try:
                self.docker.runner.run(self.grype_command(), stdin=source, stdout=output)
            except CommandError as e:
                if not self.scan.fail_on_severity:
                    raise
                raise VerificationError(
                    f"{project}: vulnerabilities of severity {self.scan.fail_on_severity} or higher, see {report}",
                    [e.output.strip()] if e.output.strip() else [],
                ) from e
        return report

    def _db_command(self, *args: str) -> List[str]:
        return [
            "docker", "container", "run", "--rm",
            "-e", f"GRYPE_DB_CACHE_DIR={DB_CACHE_DIR}",
            "-v", f"{self.scan.db_volume}:{DB_CACHE_DIR}",
            self.scan.grype_image,
            "db", *args,
        ]

    def update_database(self) -> bool:
        """
        Refreshes the vulnerability database when `db status` reports it
        missing or stale.

        :return: True if an update ran.
        """
        if not self.docker.volume_exists(self.scan.db_volume):
            self.docker.volume_create(self.scan.db_volume)
        status = self.docker.runner.run(self._db_command("status"), check=False)
        if status.ok:
            logger.info("Vulnerability database is up to date")
            return False
        logger.info("Updating vulnerability database")
        self.docker.runner.run(self._db_command("update"))
        return True
