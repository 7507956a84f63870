"""Maven build backend and Docker registry adapter.

MavenBuildBackend packages the application with Maven and builds the
container image with Docker; the image tag is the CI build counter.
DockerRegistry pushes the image.
"""

from __future__ import annotations

import re
import subprocess
from pathlib import Path

import structlog

from ferry_core.backends._process import run_tool, tail
from ferry_core.backends.protocols import UnitTestReport
from ferry_core.errors import BuildError
from ferry_core.schemas.artifact import ArtifactReference, SourceReference
from ferry_core.schemas.config import BuildConfig
from ferry_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

_SUREFIRE_SUMMARY = re.compile(
    r"Tests run:\s*(\d+),\s*Failures:\s*(\d+),\s*Errors:\s*(\d+)",
)


def parse_surefire_summary(output: str) -> tuple[int, int] | None:
    """Extract (tests_run, failures + errors) from Maven Surefire output.

    The last summary line in the output is the aggregate for the build.
    """
    matches = _SUREFIRE_SUMMARY.findall(output)
    if not matches:
        return None
    run, failures, errors = (int(x) for x in matches[-1])
    return run, failures + errors


class MavenBuildBackend:
    """Build backend running ``mvn`` and ``docker build``.

    Attributes:
        config: Build stage configuration.
    """

    def __init__(self, config: BuildConfig) -> None:
        self.config = config
        self._log = logger.bind(repository=config.repository)

    def _run(self, step: str, cmd: list[str], source: SourceReference) -> str:
        try:
            result = run_tool(cmd, cwd=source.path, timeout=self.config.timeout_seconds)
        except subprocess.TimeoutExpired as e:
            raise BuildError(step, f"timed out after {self.config.timeout_seconds}s") from e
        except FileNotFoundError as e:
            raise BuildError(step, f"{cmd[0]} is not installed") from e
        if result.returncode != 0:
            raise BuildError(
                step,
                f"{cmd[0]} exited with code {result.returncode}",
                output=tail(result.stdout + result.stderr),
            )
        return result.stdout

    def build(self, source: SourceReference) -> ArtifactReference:
        """Package with Maven (tests skipped) and build the tagged image.

        Raises:
            BuildError: If packaging or the image build fails.
            ValidationError: If the resulting reference is invalid.
        """
        tag = str(source.build_number)
        artifact = ArtifactReference.create(tag, self.config.repository, tag)

        with create_span(
            "ferry.build.package",
            attributes={"image": artifact.image, "source": source.path},
        ):
            self._log.info("build_started", image=artifact.image, source=source.path)
            self._run(
                "package",
                ["mvn", *self.config.maven_args, "clean", "package", "-DskipTests"],
                source,
            )
            dockerfile = str(Path(source.path) / self.config.dockerfile)
            self._run(
                "image",
                ["docker", "build", "-t", artifact.image, "-f", dockerfile, source.path],
                source,
            )
            self._log.info("build_completed", image=artifact.image)
        return artifact

    def run_unit_tests(self, source: SourceReference) -> UnitTestReport:
        """Run ``mvn test`` and summarize the Surefire results."""
        cmd = ["mvn", *self.config.maven_args, "test"]
        with create_span("ferry.build.unit_tests", attributes={"source": source.path}) as span:
            try:
                result = run_tool(cmd, cwd=source.path, timeout=self.config.timeout_seconds)
            except subprocess.TimeoutExpired:
                return UnitTestReport(
                    passed=False,
                    output=f"unit tests timed out after {self.config.timeout_seconds}s",
                )
            except FileNotFoundError as e:
                raise BuildError("unit_tests", "mvn is not installed") from e

            output = result.stdout + result.stderr
            summary = parse_surefire_summary(output)
            report = UnitTestReport(
                passed=result.returncode == 0,
                tests_run=summary[0] if summary else None,
                failures=summary[1] if summary else None,
                output=tail(output),
            )
            span.set_attribute("passed", report.passed)
            self._log.info(
                "unit_tests_completed",
                passed=report.passed,
                tests_run=report.tests_run,
                failures=report.failures,
            )
            return report


class DockerRegistry:
    """Container registry adapter using ``docker push``."""

    def __init__(self, timeout_seconds: float = 600.0) -> None:
        self.timeout_seconds = timeout_seconds

    def push(self, image: str, tag: str) -> bool:
        ref = f"{image}:{tag}"
        with create_span("ferry.registry.push", attributes={"image": ref}):
            try:
                result = run_tool(["docker", "push", ref], timeout=self.timeout_seconds)
            except (subprocess.TimeoutExpired, FileNotFoundError) as e:
                logger.warning("image_push_failed", image=ref, error=str(e))
                return False
            if result.returncode != 0:
                logger.warning("image_push_failed", image=ref, exit_code=result.returncode)
                return False
            logger.info("image_pushed", image=ref)
            return True


__all__ = ["DockerRegistry", "MavenBuildBackend", "parse_surefire_summary"]
