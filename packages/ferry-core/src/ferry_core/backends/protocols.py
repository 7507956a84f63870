"""Interfaces of the external collaborators driven by ferry.

Each protocol is the narrow contract the PromotionController needs; the
modules next to this one adapt real tools (Maven, Docker, Helm/kubectl,
SonarQube, git, ArgoCD) to it. Tests substitute in-memory fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from ferry_core.resilience import CancellationToken
    from ferry_core.schemas.artifact import ArtifactReference, SourceReference
    from ferry_core.schemas.deployment import DeploymentTarget, ObservedState
    from ferry_core.schemas.gates import GateResult


class UnitTestReport(BaseModel):
    """Summary of a unit test run.

    Attributes:
        passed: Whether the test command succeeded.
        tests_run: Number of tests executed (if known).
        failures: Number of failing tests (if known).
        output: Tail of the tool output.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    passed: bool
    tests_run: int | None = Field(default=None, ge=0)
    failures: int | None = Field(default=None, ge=0)
    output: str = ""


class EngineStatus(BaseModel):
    """Health and sync state of a GitOps application.

    Attributes:
        app_name: Application name.
        healthy: True when health is Healthy and sync is Synced.
        health_status: Raw health status (Healthy, Progressing, Degraded, ...).
        sync_status: Raw sync status (Synced, OutOfSync, ...).
        revision: Revision the application is synced to.
        message: Extra detail from the engine.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    app_name: str
    healthy: bool
    health_status: str | None = None
    sync_status: str | None = None
    revision: str | None = None
    message: str | None = None

    def at_revision(self, revision: str | None) -> bool:
        """Whether the application is synced to ``revision`` (None matches any).

        Abbreviated shas match their full form.
        """
        if revision is None:
            return True
        if not self.revision:
            return False
        return self.revision.startswith(revision) or revision.startswith(self.revision)


@runtime_checkable
class BuildBackend(Protocol):
    """Builds and packages the application."""

    def build(self, source: SourceReference) -> ArtifactReference:
        """Package the application and build its image. Raises BuildError."""
        ...

    def run_unit_tests(self, source: SourceReference) -> UnitTestReport:
        """Run the unit test suite."""
        ...


@runtime_checkable
class ContainerRegistry(Protocol):
    """Container image registry."""

    def push(self, image: str, tag: str) -> bool:
        """Push ``image:tag``; return False if the registry refused it."""
        ...


@runtime_checkable
class AnalysisBackend(Protocol):
    """Static-analysis gate backend. Not required to time out on its own."""

    def submit_analysis(self, artifact: ArtifactReference) -> GateResult:
        """Return the analysis verdict for ``artifact``."""
        ...


@runtime_checkable
class ClusterBackend(Protocol):
    """Cluster orchestration backend."""

    def apply_deployment(self, target: DeploymentTarget) -> ObservedState:
        """Apply the target's desired image. Raises DeployRejectedError if refused."""
        ...

    def get_status(self, target: DeploymentTarget) -> ObservedState:
        """Read the observed rollout state of the target."""
        ...


@runtime_checkable
class DesiredStateStore(Protocol):
    """Versioned desired-state store."""

    def read_desired_state(self, path: str) -> dict[str, Any]:
        """Read the latest desired-state document at ``path``."""
        ...

    def commit_desired_state(self, path: str, patch: dict[str, Any], message: str) -> str:
        """Atomically apply ``patch`` to ``path``; return the commit ref.

        Raises ConflictError when a concurrent writer got there first.
        """
        ...

    def current_revision(self) -> str:
        """Revision of the desired state last read or committed."""
        ...


@runtime_checkable
class PromotionEngine(Protocol):
    """GitOps reconciler that converges a cluster on the desired state."""

    def sync(self, app_name: str) -> bool:
        """Trigger a sync; return False if the engine refused."""
        ...

    def wait_healthy(
        self,
        app_name: str,
        timeout: float,
        cancel: CancellationToken,
        revision: str | None = None,
    ) -> EngineStatus:
        """Wait until the application is healthy and synced to ``revision``.

        Returns the last observed status when ``timeout`` elapses first.
        """
        ...


__all__ = [
    "AnalysisBackend",
    "BuildBackend",
    "ClusterBackend",
    "ContainerRegistry",
    "DesiredStateStore",
    "EngineStatus",
    "PromotionEngine",
    "UnitTestReport",
]
