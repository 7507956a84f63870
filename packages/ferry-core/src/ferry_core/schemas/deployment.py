"""Deployment target schemas.

A DeploymentTarget describes one environment (namespace, Helm release,
desired image and readiness policy). Its DeploymentStatus is the observed
state as published by the DeploymentDriver.

Status phases advance monotonically within one generation:

    pending -> converging -> ready
                          -> failed

A new desired image starts a new generation (generation + 1).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DeploymentPhase(str, Enum):
    """Observed phase of a deployment target.

    Attributes:
        PENDING: No desired image has been applied yet.
        CONVERGING: Desired image applied, waiting for readiness.
        READY: Observed state matches desired state.
        FAILED: Backend rejected the desired state.
    """

    PENDING = "pending"
    CONVERGING = "converging"
    READY = "ready"
    FAILED = "failed"


_PHASE_ORDER = {
    DeploymentPhase.PENDING: 0,
    DeploymentPhase.CONVERGING: 1,
    DeploymentPhase.READY: 2,
    DeploymentPhase.FAILED: 2,
}


class ReadinessPolicy(BaseModel):
    """How long and how strictly to wait for a target to become ready.

    Attributes:
        timeout_seconds: Maximum time to wait for convergence.
        poll_interval_seconds: Delay between status polls.
        min_healthy_fraction: Fraction of desired replicas that must be ready.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_seconds: float = Field(default=300.0, gt=0, le=7200)
    poll_interval_seconds: float = Field(default=5.0, gt=0, le=300)
    min_healthy_fraction: float = Field(default=1.0, gt=0.0, le=1.0)


class ObservedState(BaseModel):
    """Raw state reported by a cluster backend.

    Attributes:
        image: Image currently rolled out (None if nothing is deployed).
        ready_replicas: Replicas passing readiness checks.
        desired_replicas: Replicas requested by the deployment.
        message: Free-form backend message.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    image: str | None = None
    ready_replicas: int = Field(default=0, ge=0)
    desired_replicas: int = Field(default=0, ge=0)
    message: str | None = None

    def is_ready_for(self, desired_image: str, min_healthy_fraction: float) -> bool:
        """Check whether this observation satisfies the desired image and policy."""
        if self.image != desired_image:
            return False
        if self.desired_replicas == 0:
            return True
        return self.ready_replicas / self.desired_replicas >= min_healthy_fraction


class DeploymentStatus(BaseModel):
    """Published status snapshot of a deployment target.

    Instances are immutable; the DeploymentDriver publishes a new snapshot
    for every transition so readers never observe a partial update.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str
    phase: DeploymentPhase = DeploymentPhase.PENDING
    generation: int = Field(default=0, ge=0)
    desired_image: str | None = None
    observed_image: str | None = None
    ready_replicas: int = Field(default=0, ge=0)
    desired_replicas: int = Field(default=0, ge=0)
    message: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_ready(self) -> bool:
        return self.phase == DeploymentPhase.READY

    def can_advance_to(self, other: DeploymentStatus) -> bool:
        """Check that ``other`` is a legal successor of this snapshot.

        A successor either starts a newer generation or keeps the generation
        and does not move the phase backwards.
        """
        if other.generation != self.generation:
            return other.generation > self.generation
        return _PHASE_ORDER[other.phase] >= _PHASE_ORDER[self.phase] and not (
            self.phase in (DeploymentPhase.READY, DeploymentPhase.FAILED)
            and other.phase != self.phase
        )


class DeploymentTarget(BaseModel):
    """One environment a build can be deployed to.

    Attributes:
        environment: Unique environment name (e.g. "test", "prod").
        namespace: Kubernetes namespace.
        release: Helm release / Deployment name.
        chart: Helm chart for this environment (None: the backend default).
        values_files: Helm values files for this environment, in order.
        desired_image: Image the environment should run (None until first deploy).
        readiness: Readiness policy for convergence polling.
        status: Latest published status.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str = Field(
        ...,
        min_length=1,
        max_length=50,
        pattern=r"^[a-z][a-z0-9_-]*$",
    )
    namespace: str = Field(..., min_length=1, max_length=63)
    release: str = Field(..., min_length=1, max_length=53)
    chart: str | None = None
    values_files: tuple[str, ...] = ()
    desired_image: str | None = None
    readiness: ReadinessPolicy = Field(default_factory=ReadinessPolicy)
    status: DeploymentStatus | None = None

    def current_status(self) -> DeploymentStatus:
        """Status snapshot, defaulting to a pending status for a fresh target."""
        if self.status is not None:
            return self.status
        return DeploymentStatus(environment=self.environment)


__all__ = [
    "DeploymentPhase",
    "DeploymentStatus",
    "DeploymentTarget",
    "ObservedState",
    "ReadinessPolicy",
]
