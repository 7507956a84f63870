"""Pipeline run schemas.

PipelineRun is the explicit run value threaded through every stage of the
PromotionController. It is immutable: each transition produces a new
instance via ``advance()`` / ``fail()``, and the controller publishes the
latest instance to the run store.

State machine:

    pending -> building -> deployed -> gating -> promoting -> converged
       \\          \\           \\          \\          \\
        +----------+-----------+----------+----------+--> failed(stage)
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ferry_core.errors import InvalidTransitionError
from ferry_core.schemas.artifact import ArtifactReference, SourceReference
from ferry_core.schemas.deployment import DeploymentStatus
from ferry_core.schemas.gates import GateResult


class RunState(str, Enum):
    """PromotionController states."""

    PENDING = "pending"
    BUILDING = "building"
    DEPLOYED = "deployed"
    GATING = "gating"
    PROMOTING = "promoting"
    CONVERGED = "converged"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.CONVERGED, RunState.FAILED)


ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PENDING: frozenset({RunState.BUILDING, RunState.FAILED}),
    RunState.BUILDING: frozenset({RunState.DEPLOYED, RunState.FAILED}),
    RunState.DEPLOYED: frozenset({RunState.GATING, RunState.FAILED}),
    RunState.GATING: frozenset({RunState.PROMOTING, RunState.FAILED}),
    RunState.PROMOTING: frozenset({RunState.CONVERGED, RunState.FAILED}),
    RunState.CONVERGED: frozenset(),
    RunState.FAILED: frozenset(),
}


class RunFailure(BaseModel):
    """Why a run ended in the failed state.

    Attributes:
        stage: State the run was in when the error occurred.
        error_type: Exception class name.
        message: Human-readable error message.
        retryable: Whether re-running is expected to help.
        diagnostic: Structured details (gate results, backend output, ...).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage: RunState
    error_type: str
    message: str
    retryable: bool = False
    diagnostic: dict[str, Any] = Field(default_factory=dict)


class PipelineRun(BaseModel):
    """One invocation of the pipeline.

    Attributes:
        run_id: Unique run identifier.
        source: Source checkout being built.
        artifact: Built artifact (set after building).
        state: Current state.
        failed_stage: Stage that failed (only when state is failed).
        gate_results: Gate results in configured order.
        targets: Per-environment deployment status snapshots.
        commit_ref: Desired-state commit recorded for production.
        failure: Failure details (only when state is failed).
        warnings: Non-blocking problems (optional gates, reported unit tests).
        cancelled: Whether cancellation ended the run.
        trace_id: OpenTelemetry trace id of the run span.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    run_id: str = Field(..., min_length=1)
    source: SourceReference
    artifact: ArtifactReference | None = None
    state: RunState = RunState.PENDING
    failed_stage: RunState | None = None
    gate_results: list[GateResult] = Field(default_factory=list)
    targets: dict[str, DeploymentStatus] = Field(default_factory=dict)
    commit_ref: str | None = None
    failure: RunFailure | None = None
    warnings: list[str] = Field(default_factory=list)
    cancelled: bool = False
    trace_id: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def required_gates_passed(self) -> bool:
        """True if at least one required gate ran and none of them blocks."""
        required = [r for r in self.gate_results if r.required]
        return bool(required) and not any(r.blocking for r in required)

    def advance(self, to_state: RunState, **changes: Any) -> PipelineRun:
        """Return a copy of this run moved to ``to_state``.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if to_state == RunState.FAILED or to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state.value, to_state.value)
        if to_state == RunState.CONVERGED and not self.required_gates_passed:
            raise InvalidTransitionError(self.state.value, to_state.value)
        return self.model_copy(
            update={**changes, "state": to_state, "updated_at": datetime.now(timezone.utc)}
        )

    def fail(self, failure: RunFailure, *, cancelled: bool = False) -> PipelineRun:
        """Return a copy of this run in the failed state."""
        if self.is_terminal:
            raise InvalidTransitionError(self.state.value, RunState.FAILED.value)
        return self.model_copy(
            update={
                "state": RunState.FAILED,
                "failed_stage": self.state,
                "failure": failure,
                "cancelled": cancelled,
                "updated_at": datetime.now(timezone.utc),
            }
        )

    def update(self, **changes: Any) -> PipelineRun:
        """Return a copy with non-state fields changed."""
        if "state" in changes:
            raise ValueError("Use advance() or fail() to change the run state")
        return self.model_copy(update={**changes, "updated_at": datetime.now(timezone.utc)})


__all__ = [
    "ALLOWED_TRANSITIONS",
    "PipelineRun",
    "RunFailure",
    "RunState",
]
