"""Verification gate schemas.

Key Components:
    GateKind: Fixed set of gate capabilities
    GateOutcome: pass / fail / timeout
    GateResult: Immutable record of one gate evaluation
    HealthCheckGateConfig, QualityGateConfig, AcceptanceTestGateConfig:
        Per-variant configuration (discriminated on ``kind``)
    GatesConfig: The gate set evaluated before promotion
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class GateKind(str, Enum):
    """Gate capability.

    Examples:
        >>> GateKind.HEALTH_CHECK.value
        'health_check'
    """

    HEALTH_CHECK = "health_check"
    QUALITY = "quality"
    ACCEPTANCE_TEST = "acceptance_test"


class GateOutcome(str, Enum):
    """Result of a gate evaluation.

    TIMEOUT is never treated as a pass: gates fail closed.
    """

    PASS = "pass"
    FAIL = "fail"
    TIMEOUT = "timeout"


class GateResult(BaseModel):
    """Outcome of a single gate evaluation.

    Attributes:
        gate_name: Configured gate name.
        kind: Gate capability.
        outcome: pass, fail or timeout.
        required: Whether the outcome blocks promotion.
        diagnostic: Data needed to explain the outcome without re-running.
        attempts: Number of backend calls made.
        duration_ms: Wall-clock duration of the evaluation.
        timestamp: When the evaluation finished (UTC).

    Examples:
        >>> result = GateResult(
        ...     gate_name="liveness",
        ...     kind=GateKind.HEALTH_CHECK,
        ...     outcome=GateOutcome.PASS,
        ... )
        >>> result.passed
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    gate_name: str = Field(..., min_length=1)
    kind: GateKind
    outcome: GateOutcome
    required: bool = True
    diagnostic: dict[str, Any] = Field(default_factory=dict)
    attempts: int = Field(default=1, ge=0)
    duration_ms: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def passed(self) -> bool:
        return self.outcome == GateOutcome.PASS

    @property
    def blocking(self) -> bool:
        """True when this result prevents promotion."""
        return self.required and not self.passed


class _GateConfigBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=63, pattern=r"^[a-z][a-z0-9_-]*$")
    required: bool = True


class HealthCheckGateConfig(_GateConfigBase):
    """Liveness polling gate.

    The defaults reproduce a fixed 10 second interval over 30 attempts
    (roughly a five minute ceiling).

    Attributes:
        url: Liveness URL; may contain {namespace}, {environment}, {release}.
        expected_status: HTTP status code that counts as healthy.
        max_attempts: Retry budget.
        interval_seconds: Delay between attempts (initial delay for exponential).
        backoff: "fixed" or "exponential".
        max_interval_seconds: Upper bound for exponential backoff.
        request_timeout_seconds: Per-request HTTP timeout.
        timeout_seconds: Overall wall-clock bound.
    """

    kind: Literal["health_check"] = "health_check"
    url: str = Field(..., min_length=1)
    expected_status: int = Field(default=200, ge=100, le=599)
    max_attempts: int = Field(default=30, ge=1, le=1000)
    interval_seconds: float = Field(default=10.0, ge=0.0, le=600)
    backoff: Literal["fixed", "exponential"] = "fixed"
    max_interval_seconds: float = Field(default=60.0, gt=0, le=3600)
    request_timeout_seconds: float = Field(default=5.0, gt=0, le=300)
    timeout_seconds: float = Field(default=330.0, gt=0, le=7200)


class QualityGateConfig(_GateConfigBase):
    """Static-analysis quality gate (fails closed on timeout).

    Attributes:
        timeout_seconds: Caller-enforced wall-clock timeout.
    """

    kind: Literal["quality"] = "quality"
    timeout_seconds: float = Field(default=600.0, gt=0, le=7200)


class AcceptanceTestGateConfig(_GateConfigBase):
    """External acceptance test command.

    Attributes:
        command: Shell command; may contain {base_url}, {namespace}, {image}, {tag}.
        base_url: Base URL of the deployed service (template as for health checks).
        timeout_seconds: Maximum command runtime.
        grace_period_seconds: Delay between SIGTERM and SIGKILL on timeout.
    """

    kind: Literal["acceptance_test"] = "acceptance_test"
    command: str = Field(..., min_length=1)
    base_url: str | None = None
    timeout_seconds: float = Field(default=900.0, gt=0, le=7200)
    grace_period_seconds: float = Field(default=5.0, ge=0, le=60)


GateConfig = Annotated[
    HealthCheckGateConfig | QualityGateConfig | AcceptanceTestGateConfig,
    Field(discriminator="kind"),
]


class GatesConfig(BaseModel):
    """Gate set evaluated between the test deployment and promotion.

    Attributes:
        parallel: Run gates concurrently (joined before promotion).
        max_workers: Thread pool size when parallel.
        checks: Gate configurations, in reporting order.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    parallel: bool = True
    max_workers: int = Field(default=4, ge=1, le=32)
    checks: list[GateConfig] = Field(default_factory=list)

    @field_validator("checks")
    @classmethod
    def validate_unique_names(cls, v: list[Any]) -> list[Any]:
        """Gate names key results and must be unique."""
        names = [c.name for c in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate gate names: {duplicates}")
        return v

    @model_validator(mode="after")
    def validate_has_required_gate(self) -> GatesConfig:
        """Promotion without any required gate would be unverified."""
        if not any(c.required for c in self.checks):
            raise ValueError("At least one required gate must be configured")
        return self


__all__ = [
    "AcceptanceTestGateConfig",
    "GateConfig",
    "GateKind",
    "GateOutcome",
    "GateResult",
    "GatesConfig",
    "HealthCheckGateConfig",
    "QualityGateConfig",
]
