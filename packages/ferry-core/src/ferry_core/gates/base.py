"""Base class for verification gates.

A gate inspects a converged deployment (or the built artifact) and returns
a GateResult. Evaluation is bounded in time, interruptible through the run's
CancellationToken and always maps to exactly one outcome:

    - the check succeeded            -> pass
    - the check ran and did not pass -> fail
    - the check did not finish       -> timeout
    - the check itself raised        -> fail (error in diagnostic)

Cancellation is not an outcome: RunCancelledError propagates to the caller.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, NamedTuple

import structlog

from ferry_core.errors import RunCancelledError, ValidationError
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.deployment import DeploymentTarget
from ferry_core.schemas.gates import GateKind, GateOutcome, GateResult
from ferry_core.telemetry.sanitization import sanitize_error_message
from ferry_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

_OUTCOME_EVENTS = {
    GateOutcome.PASS: "gate_evaluation_passed",
    GateOutcome.FAIL: "gate_evaluation_failed",
    GateOutcome.TIMEOUT: "gate_evaluation_timed_out",
}


class GateVerdict(NamedTuple):
    """What a gate implementation reports back to GateEvaluator.evaluate()."""

    outcome: GateOutcome
    diagnostic: dict[str, Any]
    attempts: int = 1


def template_context(
    target: DeploymentTarget,
    artifact: ArtifactReference,
) -> dict[str, str]:
    """Placeholders available to gate URL and command templates."""
    return {
        "environment": target.environment,
        "namespace": target.namespace,
        "release": target.release,
        "image": artifact.image,
        "repository": artifact.repository,
        "tag": artifact.tag,
    }


def render_template(template: str, context: dict[str, str]) -> str:
    """Fill ``{placeholder}`` fields of a gate template.

    Raises:
        ValidationError: If the template references an unknown placeholder.
    """
    try:
        return template.format(**context)
    except KeyError as e:
        raise ValidationError(
            "template", f"unknown placeholder {e} in '{template}' (known: {sorted(context)})"
        ) from e


class GateEvaluator(ABC):
    """A configured verification gate.

    Subclasses implement ``_evaluate``; ``evaluate`` adds timing, the span,
    logging and the exception-to-outcome mapping.
    """

    kind: GateKind

    def __init__(self, name: str, *, required: bool = True) -> None:
        self.name = name
        self.required = required
        self._log = logger.bind(gate=name, kind=self.kind.value)

    @abstractmethod
    def _evaluate(
        self,
        target: DeploymentTarget,
        artifact: ArtifactReference,
        cancel: CancellationToken,
    ) -> GateVerdict: ...

    def evaluate(
        self,
        target: DeploymentTarget,
        artifact: ArtifactReference,
        cancel: CancellationToken,
    ) -> GateResult:
        """Evaluate the gate against a deployed target.

        Raises:
            RunCancelledError: If the run is cancelled during evaluation.
        """
        start = time.monotonic()
        with create_span(
            f"ferry.gate.{self.kind.value}",
            attributes={
                "gate": self.name,
                "environment": target.environment,
                "image": artifact.image,
                "required": self.required,
            },
        ) as span:
            self._log.info("gate_evaluation_started", environment=target.environment)
            try:
                verdict = self._evaluate(target, artifact, cancel)
            except RunCancelledError:
                self._log.info("gate_evaluation_cancelled")
                raise
            except Exception as e:
                self._log.exception("gate_evaluation_error", error=str(e))
                verdict = GateVerdict(
                    GateOutcome.FAIL,
                    {
                        "error_type": type(e).__name__,
                        "error": sanitize_error_message(str(e)),
                    },
                )

            duration_ms = int((time.monotonic() - start) * 1000)
            result = GateResult(
                gate_name=self.name,
                kind=self.kind,
                outcome=verdict.outcome,
                required=self.required,
                diagnostic=verdict.diagnostic,
                attempts=verdict.attempts,
                duration_ms=duration_ms,
            )
            span.set_attribute("outcome", result.outcome.value)
            span.set_attribute("attempts", result.attempts)
            span.set_attribute("duration_ms", duration_ms)

            log = self._log.info if result.passed else self._log.warning
            log(
                _OUTCOME_EVENTS[result.outcome],
                attempts=result.attempts,
                duration_ms=duration_ms,
            )
            return result


__all__ = ["GateEvaluator", "GateVerdict", "render_template", "template_context"]
