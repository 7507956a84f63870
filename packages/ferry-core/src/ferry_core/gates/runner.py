"""Gate construction and concurrent evaluation."""

from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor, as_completed

import httpx
import structlog

from ferry_core.backends.protocols import AnalysisBackend
from ferry_core.errors import ValidationError
from ferry_core.gates.acceptance import AcceptanceTestGate
from ferry_core.gates.base import GateEvaluator
from ferry_core.gates.health import HealthCheckGate
from ferry_core.gates.quality import QualityGate
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.deployment import DeploymentTarget
from ferry_core.schemas.gates import (
    AcceptanceTestGateConfig,
    GateConfig,
    GateResult,
    GatesConfig,
    HealthCheckGateConfig,
    QualityGateConfig,
)
from ferry_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


def build_gate(
    config: GateConfig,
    *,
    analysis_backend: AnalysisBackend | None = None,
    http_client: httpx.Client | None = None,
) -> GateEvaluator:
    """Create the evaluator for one gate configuration.

    Raises:
        ValidationError: If a quality gate is configured without a backend.
    """
    if isinstance(config, HealthCheckGateConfig):
        return HealthCheckGate(config, client=http_client)
    if isinstance(config, QualityGateConfig):
        if analysis_backend is None:
            raise ValidationError("gates", f"quality gate '{config.name}' needs an analysis backend")
        return QualityGate(config, analysis_backend)
    if isinstance(config, AcceptanceTestGateConfig):
        return AcceptanceTestGate(config)
    raise ValidationError("gates", f"unsupported gate kind: {config.kind}")


def build_gates(
    config: GatesConfig,
    *,
    analysis_backend: AnalysisBackend | None = None,
    http_client: httpx.Client | None = None,
) -> list[GateEvaluator]:
    """Create evaluators for every configured gate, in configured order."""
    return [
        build_gate(check, analysis_backend=analysis_backend, http_client=http_client)
        for check in config.checks
    ]


def run_gates(
    gates: list[GateEvaluator],
    target: DeploymentTarget,
    artifact: ArtifactReference,
    cancel: CancellationToken,
    *,
    parallel: bool = True,
    max_workers: int = 4,
) -> list[GateResult]:
    """Evaluate every gate and join on all of them.

    Results are returned in gate order regardless of completion order.

    Raises:
        RunCancelledError: If the run is cancelled while gates are running.
            Remaining gates observe the same token and stop at their next
            wait.
    """
    with create_span(
        "ferry.gates.run",
        attributes={
            "gate_count": len(gates),
            "parallel": parallel,
            "environment": target.environment,
        },
    ) as span:
        logger.info(
            "gates_started",
            gates=[g.name for g in gates],
            parallel=parallel,
            environment=target.environment,
        )
        if not parallel or len(gates) <= 1:
            results = [gate.evaluate(target, artifact, cancel) for gate in gates]
        else:
            by_index: dict[int, GateResult] = {}
            with ThreadPoolExecutor(
                max_workers=min(max_workers, len(gates)),
                thread_name_prefix="ferry-gate",
            ) as executor:
                # Workers inherit the caller trace context.
                futures = {
                    executor.submit(
                        contextvars.copy_context().run, gate.evaluate, target, artifact, cancel
                    ): index
                    for index, gate in enumerate(gates)
                }
                for future in as_completed(futures):
                    by_index[futures[future]] = future.result()
            results = [by_index[i] for i in range(len(gates))]

        blocking = [r.gate_name for r in results if r.blocking]
        span.set_attribute("blocking_count", len(blocking))
        logger.info(
            "gates_completed",
            outcomes={r.gate_name: r.outcome.value for r in results},
            blocking=blocking,
        )
        return results


__all__ = ["build_gate", "build_gates", "run_gates"]
