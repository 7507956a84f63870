"""Unit tests for QualityGate."""

from __future__ import annotations

import threading
import time

import pytest

from ferry_core.errors import RunCancelledError
from ferry_core.gates.quality import QualityGate
from ferry_core.promotion import PipelineBackends
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.deployment import DeploymentTarget
from ferry_core.schemas.gates import GateOutcome, QualityGateConfig


class TestQualityGate:
    """The quality gate enforces its own timeout and fails closed."""

    @pytest.mark.requirement("FR-310")
    @pytest.mark.parametrize("outcome", [GateOutcome.PASS, GateOutcome.FAIL])
    def test_backend_verdict_is_reported(
        self,
        outcome: GateOutcome,
        backends: PipelineBackends,
        deploy_target: DeploymentTarget,
        artifact: ArtifactReference,
    ) -> None:
        """The backend's outcome and diagnostic are carried into the result."""
        backends.analysis.outcome = outcome  # type: ignore[union-attr]
        gate = QualityGate(QualityGateConfig(name="sonar", timeout_seconds=5), backends.analysis)  # type: ignore[arg-type]

        result = gate.evaluate(deploy_target, artifact, CancellationToken())

        assert result.outcome == outcome
        assert "status" in result.diagnostic["backend"]

    @pytest.mark.requirement("FR-311")
    def test_hung_backend_times_out(
        self,
        backends: PipelineBackends,
        deploy_target: DeploymentTarget,
        artifact: ArtifactReference,
    ) -> None:
        """A backend that never answers yields timeout within the configured bound."""
        release = threading.Event()
        backends.analysis.hang = release  # type: ignore[union-attr]
        gate = QualityGate(QualityGateConfig(name="sonar", timeout_seconds=0.3), backends.analysis)  # type: ignore[arg-type]

        started = time.monotonic()
        try:
            result = gate.evaluate(deploy_target, artifact, CancellationToken())
        finally:
            release.set()

        assert result.outcome == GateOutcome.TIMEOUT
        assert result.blocking
        assert time.monotonic() - started < 5

    @pytest.mark.requirement("FR-312")
    def test_backend_error_fails_closed(
        self,
        backends: PipelineBackends,
        deploy_target: DeploymentTarget,
        artifact: ArtifactReference,
    ) -> None:
        """An exception from the backend is a failed gate."""
        backends.analysis.error = ConnectionError("sonar unreachable")  # type: ignore[union-attr]
        gate = QualityGate(QualityGateConfig(name="sonar", timeout_seconds=5), backends.analysis)  # type: ignore[arg-type]

        result = gate.evaluate(deploy_target, artifact, CancellationToken())

        assert result.outcome == GateOutcome.FAIL
        assert result.diagnostic["error_type"] == "ConnectionError"

    @pytest.mark.requirement("FR-313")
    def test_cancellation_interrupts_wait(
        self,
        backends: PipelineBackends,
        deploy_target: DeploymentTarget,
        artifact: ArtifactReference,
    ) -> None:
        """Cancelling while the backend is busy raises RunCancelledError."""
        release = threading.Event()
        backends.analysis.hang = release  # type: ignore[union-attr]
        gate = QualityGate(QualityGateConfig(name="sonar", timeout_seconds=30), backends.analysis)  # type: ignore[arg-type]
        token = CancellationToken("run-1")
        threading.Timer(0.1, token.cancel).start()

        try:
            with pytest.raises(RunCancelledError):
                gate.evaluate(deploy_target, artifact, token)
        finally:
            release.set()
