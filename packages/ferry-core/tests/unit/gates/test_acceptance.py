"""Unit tests for AcceptanceTestGate.

These run real (trivial) shell commands.
"""

from __future__ import annotations

import threading
import time

import pytest

from ferry_core.errors import RunCancelledError
from ferry_core.gates.acceptance import AcceptanceTestGate
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.deployment import DeploymentTarget
from ferry_core.schemas.gates import AcceptanceTestGateConfig, GateOutcome


def _gate(command: str, **overrides: object) -> AcceptanceTestGate:
    return AcceptanceTestGate(
        AcceptanceTestGateConfig(name="acceptance", command=command, **overrides)  # type: ignore[arg-type]
    )


class TestAcceptanceTestGate:
    """Exit code mapping, timeouts and template quoting."""

    @pytest.mark.requirement("FR-320")
    def test_exit_zero_passes(
        self, deploy_target: DeploymentTarget, artifact: ArtifactReference
    ) -> None:
        """A command exiting 0 passes and its output is captured."""
        result = _gate("echo smoke ok").evaluate(deploy_target, artifact, CancellationToken())

        assert result.outcome == GateOutcome.PASS
        assert result.diagnostic["exit_code"] == 0
        assert "smoke ok" in result.diagnostic["output"]

    @pytest.mark.requirement("FR-320")
    def test_non_zero_exit_fails(
        self, deploy_target: DeploymentTarget, artifact: ArtifactReference
    ) -> None:
        """A non-zero exit fails the gate."""
        result = _gate("echo broken >&2; exit 3").evaluate(
            deploy_target, artifact, CancellationToken()
        )

        assert result.outcome == GateOutcome.FAIL
        assert result.diagnostic["exit_code"] == 3
        assert "broken" in result.diagnostic["output"]

    @pytest.mark.requirement("FR-321")
    def test_timeout_kills_command(
        self, deploy_target: DeploymentTarget, artifact: ArtifactReference
    ) -> None:
        """A command running past timeout_seconds is terminated with outcome timeout."""
        gate = _gate("sleep 30", timeout_seconds=0.3, grace_period_seconds=1)

        started = time.monotonic()
        result = gate.evaluate(deploy_target, artifact, CancellationToken())

        assert result.outcome == GateOutcome.TIMEOUT
        assert time.monotonic() - started < 10

    @pytest.mark.requirement("FR-322")
    def test_cancellation_terminates_command(
        self, deploy_target: DeploymentTarget, artifact: ArtifactReference
    ) -> None:
        """Cancellation stops the command and propagates."""
        token = CancellationToken("run-1")
        threading.Timer(0.1, token.cancel).start()

        with pytest.raises(RunCancelledError):
            _gate("sleep 30", grace_period_seconds=1).evaluate(deploy_target, artifact, token)

    @pytest.mark.requirement("FR-323")
    def test_template_values_are_quoted(
        self, deploy_target: DeploymentTarget, artifact: ArtifactReference
    ) -> None:
        """Substituted values are shell-quoted; base_url is rendered first."""
        gate = _gate(
            "run-tests --url {base_url} --image {image}",
            base_url="http://{release}.{namespace}.svc:8080",
        )

        command = gate.build_command(deploy_target, artifact)

        assert command == (
            "run-tests --url http://shop-api.shop-test.svc:8080 "
            "--image registry.example.com/shop/api:42"
        )

    @pytest.mark.requirement("FR-323")
    def test_hostile_values_cannot_inject(self, artifact: ArtifactReference) -> None:
        """A value containing shell syntax stays a single argument."""
        target = DeploymentTarget(environment="test", namespace="ns", release="a;touch x")
        gate = _gate("echo {release}")

        assert gate.build_command(target, artifact) == "echo 'a;touch x'"
