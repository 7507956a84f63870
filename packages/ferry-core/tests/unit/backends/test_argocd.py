"""Unit tests for the ArgoCD promotion engine."""

from __future__ import annotations

import json
import subprocess
from typing import Any
from unittest.mock import patch

import pytest

from ferry_core.backends.argocd import ArgoCDEngine, engine_status_from_app
from ferry_core.backends.protocols import EngineStatus
from ferry_core.resilience import CancellationToken


def _app(
    health: str = "Healthy", sync: str = "Synced", revision: str = "9f3c2a1"
) -> dict[str, Any]:
    return {
        "metadata": {"name": "shop-api-prod"},
        "status": {
            "health": {"status": health},
            "sync": {"status": sync, "revision": revision},
            "operationState": {"message": "successfully synced (all tasks run)"},
        },
    }


def _done(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


class TestEngineStatusFromApp:
    """Tests for application JSON parsing."""

    @pytest.mark.requirement("FR-630")
    def test_healthy_and_synced(self) -> None:
        """Only Healthy and Synced together count as healthy."""
        status = engine_status_from_app("shop-api-prod", _app())

        assert status.healthy
        assert status.revision == "9f3c2a1"
        assert "successfully synced" in (status.message or "")

    @pytest.mark.requirement("FR-630")
    @pytest.mark.parametrize(
        ("health", "sync"),
        [("Progressing", "Synced"), ("Healthy", "OutOfSync"), ("Degraded", "Synced")],
    )
    def test_not_healthy(self, health: str, sync: str) -> None:
        """Any other combination is not converged."""
        assert not engine_status_from_app("shop-api-prod", _app(health, sync)).healthy

    @pytest.mark.requirement("FR-630")
    def test_at_revision_accepts_abbreviated_sha(self) -> None:
        """A short sha matches the full revision in either direction."""
        status = engine_status_from_app("shop-api-prod", _app(revision="9f3c2a1e5b"))

        assert status.at_revision("9f3c2a1")
        assert status.at_revision("9f3c2a1e5b77")
        assert status.at_revision(None)
        assert not status.at_revision("4b1d0c2")


class TestArgoCDEngine:
    """Tests for ArgoCDEngine with the tool runner patched."""

    @pytest.mark.requirement("FR-631")
    def test_sync_passes_token_through_environment(self) -> None:
        """The token is handed to the CLI via ARGOCD_AUTH_TOKEN, not argv."""
        engine = ArgoCDEngine(server="argocd.example.com", auth_token="s3cret")

        with patch("ferry_core.backends.argocd.run_tool", return_value=_done()) as run:
            assert engine.sync("shop-api-prod") is True

        cmd = run.call_args.args[0]
        assert cmd[:4] == ["argocd", "app", "sync", "shop-api-prod"]
        assert "s3cret" not in cmd
        assert run.call_args.kwargs["env"]["ARGOCD_AUTH_TOKEN"] == "s3cret"

    @pytest.mark.requirement("FR-631")
    def test_refused_sync(self) -> None:
        """A failing sync command reports False."""
        with patch(
            "ferry_core.backends.argocd.run_tool",
            return_value=_done(20, stderr="permission denied"),
        ):
            assert ArgoCDEngine().sync("shop-api-prod") is False

    @pytest.mark.requirement("FR-632")
    def test_wait_healthy_polls_until_healthy(self) -> None:
        """Progressing answers are polled through until Healthy."""
        answers = iter(
            [
                _done(stdout=json.dumps(_app("Progressing"))),
                _done(1, stderr="rpc error: code = Unavailable"),
                _done(stdout=json.dumps(_app())),
            ]
        )
        engine = ArgoCDEngine(poll_interval_seconds=0.01)

        with patch("ferry_core.backends.argocd.run_tool", side_effect=lambda *a, **kw: next(answers)):
            status = engine.wait_healthy("shop-api-prod", 5, CancellationToken())

        assert status.healthy

    @pytest.mark.requirement("FR-632")
    def test_wait_healthy_timeout_returns_last_status(self) -> None:
        """On timeout the last observed status is returned, not raised."""
        engine = ArgoCDEngine(poll_interval_seconds=0.01)

        with patch(
            "ferry_core.backends.argocd.run_tool",
            return_value=_done(stdout=json.dumps(_app("Degraded"))),
        ):
            status = engine.wait_healthy("shop-api-prod", 0.05, CancellationToken())

        assert isinstance(status, EngineStatus)
        assert not status.healthy
        assert status.health_status == "Degraded"

    @pytest.mark.requirement("FR-632")
    def test_wait_healthy_without_any_status(self) -> None:
        """If every poll failed the result explains the last error."""
        engine = ArgoCDEngine(poll_interval_seconds=0.01)

        with patch(
            "ferry_core.backends.argocd.run_tool",
            return_value=_done(1, stderr="connection refused"),
        ):
            status = engine.wait_healthy("shop-api-prod", 0.05, CancellationToken())

        assert not status.healthy
        assert "connection refused" in (status.message or "")

    @pytest.mark.requirement("FR-632")
    def test_wait_healthy_waits_for_expected_revision(self) -> None:
        """Healthy at the previous revision is polled through until the new one."""
        answers = iter(
            [
                _done(stdout=json.dumps(_app(revision="4b1d0c2"))),
                _done(stdout=json.dumps(_app(revision="9f3c2a1"))),
            ]
        )
        engine = ArgoCDEngine(poll_interval_seconds=0.01)

        with patch("ferry_core.backends.argocd.run_tool", side_effect=lambda *a, **kw: next(answers)):
            status = engine.wait_healthy(
                "shop-api-prod", 5, CancellationToken(), revision="9f3c2a1"
            )

        assert status.healthy
        assert status.revision == "9f3c2a1"

    @pytest.mark.requirement("FR-632")
    def test_wait_healthy_on_stale_revision_times_out(self) -> None:
        """An application healthy only at an older revision never satisfies the wait."""
        engine = ArgoCDEngine(poll_interval_seconds=0.01)

        with patch(
            "ferry_core.backends.argocd.run_tool",
            return_value=_done(stdout=json.dumps(_app(revision="4b1d0c2"))),
        ):
            status = engine.wait_healthy(
                "shop-api-prod", 0.05, CancellationToken(), revision="9f3c2a1"
            )

        assert status.healthy
        assert not status.at_revision("9f3c2a1")
