"""ArgoCD promotion engine driven by the ``argocd`` CLI."""

from __future__ import annotations

import json
import os
import subprocess
from typing import Any

import structlog

from ferry_core.backends._process import run_tool, tail
from ferry_core.backends.protocols import EngineStatus
from ferry_core.resilience import CancellationToken, PollingTimeoutError, poll_until
from ferry_core.telemetry.tracing import create_span, traced

logger = structlog.get_logger(__name__)


def engine_status_from_app(app_name: str, app: dict[str, Any]) -> EngineStatus:
    """Build an EngineStatus from ``argocd app get -o json`` output."""
    status = app.get("status", {})
    health = status.get("health", {}).get("status")
    sync = status.get("sync", {})
    return EngineStatus(
        app_name=app_name,
        healthy=health == "Healthy" and sync.get("status") == "Synced",
        health_status=health,
        sync_status=sync.get("status"),
        revision=sync.get("revision"),
        message=status.get("health", {}).get("message")
        or status.get("operationState", {}).get("message"),
    )


class ArgoCDEngine:
    """PromotionEngine over the ArgoCD CLI.

    Args:
        server: ArgoCD server address (None uses the CLI's current context).
        auth_token: API token, passed to the CLI via ARGOCD_AUTH_TOKEN.
        insecure: Skip TLS verification.
        poll_interval_seconds: Delay between health polls.
        command_timeout_seconds: Timeout for each CLI invocation.
    """

    def __init__(
        self,
        *,
        server: str | None = None,
        auth_token: str | None = None,
        insecure: bool = False,
        poll_interval_seconds: float = 5.0,
        command_timeout_seconds: float = 120.0,
    ) -> None:
        self.server = server
        self.insecure = insecure
        self.poll_interval_seconds = poll_interval_seconds
        self.command_timeout_seconds = command_timeout_seconds
        self._env: dict[str, str] | None = None
        if auth_token:
            self._env = {**os.environ, "ARGOCD_AUTH_TOKEN": auth_token}

    def _argocd(self, *args: str) -> subprocess.CompletedProcess[str]:
        cmd = ["argocd", *args]
        if self.server:
            cmd.extend(["--server", self.server])
        if self.insecure:
            cmd.append("--insecure")
        return run_tool(cmd, timeout=self.command_timeout_seconds, env=self._env)

    def sync(self, app_name: str) -> bool:
        """Refresh the application and trigger a sync."""
        with create_span("ferry.engine.sync", attributes={"app_name": app_name}) as span:
            try:
                result = self._argocd("app", "sync", app_name, "--async", "--prune")
            except (subprocess.TimeoutExpired, FileNotFoundError) as e:
                logger.warning("argocd_sync_failed", app_name=app_name, error=str(e))
                span.set_attribute("accepted", False)
                return False
            accepted = result.returncode == 0
            span.set_attribute("accepted", accepted)
            if not accepted:
                logger.warning(
                    "argocd_sync_failed",
                    app_name=app_name,
                    error=tail(result.stderr, 500).strip(),
                )
                return False
            logger.info("argocd_sync_triggered", app_name=app_name)
            return True

    @traced(name="ferry.engine.status")
    def get_status(self, app_name: str) -> EngineStatus:
        """Read the application's health and sync state.

        Raises:
            RuntimeError: If the CLI fails.
        """
        result = self._argocd("app", "get", app_name, "-o", "json", "--refresh")
        if result.returncode != 0:
            raise RuntimeError(f"argocd app get failed: {tail(result.stderr, 500).strip()}")
        return engine_status_from_app(app_name, json.loads(result.stdout))

    def wait_healthy(
        self,
        app_name: str,
        timeout: float,
        cancel: CancellationToken,
        revision: str | None = None,
    ) -> EngineStatus:
        """Poll until the application is Synced and Healthy at ``revision``.

        A Synced/Healthy status for an older revision does not count: right
        after an asynchronous sync ArgoCD still reports the previous state.

        Returns the last observed status when ``timeout`` elapses first; the
        caller decides whether an unhealthy result fails the run.

        Raises:
            RunCancelledError: If the run is cancelled while waiting.
        """
        with create_span(
            "ferry.engine.wait_healthy",
            attributes={"app_name": app_name, "timeout_seconds": timeout, "revision": revision},
        ) as span:
            try:
                status = poll_until(
                    lambda: self.get_status(app_name),
                    lambda s: s.healthy and s.at_revision(revision),
                    timeout=timeout,
                    interval=self.poll_interval_seconds,
                    cancel=cancel,
                    description=f"argocd application {app_name}",
                    transient=(RuntimeError, ValueError, subprocess.TimeoutExpired),
                )
            except PollingTimeoutError as e:
                last = e.last_value
                if isinstance(last, EngineStatus):
                    status = last
                else:
                    status = EngineStatus(
                        app_name=app_name,
                        healthy=False,
                        message=str(e.last_error) if e.last_error else "no status observed",
                    )
            span.set_attribute("healthy", status.healthy)
            logger.info(
                "argocd_application_status",
                app_name=app_name,
                healthy=status.healthy,
                health_status=status.health_status,
                sync_status=status.sync_status,
                revision=status.revision,
                expected_revision=revision,
            )
            return status


__all__ = ["ArgoCDEngine", "engine_status_from_app"]
