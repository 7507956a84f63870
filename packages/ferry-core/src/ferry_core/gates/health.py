"""Liveness polling gate.

Polls an HTTP endpoint of the deployed service until it answers with the
expected status code. With the default configuration that is 30 attempts,
10 seconds apart.
"""

from __future__ import annotations

import time
from contextlib import nullcontext
from typing import Any

import httpx

from ferry_core.errors import RunCancelledError
from ferry_core.gates.base import GateEvaluator, GateVerdict, render_template, template_context
from ferry_core.resilience import BackoffPolicy, CancellationToken
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.deployment import DeploymentTarget
from ferry_core.schemas.gates import GateKind, GateOutcome, HealthCheckGateConfig
from ferry_core.telemetry.sanitization import sanitize_error_message


class HealthCheckGate(GateEvaluator):
    """GET a liveness URL until it returns ``expected_status``.

    Outcome mapping:
        - expected status within the retry budget: pass
        - retry budget exhausted: fail
        - ``timeout_seconds`` reached before the budget is spent: timeout

    Args:
        config: Gate configuration.
        client: httpx client to use (tests inject one with a MockTransport).
            When omitted a client is created per evaluation.
    """

    kind = GateKind.HEALTH_CHECK

    def __init__(self, config: HealthCheckGateConfig, client: httpx.Client | None = None) -> None:
        super().__init__(config.name, required=config.required)
        self.config = config
        self._client = client
        self.backoff = BackoffPolicy(
            config.interval_seconds,
            strategy=config.backoff,
            max_seconds=config.max_interval_seconds,
        )

    def _evaluate(
        self,
        target: DeploymentTarget,
        artifact: ArtifactReference,
        cancel: CancellationToken,
    ) -> GateVerdict:
        cfg = self.config
        url = render_template(cfg.url, template_context(target, artifact))
        deadline = time.monotonic() + cfg.timeout_seconds
        history: list[dict[str, Any]] = []

        def verdict(outcome: GateOutcome) -> GateVerdict:
            diagnostic = {
                "url": url,
                "expected_status": cfg.expected_status,
                "attempts": history,
            }
            return GateVerdict(outcome, diagnostic, attempts=len(history))

        client_cm = (
            nullcontext(self._client)
            if self._client is not None
            else httpx.Client(timeout=cfg.request_timeout_seconds)
        )
        with client_cm as client:
            for attempt in range(cfg.max_attempts):
                cancel.raise_if_cancelled(f"gate {self.name}")
                try:
                    response = client.get(url, timeout=cfg.request_timeout_seconds)
                except httpx.HTTPError as e:
                    history.append(
                        {"attempt": attempt + 1, "error": sanitize_error_message(str(e))}
                    )
                else:
                    history.append({"attempt": attempt + 1, "status_code": response.status_code})
                    if response.status_code == cfg.expected_status:
                        return verdict(GateOutcome.PASS)

                if attempt + 1 == cfg.max_attempts:
                    break

                delay = self.backoff.delay(attempt)
                if time.monotonic() + delay >= deadline:
                    return verdict(GateOutcome.TIMEOUT)
                self._log.debug(
                    "health_check_retry",
                    attempt=attempt + 1,
                    max_attempts=cfg.max_attempts,
                    delay_seconds=delay,
                    last=history[-1],
                )
                if cancel.wait(delay):
                    raise RunCancelledError(cancel.run_id, f"gate {self.name}")

        return verdict(GateOutcome.FAIL)


__all__ = ["HealthCheckGate"]
