"""Static-analysis quality gate.

The analysis backend is not trusted to time out on its own: the call runs on
a daemon worker thread and the gate enforces a wall-clock timeout. A backend
that does not answer in time yields a ``timeout`` outcome, which blocks
promotion like a failure.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from concurrent.futures import wait as wait_futures

from ferry_core.backends.protocols import AnalysisBackend
from ferry_core.errors import RunCancelledError
from ferry_core.gates.base import GateEvaluator, GateVerdict
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.deployment import DeploymentTarget
from ferry_core.schemas.gates import GateKind, GateOutcome, GateResult, QualityGateConfig

_CANCEL_CHECK_SECONDS = 0.25


class QualityGate(GateEvaluator):
    """Ask the analysis backend for a verdict within ``timeout_seconds``."""

    kind = GateKind.QUALITY

    def __init__(self, config: QualityGateConfig, backend: AnalysisBackend) -> None:
        super().__init__(config.name, required=config.required)
        self.config = config
        self.backend = backend

    def _submit(self, artifact: ArtifactReference) -> Future[GateResult]:
        future: Future[GateResult] = Future()

        def work() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.backend.submit_analysis(artifact))
            except Exception as e:
                future.set_exception(e)

        threading.Thread(target=work, name=f"quality-gate-{self.name}", daemon=True).start()
        return future

    def _evaluate(
        self,
        target: DeploymentTarget,
        artifact: ArtifactReference,
        cancel: CancellationToken,
    ) -> GateVerdict:
        timeout = self.config.timeout_seconds
        deadline = time.monotonic() + timeout
        future = self._submit(artifact)

        while not future.done():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._log.warning("quality_gate_backend_timeout", timeout_seconds=timeout)
                return GateVerdict(
                    GateOutcome.TIMEOUT,
                    {"timeout_seconds": timeout, "reason": "analysis backend did not answer"},
                )
            wait_futures([future], timeout=min(remaining, _CANCEL_CHECK_SECONDS))
            if cancel.cancelled and not future.done():
                raise RunCancelledError(cancel.run_id, f"gate {self.name}")

        backend_result = future.result()
        return GateVerdict(
            backend_result.outcome,
            {"backend": backend_result.diagnostic},
            attempts=max(backend_result.attempts, 1),
        )


__all__ = ["QualityGate"]
