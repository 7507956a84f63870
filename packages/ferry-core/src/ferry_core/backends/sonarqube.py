"""SonarQube analysis backend.

Waits for the project's background analysis tasks to finish, then reads the
quality gate verdict from ``/api/qualitygates/project_status``.

Example:
    >>> backend = SonarQubeBackend(
    ...     url="https://sonar.example.com",
    ...     project_key="shop-api",
    ...     token=os.environ["SONAR_TOKEN"],
    ... )
    >>> result = backend.submit_analysis(artifact)
    >>> result.outcome
    <GateOutcome.PASS: 'pass'>
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from ferry_core.resilience import CancellationToken, poll_until
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.gates import GateKind, GateOutcome, GateResult
from ferry_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

_PENDING_TASK_STATES = frozenset({"PENDING", "IN_PROGRESS"})


class SonarQubeBackend:
    """AnalysisBackend over the SonarQube Web API.

    The backend does not enforce a caller deadline itself (QualityGate
    does); ``max_wait_seconds`` only bounds the background-task wait so a
    worker thread abandoned by its caller eventually exits. ``close()``
    stops an in-flight wait.

    Args:
        url: SonarQube base URL.
        project_key: Project whose quality gate is read.
        token: API token (resolved by the caller, never read from the environment here).
        poll_interval_seconds: Delay between background-task polls.
        max_wait_seconds: Upper bound on the background-task wait.
        client: Preconfigured httpx client (tests inject a MockTransport).
    """

    def __init__(
        self,
        url: str,
        project_key: str,
        *,
        token: str | None = None,
        poll_interval_seconds: float = 5.0,
        max_wait_seconds: float = 1800.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.project_key = project_key
        self.poll_interval_seconds = poll_interval_seconds
        self.max_wait_seconds = max_wait_seconds
        auth = httpx.BasicAuth(token, "") if token else None
        self._client = client or httpx.Client(base_url=self.url, auth=auth, timeout=30.0)
        self._stop = CancellationToken(run_id=f"sonarqube:{project_key}")
        self._log = logger.bind(project_key=project_key)

    def close(self) -> None:
        """Abort waits and release the HTTP client."""
        self._stop.cancel("analysis backend closed")
        self._client.close()

    def _get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        response = self._client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    def _pending_tasks(self) -> int:
        data = self._get("/api/ce/component", {"component": self.project_key})
        queue = data.get("queue", [])
        return sum(1 for task in queue if task.get("status") in _PENDING_TASK_STATES)

    def submit_analysis(self, artifact: ArtifactReference) -> GateResult:
        """Return the quality gate verdict for the project.

        Raises:
            httpx.HTTPError: If the SonarQube API is unreachable or errors.
            PollingTimeoutError: If background analysis never finishes.
        """
        start = time.monotonic()
        with create_span(
            "ferry.analysis.sonarqube",
            attributes={"project_key": self.project_key, "image": artifact.image},
        ) as span:
            polls = 0

            def fetch_status() -> int:
                nonlocal polls
                polls += 1
                return self._pending_tasks()

            poll_until(
                fetch_status,
                lambda pending: pending == 0,
                timeout=self.max_wait_seconds,
                interval=self.poll_interval_seconds,
                cancel=self._stop,
                description=f"sonarqube analysis of {self.project_key}",
            )

            data = self._get("/api/qualitygates/project_status", {"projectKey": self.project_key})
            project_status = data.get("projectStatus", {})
            status = project_status.get("status", "NONE")
            failing = [
                {
                    "metric": c.get("metricKey"),
                    "actual": c.get("actualValue"),
                    "threshold": c.get("errorThreshold"),
                }
                for c in project_status.get("conditions", [])
                if c.get("status") == "ERROR"
            ]
            outcome = GateOutcome.PASS if status == "OK" else GateOutcome.FAIL
            span.set_attribute("quality_gate_status", status)

            self._log.info(
                "quality_gate_status_read",
                status=status,
                failing_conditions=len(failing),
                image=artifact.image,
            )
            return GateResult(
                gate_name="sonarqube",
                kind=GateKind.QUALITY,
                outcome=outcome,
                diagnostic={
                    "project_key": self.project_key,
                    "status": status,
                    "failing_conditions": failing,
                },
                attempts=polls + 1,
                duration_ms=int((time.monotonic() - start) * 1000),
            )


__all__ = ["SonarQubeBackend"]
