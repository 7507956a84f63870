"""Shared pytest fixtures for ferry-core tests.

Provides in-memory fakes for every backend protocol plus factories for
pipeline configurations and HTTP clients backed by httpx.MockTransport.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Generator
from typing import Any

import httpx
import pytest
import structlog
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ALWAYS_ON

from ferry_core.backends.protocols import EngineStatus, UnitTestReport
from ferry_core.errors import BuildError, ConflictError, DeployRejectedError
from ferry_core.helm.values import get_value, merge_values
from ferry_core.promotion import PipelineBackends, RunStore
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import ArtifactReference, SourceReference
from ferry_core.schemas.config import PipelineConfig
from ferry_core.schemas.deployment import DeploymentTarget, ObservedState
from ferry_core.schemas.gates import GateKind, GateOutcome, GateResult
from ferry_core.telemetry.tracing import set_tracer

REPOSITORY = "registry.example.com/shop/api"
VALUES_PATH = "helm/shop-api/values-prod.yaml"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "requirement(id): Mark test as covering a specific requirement",
    )


class FakeBuildBackend:
    """BuildBackend producing ``REPOSITORY:<build_number>``."""

    def __init__(self) -> None:
        self.fail_build = False
        self.tests_pass = True
        self.builds: list[SourceReference] = []
        self.test_runs = 0

    def build(self, source: SourceReference) -> ArtifactReference:
        self.builds.append(source)
        if self.fail_build:
            raise BuildError("package", "mvn exited with code 1", output="[ERROR] compilation")
        tag = str(source.build_number)
        return ArtifactReference.create(tag, REPOSITORY, tag)

    def run_unit_tests(self, source: SourceReference) -> UnitTestReport:
        self.test_runs += 1
        if self.tests_pass:
            return UnitTestReport(passed=True, tests_run=12, failures=0)
        return UnitTestReport(passed=False, tests_run=12, failures=2, output="FAIL")


class FakeRegistry:
    """ContainerRegistry recording pushes."""

    def __init__(self) -> None:
        self.accept = True
        self.pushed: list[str] = []

    def push(self, image: str, tag: str) -> bool:
        self.pushed.append(f"{image}:{tag}")
        return self.accept


class FakeCluster:
    """ClusterBackend that becomes ready after ``ready_after`` status polls."""

    def __init__(self) -> None:
        self.ready_after = 1
        self.reject = False
        self.never_ready = False
        self.replicas = 2
        self.applied: list[tuple[str, str | None]] = []
        self._images: dict[str, str | None] = {}
        self._polls: dict[str, int] = {}
        self._lock = threading.Lock()

    def apply_deployment(self, target: DeploymentTarget) -> ObservedState:
        if self.reject:
            raise DeployRejectedError(target.environment, "admission webhook denied the request")
        with self._lock:
            self.applied.append((target.environment, target.desired_image))
            self._images[target.environment] = target.desired_image
            self._polls[target.environment] = 0
        return ObservedState(message="applied")

    def get_status(self, target: DeploymentTarget) -> ObservedState:
        with self._lock:
            polls = self._polls.get(target.environment, 0) + 1
            self._polls[target.environment] = polls
            image = self._images.get(target.environment)
        ready = 0 if self.never_ready or polls < self.ready_after else self.replicas
        return ObservedState(image=image, ready_replicas=ready, desired_replicas=self.replicas)


class FakeAnalysisBackend:
    """AnalysisBackend returning ``outcome``, or blocking while ``hang`` is unset."""

    def __init__(self) -> None:
        self.outcome = GateOutcome.PASS
        self.error: Exception | None = None
        self.hang: threading.Event | None = None
        self.calls = 0

    def submit_analysis(self, artifact: ArtifactReference) -> GateResult:
        self.calls += 1
        if self.hang is not None:
            self.hang.wait(30)
        if self.error is not None:
            raise self.error
        return GateResult(
            gate_name="sonarqube",
            kind=GateKind.QUALITY,
            outcome=self.outcome,
            diagnostic={"status": "OK" if self.outcome == GateOutcome.PASS else "ERROR"},
        )


class FakeStateStore:
    """DesiredStateStore over an in-memory document per path."""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self.documents: dict[str, dict[str, Any]] = documents or {}
        self.conflict = False
        self.commits: list[tuple[str, dict[str, Any], str]] = []

    def read_desired_state(self, path: str) -> dict[str, Any]:
        return self.documents.get(path, {})

    def commit_desired_state(self, path: str, patch: dict[str, Any], message: str) -> str:
        if self.conflict:
            raise ConflictError(path, "push rejected: remote has newer commits")
        self.documents[path] = merge_values(self.documents.get(path, {}), patch)
        self.commits.append((path, patch, message))
        return self.current_revision()

    def current_revision(self) -> str:
        return f"c0ffee{len(self.commits):02d}"

    def tag(self, path: str = VALUES_PATH) -> Any:
        return get_value(self.documents.get(path, {}), "image.tag")


class FakeEngine:
    """PromotionEngine that reports healthy unless told otherwise."""

    def __init__(self) -> None:
        self.accept_sync = True
        self.healthy = True
        self.synced: list[str] = []
        self.stale_revision: str | None = None
        self.waited_revisions: list[str | None] = []

    def sync(self, app_name: str) -> bool:
        self.synced.append(app_name)
        return self.accept_sync

    def wait_healthy(
        self,
        app_name: str,
        timeout: float,
        cancel: CancellationToken,
        revision: str | None = None,
    ) -> EngineStatus:
        self.waited_revisions.append(revision)
        return EngineStatus(
            app_name=app_name,
            healthy=self.healthy,
            health_status="Healthy" if self.healthy else "Progressing",
            sync_status="Synced",
            revision=self.stale_revision or revision,
        )


@pytest.fixture(autouse=True)
def _reset_tracer() -> Generator[None, None, None]:
    """Clear any tracer override around each test."""
    set_tracer(None)
    yield
    set_tracer(None)


@pytest.fixture(autouse=True)
def _reset_structlog() -> Generator[None, None, None]:
    """Undo configure_logging() calls made by CLI tests."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def otel_exporter() -> Generator[InMemorySpanExporter, None, None]:
    """Route ferry spans to an in-memory exporter."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider(sampler=ALWAYS_ON)
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    set_tracer(provider.get_tracer("ferry_core.test"))
    yield exporter
    set_tracer(None)
    exporter.clear()


@pytest.fixture
def backends() -> PipelineBackends:
    """Fresh fake backends; production records build 41."""
    return PipelineBackends(
        build=FakeBuildBackend(),
        registry=FakeRegistry(),
        cluster=FakeCluster(),
        analysis=FakeAnalysisBackend(),
        state_store=FakeStateStore({VALUES_PATH: {"image": {"repository": REPOSITORY, "tag": "41"}}}),
        engine=FakeEngine(),
    )


@pytest.fixture
def make_config(tmp_path: Any) -> Callable[..., PipelineConfig]:
    """Factory for a fast pipeline configuration.

    Keyword arguments are deep-merged into the base configuration.
    """

    def _make(**overrides: Any) -> PipelineConfig:
        base: dict[str, Any] = {
            "application": "shop-api",
            "build": {"repository": REPOSITORY},
            "test": {
                "environment": "test",
                "namespace": "shop-test",
                "release": "shop-api",
                "readiness": {"timeout_seconds": 2, "poll_interval_seconds": 0.01},
            },
            "gates": {
                "checks": [
                    {
                        "kind": "health_check",
                        "name": "liveness",
                        "url": "http://{release}.{namespace}.svc:8080/health",
                        "interval_seconds": 0,
                    },
                    {"kind": "quality", "name": "sonar", "timeout_seconds": 0.5},
                ],
            },
            "production": {
                "environment": "prod",
                "namespace": "shop-prod",
                "release": "shop-api",
                "values_path": VALUES_PATH,
                "lease_timeout_seconds": 1,
                "readiness": {"timeout_seconds": 2, "poll_interval_seconds": 0.01},
            },
            "gitops": {"repo_path": str(tmp_path / "deploy-config")},
            "argocd": {"app_name": "shop-api-prod"},
            "sonarqube": {"url": "https://sonar.example.com", "project_key": "shop-api"},
            "run_store": str(tmp_path / "runs"),
            "lock_dir": str(tmp_path / "leases"),
        }
        return PipelineConfig.model_validate(merge_values(base, overrides))

    return _make


@pytest.fixture
def make_http_client() -> Callable[..., httpx.Client]:
    """Factory for an httpx client answering from a status sequence.

    ``statuses`` is either a list (the last status repeats) or a callable
    receiving the request and returning a status code.
    """

    def _make(statuses: list[int] | Callable[[httpx.Request], int]) -> httpx.Client:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if callable(statuses):
                return httpx.Response(statuses(request))
            index = min(len(requests) - 1, len(statuses) - 1)
            return httpx.Response(statuses[index])

        client = httpx.Client(transport=httpx.MockTransport(handler))
        client.requests = requests  # type: ignore[attr-defined]
        return client

    return _make


@pytest.fixture
def run_store(tmp_path: Any) -> RunStore:
    """Run store archiving to a temporary directory."""
    return RunStore(tmp_path / "runs")


@pytest.fixture
def source(tmp_path: Any) -> SourceReference:
    """Source reference for build 42."""
    return SourceReference(path=str(tmp_path), build_number=42)


@pytest.fixture
def artifact() -> ArtifactReference:
    """Artifact for build 42."""
    return ArtifactReference.create("42", REPOSITORY, "42")


@pytest.fixture
def deploy_target() -> DeploymentTarget:
    """Test environment target with fast readiness polling."""
    return DeploymentTarget(
        environment="test",
        namespace="shop-test",
        release="shop-api",
        readiness={"timeout_seconds": 1, "poll_interval_seconds": 0.01},
    )
