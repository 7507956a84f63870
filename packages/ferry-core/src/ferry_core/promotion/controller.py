"""PromotionController: build, deploy to test, gate, promote to production.

The controller drives one PipelineRun through its state machine:

    pending -> building -> deployed -> gating -> promoting -> converged

Any stage error ends the run in ``failed`` with the stage recorded. Each
transition produces a new immutable PipelineRun that is published to the
RunStore, so ``get_run_status`` always returns a consistent snapshot.

Production is only touched after every required gate passed, while holding
the production environment lease. The desired tag is recorded once: a run
that finds the tag already recorded (for example a re-run after a
convergence timeout) skips the commit and only re-syncs.

Example:
    >>> controller = PromotionController(config, backends)
    >>> run = controller.run_pipeline(SourceReference(path="/src/shop-api", build_number=42))
    >>> run.state
    <RunState.CONVERGED: 'converged'>
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import httpx
import structlog

from ferry_core.backends.protocols import (
    AnalysisBackend,
    BuildBackend,
    ClusterBackend,
    ContainerRegistry,
    DesiredStateStore,
    EngineStatus,
    PromotionEngine,
)
from ferry_core.deploy.driver import DeploymentDriver
from ferry_core.errors import (
    BuildError,
    ConflictError,
    DeployRejectedError,
    DeployTimeoutError,
    FerryError,
    GateFailure,
    RunCancelledError,
    ValidationError,
)
from ferry_core.gates.runner import build_gates, run_gates
from ferry_core.helm.values import get_value, patch_for_key
from ferry_core.promotion.locks import environment_lease
from ferry_core.promotion.store import RunStore, validate_run_id
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import BUILD_TAG_PATTERN, ArtifactReference, SourceReference
from ferry_core.schemas.config import PipelineConfig, PromotionStrategy, UnitTestPolicy
from ferry_core.schemas.deployment import DeploymentPhase, DeploymentStatus
from ferry_core.schemas.gates import GateResult
from ferry_core.schemas.pipeline import PipelineRun, RunFailure, RunState
from ferry_core.telemetry.sanitization import sanitize_error_message
from ferry_core.telemetry.tracing import create_span
from ferry_core.webhooks import WebhookNotifier

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PipelineBackends:
    """External collaborators of a pipeline.

    Attributes:
        build: Builds the artifact and runs unit tests.
        registry: Receives the built image.
        cluster: Applies deployments (test, and production for the direct strategy).
        analysis: Quality gate backend (required when quality gates are configured).
        state_store: Desired-state store (gitops strategy).
        engine: GitOps engine (gitops strategy).
    """

    build: BuildBackend
    registry: ContainerRegistry
    cluster: ClusterBackend
    analysis: AnalysisBackend | None = None
    state_store: DesiredStateStore | None = None
    engine: PromotionEngine | None = None


def new_run_id(application: str, build_number: int) -> str:
    """Generate a run id such as ``shop-api-42-1f2e3d4c``."""
    return f"{application}-{build_number}-{uuid4().hex[:8]}"


def failure_diagnostic(error: Exception) -> dict[str, Any]:
    """Structured details explaining a stage error."""
    if isinstance(error, GateFailure):
        return {"gates": [r.model_dump(mode="json") for r in error.results]}
    if isinstance(error, BuildError):
        return {"step": error.step, "output": sanitize_error_message(error.output or "", 4000)}
    if isinstance(error, DeployTimeoutError):
        last = error.last_status
        return {
            "environment": error.environment,
            "timeout_seconds": error.timeout_seconds,
            "last_status": last.model_dump(mode="json") if last is not None else None,
        }
    if isinstance(error, DeployRejectedError):
        return {"environment": error.environment, "reason": sanitize_error_message(error.reason)}
    if isinstance(error, ConflictError):
        return {"resource": error.resource, "reason": error.reason}
    if isinstance(error, ValidationError):
        return {"field": error.field, "reason": error.reason}
    if isinstance(error, RunCancelledError):
        return {"stage": error.stage}
    return {}


class PromotionController:
    """Runs pipelines for one application configuration.

    Args:
        config: Pipeline configuration.
        backends: External collaborators.
        store: Run store (default: in-memory).
        driver: Deployment driver (default: one over ``backends.cluster``).
        notifier: Webhook notifier (default: built from ``config.webhooks``).
        http_client: httpx client shared by health check gates.

    Raises:
        ValidationError: If the configuration needs a backend that is missing.
    """

    def __init__(
        self,
        config: PipelineConfig,
        backends: PipelineBackends,
        *,
        store: RunStore | None = None,
        driver: DeploymentDriver | None = None,
        notifier: WebhookNotifier | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.config = config
        self.backends = backends
        self.store = store if store is not None else RunStore()
        self.driver = driver if driver is not None else DeploymentDriver(backends.cluster)
        self.notifier = notifier if notifier is not None else WebhookNotifier(config.webhooks)
        self.gates = build_gates(
            config.gates,
            analysis_backend=backends.analysis,
            http_client=http_client,
        )

        if config.production.strategy == PromotionStrategy.GITOPS:
            if backends.state_store is None or backends.engine is None:
                raise ValidationError(
                    "backends", "gitops promotion needs a desired-state store and an engine"
                )
        self.driver.register_target(config.test.to_target())
        self.driver.register_target(config.production.to_target())

        self._registry_lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}
        self._run_locks: dict[str, threading.Lock] = {}
        self._log = logger.bind(application=config.application)

    # Run registry

    def _register(self, run_id: str, token: CancellationToken) -> threading.Lock:
        with self._registry_lock:
            if run_id in self._tokens:
                raise ValidationError("run_id", f"run {run_id} is already in progress")
            self._tokens[run_id] = token
            lock = self._run_locks[run_id] = threading.Lock()
            return lock

    def _unregister(self, run_id: str) -> None:
        with self._registry_lock:
            self._tokens.pop(run_id, None)
            self._run_locks.pop(run_id, None)

    def cancel(self, run_id: str, reason: str = "cancelled by operator") -> bool:
        """Request cancellation of an active run.

        Setting the token happens under the run lock, so a concurrent
        gating -> promoting transition either completes before the
        cancellation or observes it.

        Returns:
            True if an active run was signalled, False if it already finished.

        Raises:
            RunNotFoundError: If the run is unknown.
        """
        with self._registry_lock:
            token = self._tokens.get(run_id)
            lock = self._run_locks.get(run_id)
        if token is None or lock is None:
            self.store.get(run_id)
            return False
        with lock:
            token.cancel(reason)
        self._log.info("run_cancel_requested", run_id=run_id, reason=reason)
        return True

    def get_run_status(self, run_id: str) -> PipelineRun:
        """Latest snapshot of a run.

        Raises:
            RunNotFoundError: If the run is unknown.
        """
        return self.store.get(run_id)

    # State transitions

    def _transition(
        self,
        run: PipelineRun,
        to_state: RunState,
        token: CancellationToken,
        lock: threading.Lock,
        **changes: Any,
    ) -> PipelineRun:
        with lock:
            if to_state != RunState.CONVERGED:
                token.raise_if_cancelled(to_state.value)
            advanced = run.advance(to_state, targets=self._target_snapshots(), **changes)
            self.store.save(advanced)
        self._log.info(
            "run_state_changed",
            run_id=run.run_id,
            from_state=run.state.value,
            to_state=to_state.value,
        )
        return advanced

    def _target_snapshots(self) -> dict[str, DeploymentStatus]:
        return {
            env: self.driver.current_status(env)
            for env in (self.config.test.environment, self.config.production.environment)
        }

    def _fail(self, run: PipelineRun, error: Exception) -> PipelineRun:
        retryable = isinstance(error, FerryError) and error.retryable
        failure = RunFailure(
            stage=run.state,
            error_type=type(error).__name__,
            message=sanitize_error_message(str(error)),
            retryable=retryable,
            diagnostic=failure_diagnostic(error),
        )
        failed = run.update(targets=self._target_snapshots()).fail(
            failure,
            cancelled=isinstance(error, RunCancelledError),
        )
        self.store.save(failed)
        self._log.warning(
            "run_failed",
            run_id=run.run_id,
            stage=run.state.value,
            error_type=failure.error_type,
            error=failure.message,
            retryable=retryable,
        )
        return failed

    # Stages

    def _build(
        self,
        source: SourceReference,
        token: CancellationToken,
    ) -> tuple[ArtifactReference, list[str]]:
        warnings: list[str] = []
        policy = self.config.build.unit_tests
        with create_span(
            "ferry.pipeline.build",
            attributes={"build_number": source.build_number, "unit_tests": policy.value},
        ):
            artifact = self.backends.build.build(source)
            token.raise_if_cancelled("building")

            if policy == UnitTestPolicy.SKIP:
                self._log.info("unit_tests_skipped", build_number=source.build_number)
            else:
                report = self.backends.build.run_unit_tests(source)
                if not report.passed:
                    summary = (
                        f"unit tests failed ({report.failures} of {report.tests_run})"
                        if report.tests_run is not None
                        else "unit tests failed"
                    )
                    if policy == UnitTestPolicy.ENFORCE:
                        raise BuildError("unit_tests", summary, output=report.output)
                    warnings.append(summary)
                    self._log.warning("unit_tests_failed_reported", summary=summary)
            token.raise_if_cancelled("building")

            if not self.backends.registry.push(artifact.repository, artifact.tag):
                raise BuildError("push", f"registry refused {artifact.image}")
            return artifact, warnings

    def _gate(self, run: PipelineRun, token: CancellationToken) -> list[GateResult]:
        assert run.artifact is not None
        target = self.driver.target(self.config.test.environment)
        return run_gates(
            self.gates,
            target,
            run.artifact,
            token,
            parallel=self.config.gates.parallel,
            max_workers=self.config.gates.max_workers,
        )

    def _check_downgrade(self, recorded: Any, artifact: ArtifactReference) -> None:
        if recorded is None or self.config.production.allow_downgrade:
            return
        recorded_tag = str(recorded)
        if BUILD_TAG_PATTERN.match(recorded_tag) and int(recorded_tag) > artifact.build_number:
            raise ValidationError(
                "artifact",
                f"build {artifact.tag} is older than production build {recorded_tag} "
                "(set production.allow_downgrade to promote it)",
            )

    @contextmanager
    def _production_lease(
        self, artifact: ArtifactReference, token: CancellationToken
    ) -> Iterator[None]:
        prod = self.config.production
        with (
            create_span(
                "ferry.pipeline.promote",
                attributes={
                    "environment": prod.environment,
                    "image": artifact.image,
                    "strategy": prod.strategy.value,
                },
            ),
            environment_lease(
                self.config.application,
                prod.environment,
                timeout_seconds=prod.lease_timeout_seconds,
                lock_dir=self.config.lock_dir,
                cancel=token,
            ),
        ):
            yield

    def _promote_direct(self, artifact: ArtifactReference, token: CancellationToken) -> None:
        prod = self.config.production
        self._check_downgrade(self._recorded_direct_tag(prod.environment), artifact)
        self.driver.deploy(prod.environment, artifact, token)

    def _recorded_direct_tag(self, environment: str) -> str | None:
        image = self.driver.target(environment).desired_image
        return image.rpartition(":")[2] if image else None

    def _record_desired_state(
        self,
        run: PipelineRun,
        artifact: ArtifactReference,
        token: CancellationToken,
        lock: threading.Lock,
    ) -> tuple[PipelineRun, str]:
        """Commit the production tag unless it is already recorded.

        Returns the updated run (published to the store) and the revision
        the engine must converge to.
        """
        prod = self.config.production
        store = self.backends.state_store
        assert store is not None and prod.values_path is not None
        log = self._log.bind(run_id=run.run_id, environment=prod.environment)

        current = store.read_desired_state(prod.values_path)
        recorded = get_value(current, prod.tag_key)
        if recorded is not None and str(recorded) == artifact.tag:
            expected = store.current_revision()
            log.info("promotion_already_recorded", tag=artifact.tag, revision=expected)
            run = run.update(
                warnings=[
                    *run.warnings,
                    f"production already records build {artifact.tag}; commit skipped",
                ]
            )
        else:
            self._check_downgrade(recorded, artifact)
            token.raise_if_cancelled("promoting")
            expected = store.commit_desired_state(
                prod.values_path,
                patch_for_key(prod.tag_key, artifact.tag),
                f"Promote {self.config.application} to build {artifact.tag}\n\n"
                f"Image: {artifact.image}\nRun: {run.run_id}\n",
            )
            log.info("promotion_recorded", tag=artifact.tag, previous=recorded, commit=expected)
            run = run.update(commit_ref=expected)
        with lock:
            self.store.save(run)
        return run, expected

    def _converge_gitops(
        self,
        artifact: ArtifactReference,
        revision: str,
        token: CancellationToken,
    ) -> EngineStatus:
        """Sync the engine and wait until it is healthy at ``revision``.

        Raises:
            DeployRejectedError: If the engine refuses the sync.
            DeployTimeoutError: If the application is not healthy at
                ``revision`` within the readiness timeout.
        """
        prod = self.config.production
        engine = self.backends.engine
        argocd = self.config.argocd
        assert engine is not None and argocd is not None

        if not engine.sync(argocd.app_name):
            raise DeployRejectedError(
                prod.environment, f"engine refused to sync application {argocd.app_name}"
            )
        timeout = prod.readiness.timeout_seconds
        status = engine.wait_healthy(argocd.app_name, timeout, token, revision=revision)
        if not status.healthy or not status.at_revision(revision):
            raise DeployTimeoutError(prod.environment, timeout, last_status=status)
        self._log.info(
            "production_converged",
            environment=prod.environment,
            tag=artifact.tag,
            revision=status.revision,
        )
        return status

    def _production_status(
        self,
        artifact: ArtifactReference,
        engine_status: EngineStatus | None = None,
    ) -> dict[str, DeploymentStatus]:
        targets = self._target_snapshots()
        prod_env = self.config.production.environment
        if engine_status is not None:
            previous = targets[prod_env]
            targets[prod_env] = DeploymentStatus(
                environment=prod_env,
                phase=DeploymentPhase.READY,
                generation=previous.generation + 1,
                desired_image=artifact.image,
                observed_image=artifact.image,
                message=(
                    f"converged through gitops engine (health {engine_status.health_status}, "
                    f"revision {engine_status.revision})"
                ),
            )
        return targets

    # Entry points

    def run_pipeline(
        self,
        source: SourceReference,
        *,
        run_id: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> PipelineRun:
        """Run the whole pipeline for one source build.

        Stage errors never escape: the returned run is either ``converged``
        or ``failed`` with the failing stage and diagnostic recorded.

        Raises:
            ValidationError: If ``run_id`` is malformed or already active.
        """
        run_id = validate_run_id(run_id or new_run_id(self.config.application, source.build_number))
        token = cancel if cancel is not None else CancellationToken(run_id)
        token.run_id = token.run_id or run_id
        lock = self._register(run_id, token)
        log = self._log.bind(run_id=run_id, build_number=source.build_number)

        try:
            with create_span(
                "ferry.pipeline.run",
                attributes={
                    "run_id": run_id,
                    "application": self.config.application,
                    "build_number": source.build_number,
                },
            ) as span:
                span_context = span.get_span_context()
                trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else ""
                run = PipelineRun(run_id=run_id, source=source, trace_id=trace_id)
                self.store.save(run)
                log.info("run_started", source=source.path, trace_id=trace_id)

                run = self._execute(run, token, lock)
                span.set_attribute("state", run.state.value)
                if run.failed_stage is not None:
                    span.set_attribute("failed_stage", run.failed_stage.value)
        finally:
            self._unregister(run_id)

        self._notify(run)
        log.info("run_finished", state=run.state.value, failed_stage=run.failed_stage)
        return run

    def _execute(
        self,
        run: PipelineRun,
        token: CancellationToken,
        lock: threading.Lock,
    ) -> PipelineRun:
        try:
            run = self._transition(run, RunState.BUILDING, token, lock)
            self._notify_event("run_started", run)

            artifact, warnings = self._build(run.source, token)
            run = run.update(artifact=artifact, warnings=[*run.warnings, *warnings])
            self.driver.deploy(self.config.test.environment, artifact, token)
            run = self._transition(run, RunState.DEPLOYED, token, lock)

            run = self._transition(run, RunState.GATING, token, lock)
            results = self._gate(run, token)
            optional_failures = [
                f"optional gate '{r.gate_name}' {r.outcome.value}"
                for r in results
                if not r.required and not r.passed
            ]
            run = run.update(gate_results=results, warnings=[*run.warnings, *optional_failures])
            with lock:
                self.store.save(run)
            blocking = [r for r in results if r.blocking]
            if blocking:
                raise GateFailure(blocking)

            run = self._transition(run, RunState.PROMOTING, token, lock)
            engine_status: EngineStatus | None = None
            with self._production_lease(artifact, token):
                if self.config.production.strategy == PromotionStrategy.DIRECT:
                    self._promote_direct(artifact, token)
                else:
                    # run carries commit_ref before the engine is touched.
                    run, revision = self._record_desired_state(run, artifact, token, lock)
                    engine_status = self._converge_gitops(artifact, revision, token)
            with lock:
                converged = run.advance(
                    RunState.CONVERGED,
                    targets=self._production_status(artifact, engine_status),
                )
                self.store.save(converged)
            self._log.info(
                "run_state_changed",
                run_id=run.run_id,
                from_state=RunState.PROMOTING.value,
                to_state=RunState.CONVERGED.value,
            )
            return converged
        except FerryError as e:
            return self._fail(run, e)
        except Exception as e:
            self._log.exception("run_stage_error", run_id=run.run_id, stage=run.state.value)
            return self._fail(run, e)

    def _notify_event(self, event_type: str, run: PipelineRun) -> None:
        data: dict[str, Any] = {
            "run_id": run.run_id,
            "application": self.config.application,
            "state": run.state.value,
            "build_number": run.source.build_number,
            "image": run.artifact.image if run.artifact else None,
            "trace_id": run.trace_id,
        }
        if run.failure is not None:
            data["failed_stage"] = run.failure.stage.value
            data["error"] = run.failure.message
            data["retryable"] = run.failure.retryable
        if run.commit_ref:
            data["commit_ref"] = run.commit_ref
        for result in self.notifier.send(event_type, data):
            if not result.success:
                self._log.warning(
                    "webhook_delivery_failed",
                    run_id=run.run_id,
                    event_type=event_type,
                    url=result.url,
                    error=result.error,
                )

    def _notify(self, run: PipelineRun) -> None:
        self._notify_event(
            "run_converged" if run.state == RunState.CONVERGED else "run_failed",
            run,
        )


def run_pipeline(
    source: SourceReference,
    config: PipelineConfig,
    backends: PipelineBackends,
    *,
    run_id: str | None = None,
    store: RunStore | None = None,
    cancel: CancellationToken | None = None,
) -> PipelineRun:
    """Run the pipeline once with a fresh controller."""
    controller = PromotionController(config, backends, store=store)
    return controller.run_pipeline(source, run_id=run_id, cancel=cancel)


def get_run_status(run_id: str, store: RunStore) -> PipelineRun:
    """Latest snapshot of a run from a run store.

    Raises:
        RunNotFoundError: If the run is unknown.
    """
    return store.get(run_id)


__all__ = [
    "PipelineBackends",
    "PromotionController",
    "failure_diagnostic",
    "get_run_status",
    "new_run_id",
    "run_pipeline",
]
