"""Deployment driver: idempotent deploys with readiness polling.

The driver owns one DeploymentTarget per environment. Writers (``deploy``,
``await_convergence``) serialize on a per-environment lock; every state
change is published as a new immutable target snapshot, so
``current_status`` never takes a lock and never sees a torn update.

Example:
    >>> driver = DeploymentDriver(HelmClusterBackend("helm/shop-api"))
    >>> driver.register_target(config.test.to_target())
    >>> status = driver.deploy("test", artifact)
    >>> status.phase
    <DeploymentPhase.READY: 'ready'>
"""

from __future__ import annotations

import subprocess
import threading

import structlog

from ferry_core.backends.protocols import ClusterBackend
from ferry_core.errors import (
    DeployRejectedError,
    DeployTimeoutError,
    InvalidTransitionError,
    ValidationError,
)
from ferry_core.resilience import CancellationToken, PollingTimeoutError, poll_until
from ferry_core.schemas.artifact import ArtifactReference
from ferry_core.schemas.deployment import (
    DeploymentPhase,
    DeploymentStatus,
    DeploymentTarget,
    ObservedState,
)
from ferry_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

TRANSIENT_STATUS_ERRORS: tuple[type[Exception], ...] = (
    RuntimeError,
    OSError,
    ValueError,
    subprocess.SubprocessError,
)
"""Status read errors that are retried until the readiness timeout."""


class DeploymentDriver:
    """Applies desired images to environments and waits for readiness.

    Attributes:
        backend: Cluster backend used to apply and observe deployments.
    """

    def __init__(self, backend: ClusterBackend) -> None:
        self.backend = backend
        self._targets: dict[str, DeploymentTarget] = {}
        self._env_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def register_target(self, target: DeploymentTarget) -> None:
        """Add an environment. Re-registering an existing one keeps its status."""
        with self._registry_lock:
            if target.environment in self._targets:
                return
            self._targets[target.environment] = target
            self._env_locks[target.environment] = threading.Lock()
        logger.debug(
            "deployment_target_registered",
            environment=target.environment,
            namespace=target.namespace,
            release=target.release,
        )

    def target(self, environment: str) -> DeploymentTarget:
        """Latest published snapshot of an environment's target.

        Raises:
            ValidationError: If the environment is not registered.
        """
        try:
            return self._targets[environment]
        except KeyError:
            raise ValidationError(
                "environment", f"'{environment}' is not a registered deployment target"
            ) from None

    def current_status(self, environment: str) -> DeploymentStatus:
        """Latest published status; lock-free."""
        return self.target(environment).current_status()

    def _publish(self, target: DeploymentTarget, status: DeploymentStatus) -> DeploymentTarget:
        previous = self._targets[target.environment].current_status()
        if not previous.can_advance_to(status):
            raise InvalidTransitionError(
                f"{previous.phase.value}@{previous.generation}",
                f"{status.phase.value}@{status.generation}",
            )
        published = target.model_copy(update={"status": status})
        self._targets[target.environment] = published
        return published

    @staticmethod
    def _status_from(
        target: DeploymentTarget,
        phase: DeploymentPhase,
        observed: ObservedState | None = None,
        message: str | None = None,
    ) -> DeploymentStatus:
        current = target.current_status()
        return DeploymentStatus(
            environment=target.environment,
            phase=phase,
            generation=current.generation,
            desired_image=target.desired_image,
            observed_image=observed.image if observed else current.observed_image,
            ready_replicas=observed.ready_replicas if observed else current.ready_replicas,
            desired_replicas=observed.desired_replicas if observed else current.desired_replicas,
            message=message if message is not None else (observed.message if observed else None),
        )

    def deploy(
        self,
        environment: str,
        artifact: ArtifactReference,
        cancel: CancellationToken | None = None,
    ) -> DeploymentStatus:
        """Make ``environment`` run ``artifact`` and wait until it is ready.

        Idempotent: if the target already runs the artifact and the backend
        confirms it is ready, nothing is applied and the current status is
        returned.

        Raises:
            DeployRejectedError: If the backend refuses the deployment
                (status left ``failed``).
            DeployTimeoutError: If readiness is not reached in time (status
                left ``converging``; retry with await_convergence()).
            RunCancelledError: If cancelled while waiting.
        """
        cancel = cancel or CancellationToken()
        self.target(environment)
        log = logger.bind(environment=environment, image=artifact.image)

        with self._env_locks[environment]:
            target = self._targets[environment]
            status = target.current_status()

            if target.desired_image == artifact.image and status.is_ready:
                observed = self.backend.get_status(target)
                if observed.is_ready_for(artifact.image, target.readiness.min_healthy_fraction):
                    log.info("deploy_noop", generation=status.generation)
                    return status
                log.info("deploy_drift_detected", observed_image=observed.image)

            with create_span(
                "ferry.deploy",
                attributes={
                    "environment": environment,
                    "image": artifact.image,
                    "generation": status.generation + 1,
                },
            ):
                target = target.model_copy(update={"desired_image": artifact.image})
                converging = DeploymentStatus(
                    environment=environment,
                    phase=DeploymentPhase.CONVERGING,
                    generation=status.generation + 1,
                    desired_image=artifact.image,
                    observed_image=status.observed_image,
                    ready_replicas=status.ready_replicas,
                    desired_replicas=status.desired_replicas,
                )
                target = self._publish(target, converging)
                log.info("deploy_started", generation=converging.generation)

                try:
                    self.backend.apply_deployment(target)
                except DeployRejectedError as e:
                    self._publish(
                        target,
                        self._status_from(target, DeploymentPhase.FAILED, message=e.reason),
                    )
                    log.error("deploy_rejected", reason=e.reason)
                    raise

                return self._await_ready(target, cancel)

    def await_convergence(
        self,
        environment: str,
        cancel: CancellationToken | None = None,
    ) -> DeploymentStatus:
        """Wait for an already-applied deployment without re-applying it.

        Raises:
            ValidationError: If nothing was ever deployed to ``environment``.
            DeployTimeoutError: If readiness is not reached in time.
        """
        cancel = cancel or CancellationToken()
        self.target(environment)
        with self._env_locks[environment]:
            target = self._targets[environment]
            status = target.current_status()
            if target.desired_image is None:
                raise ValidationError("environment", f"nothing deployed to '{environment}'")
            if status.phase == DeploymentPhase.READY:
                return status
            if status.phase == DeploymentPhase.FAILED:
                raise DeployRejectedError(environment, status.message or "deployment failed")
            return self._await_ready(target, cancel)

    def _await_ready(self, target: DeploymentTarget, cancel: CancellationToken) -> DeploymentStatus:
        env = target.environment
        desired = target.desired_image or ""
        policy = target.readiness
        last_observed: ObservedState | None = None

        def record(observed: ObservedState) -> None:
            nonlocal last_observed
            if observed == last_observed:
                return
            last_observed = observed
            current = self._targets[env]
            self._publish(
                current,
                self._status_from(current, DeploymentPhase.CONVERGING, observed),
            )

        try:
            observed = poll_until(
                lambda: self.backend.get_status(target),
                lambda o: o.is_ready_for(desired, policy.min_healthy_fraction),
                timeout=policy.timeout_seconds,
                interval=policy.poll_interval_seconds,
                cancel=cancel,
                description=f"rollout of {desired} to {env}",
                transient=TRANSIENT_STATUS_ERRORS,
                on_poll=record,
            )
        except PollingTimeoutError as e:
            last_status = self.current_status(env)
            logger.warning(
                "deploy_timeout",
                environment=env,
                image=desired,
                timeout_seconds=policy.timeout_seconds,
                ready_replicas=last_status.ready_replicas,
                desired_replicas=last_status.desired_replicas,
            )
            raise DeployTimeoutError(env, policy.timeout_seconds, last_status=last_status) from e

        current = self._targets[env]
        published = self._publish(
            current,
            self._status_from(current, DeploymentPhase.READY, observed),
        )
        status = published.current_status()
        logger.info(
            "deploy_ready",
            environment=env,
            image=desired,
            generation=status.generation,
            ready_replicas=status.ready_replicas,
        )
        return status


__all__ = ["DeploymentDriver", "TRANSIENT_STATUS_ERRORS"]
