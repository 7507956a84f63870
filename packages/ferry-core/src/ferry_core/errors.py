"""Exception hierarchy for ferry-core.

All exceptions inherit from FerryError. Each exception carries the CLI exit
code used when it escapes to the command line and a ``retryable`` flag that
tells callers whether re-issuing the operation (after a fresh read, or a
re-poll) is safe.

Exception Hierarchy:
    FerryError (base)
    ├── ValidationError          # Bad input or configuration (fatal)
    ├── BuildError               # Build, unit test or image push failed (fatal)
    ├── GateFailure              # A required verification gate did not pass (fatal)
    ├── DeployTimeoutError       # Target did not converge in time (retryable)
    ├── DeployRejectedError      # Cluster backend refused the deployment (fatal)
    ├── ConflictError            # Desired-state write conflict or lease held (retryable)
    ├── StateStoreError          # Desired-state store failed for another reason (fatal)
    ├── InvalidTransitionError   # Illegal run state transition
    ├── RunCancelledError        # Run cancelled by an operator
    └── RunNotFoundError         # Unknown run id

Example:
    >>> from ferry_core.errors import DeployTimeoutError
    >>> raise DeployTimeoutError("test", 300.0)
    Traceback (most recent call last):
        ...
    DeployTimeoutError: Deployment to 'test' did not converge within 300.0s
"""

from __future__ import annotations

from typing import Any


class FerryError(Exception):
    """Base exception for all ferry errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
        retryable: Whether the failed operation is safe to retry.
    """

    exit_code: int = 1
    retryable: bool = False


class ValidationError(FerryError):
    """Raised when input or configuration is invalid.

    Attributes:
        field: Name of the offending field.
        reason: Why the value was rejected.
    """

    exit_code: int = 2

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class BuildError(FerryError):
    """Raised when building, unit testing or pushing an artifact fails.

    Attributes:
        step: Build step that failed (build, unit_tests, push).
        reason: Description of the failure.
        output: Captured tool output, if any.
    """

    def __init__(self, step: str, reason: str, output: str | None = None) -> None:
        self.step = step
        self.reason = reason
        self.output = output
        super().__init__(f"Build step '{step}' failed: {reason}")


class GateFailure(FerryError):
    """Raised when one or more required gates fail or time out.

    Attributes:
        results: GateResult objects of the failing gates.
    """

    def __init__(self, results: list[Any]) -> None:
        self.results = results
        summary = ", ".join(f"{r.gate_name}={r.outcome.value}" for r in results)
        super().__init__(f"Required gates did not pass: {summary}")


class DeployTimeoutError(FerryError):
    """Raised when a deployment does not converge within its timeout.

    The desired state has been applied; callers may re-poll with
    DeploymentDriver.await_convergence() or re-issue deploy().

    Attributes:
        environment: Environment that did not converge.
        timeout_seconds: How long we waited.
        last_status: Last observed DeploymentStatus (if any).
    """

    retryable = True

    def __init__(
        self,
        environment: str,
        timeout_seconds: float,
        last_status: Any | None = None,
    ) -> None:
        self.environment = environment
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status
        super().__init__(
            f"Deployment to '{environment}' did not converge within {timeout_seconds}s"
        )


class DeployRejectedError(FerryError):
    """Raised when the cluster backend refuses a deployment.

    Typical causes are a malformed manifest, an invalid chart or a
    failed admission check. Retrying the same request will not help.

    Attributes:
        environment: Target environment.
        reason: Backend error output.
    """

    def __init__(self, environment: str, reason: str) -> None:
        self.environment = environment
        self.reason = reason
        super().__init__(f"Deployment to '{environment}' rejected: {reason}")


class ConflictError(FerryError):
    """Raised when desired state cannot be written without overwriting another writer.

    Covers rejected (non fast-forward) pushes to the desired-state store and
    environment leases held by another run. Safe to retry after a fresh read.

    Attributes:
        resource: The contended resource (file path or environment).
        reason: Description of the conflict.
    """

    retryable = True

    def __init__(self, resource: str, reason: str) -> None:
        self.resource = resource
        self.reason = reason
        super().__init__(f"Conflict on {resource}: {reason}")


class StateStoreError(FerryError):
    """Raised when the desired-state store fails for a non-conflict reason.

    Attributes:
        operation: Store operation that failed (read, commit, push).
        reason: Description of the failure.
    """

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Desired-state store operation '{operation}' failed: {reason}")


class InvalidTransitionError(FerryError):
    """Raised when a pipeline run is asked to make an illegal state transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid run transition: {from_state} -> {to_state}")


class RunCancelledError(FerryError):
    """Raised inside a run when cancellation has been requested.

    Attributes:
        run_id: The cancelled run.
        stage: Stage that observed the cancellation.
    """

    exit_code: int = 130

    def __init__(self, run_id: str, stage: str) -> None:
        self.run_id = run_id
        self.stage = stage
        super().__init__(f"Run {run_id} cancelled during {stage}")


class RunNotFoundError(FerryError):
    """Raised when a run id is not known to the run store."""

    exit_code: int = 3

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


__all__ = [
    "BuildError",
    "ConflictError",
    "DeployRejectedError",
    "DeployTimeoutError",
    "FerryError",
    "GateFailure",
    "InvalidTransitionError",
    "RunCancelledError",
    "RunNotFoundError",
    "StateStoreError",
    "ValidationError",
]
