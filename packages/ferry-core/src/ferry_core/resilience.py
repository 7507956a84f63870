"""Cancellable waiting, polling and backoff.

Every suspension point of a pipeline run (deployment readiness, health
checks, quality gate waits, GitOps convergence) goes through this module so
that an operator can abort a run mid-wait.

Key Components:
    CancellationToken: Per-run cancellation flag with interruptible waits
    BackoffPolicy: Fixed or exponential delays for retry budgets
    poll_until: Poll a status callable until a predicate holds, a timeout elapses or
        the run is cancelled

Example:
    >>> token = CancellationToken(run_id="run-1")
    >>> status = poll_until(
    ...     lambda: backend.get_status(target),
    ...     lambda s: s.ready_replicas == s.desired_replicas,
    ...     timeout=300,
    ...     interval=5,
    ...     cancel=token,
    ...     description="test rollout",
    ... )
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from typing import Any, Literal, TypeVar

import structlog

from ferry_core.errors import RunCancelledError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cancellation flag shared by every stage of one run.

    ``wait()`` replaces ``time.sleep()``: it returns early (True) as soon as
    cancellation is requested.

    Attributes:
        run_id: Run the token belongs to (used in error messages).
    """

    def __init__(self, run_id: str = "") -> None:
        self.run_id = run_id
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        """Request cancellation. Idempotent; the first reason wins."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            logger.info("cancellation_requested", run_id=self.run_id, reason=reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def raise_if_cancelled(self, stage: str) -> None:
        """Raise RunCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise RunCancelledError(self.run_id, stage)


class BackoffPolicy:
    """Delay schedule for a retry budget.

    ``fixed`` always waits ``initial_seconds``; ``exponential`` waits
    ``initial_seconds * multiplier ** attempt`` capped at ``max_seconds``,
    optionally with +/-25% jitter.
    """

    def __init__(
        self,
        initial_seconds: float,
        *,
        strategy: Literal["fixed", "exponential"] = "fixed",
        multiplier: float = 2.0,
        max_seconds: float = 60.0,
        jitter: bool = False,
    ) -> None:
        if initial_seconds < 0:
            raise ValueError("initial_seconds must be >= 0")
        self.initial_seconds = initial_seconds
        self.strategy = strategy
        self.multiplier = multiplier
        self.max_seconds = max_seconds
        self.jitter = jitter

    def delay(self, attempt: int) -> float:
        """Delay after the given (0-indexed) failed attempt, in seconds."""
        if self.strategy == "fixed":
            base = self.initial_seconds
        else:
            base = min(self.initial_seconds * (self.multiplier**attempt), self.max_seconds)
        if self.jitter and base > 0:
            base += random.uniform(-base * 0.25, base * 0.25)
        return max(base, 0.0)


class PollingTimeoutError(TimeoutError):
    """Raised by poll_until when the predicate never held.

    Attributes:
        description: What was being waited for.
        timeout: How long we waited.
        last_value: Last fetched value (None if every fetch raised).
        last_error: Last fetch exception, if any.
    """

    def __init__(
        self,
        description: str,
        timeout: float,
        last_value: Any = None,
        last_error: Exception | None = None,
    ) -> None:
        self.description = description
        self.timeout = timeout
        self.last_value = last_value
        self.last_error = last_error
        message = f"Timeout waiting for {description} after {timeout:.1f}s"
        if last_error is not None:
            message += f" (last error: {last_error})"
        super().__init__(message)


def poll_until(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    *,
    timeout: float,
    interval: float,
    cancel: CancellationToken,
    description: str,
    transient: tuple[type[Exception], ...] = (),
    on_poll: Callable[[T], None] | None = None,
) -> T:
    """Poll ``fetch`` until ``done(value)`` holds.

    Args:
        fetch: Produces the current value (e.g. a backend status call).
        done: Predicate on the fetched value.
        timeout: Wall-clock bound in seconds.
        interval: Delay between fetches.
        cancel: Run cancellation token; waits are interrupted by it.
        description: Used in logs and timeout messages.
        transient: Fetch exceptions to treat as "not done yet".
        on_poll: Callback receiving every fetched value.

    Returns:
        The first fetched value satisfying ``done``.

    Raises:
        PollingTimeoutError: If the timeout elapses first.
        RunCancelledError: If the run is cancelled while waiting.
    """
    deadline = time.monotonic() + timeout
    last_value: T | None = None
    last_error: Exception | None = None
    polls = 0

    while True:
        cancel.raise_if_cancelled(description)
        polls += 1
        try:
            value = fetch()
        except transient as e:
            last_error = e
            logger.debug("poll_fetch_failed", description=description, poll=polls, error=str(e))
        else:
            last_value = value
            if on_poll is not None:
                on_poll(value)
            if done(value):
                logger.debug("poll_condition_met", description=description, polls=polls)
                return value

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(
                "poll_timeout",
                description=description,
                timeout_seconds=timeout,
                polls=polls,
            )
            raise PollingTimeoutError(description, timeout, last_value, last_error)
        if cancel.wait(min(interval, remaining)):
            raise RunCancelledError(cancel.run_id, description)


__all__ = ["BackoffPolicy", "CancellationToken", "PollingTimeoutError", "poll_until"]
