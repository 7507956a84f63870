"""Environment leases guarding production mutation.

A lease is an in-process lock (threads of one controller) plus an
``fcntl.flock`` lock file (other processes on the host). Only the lease
holder may write the environment's desired state.
"""

from __future__ import annotations

import errno
import fcntl
import hashlib
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from ferry_core.errors import ConflictError
from ferry_core.resilience import CancellationToken

logger = structlog.get_logger(__name__)

LOCK_RETRY_INTERVAL = 0.1
"""Delay between lock file acquisition attempts, in seconds."""

_process_locks: dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def default_lock_dir() -> Path:
    """Directory for lease files when none is configured."""
    return Path(tempfile.gettempdir()) / "ferry" / "leases"


def lease_path(application: str, environment: str, lock_dir: str | Path | None = None) -> Path:
    """Lock file path for one application environment."""
    directory = Path(lock_dir) if lock_dir is not None else default_lock_dir()
    directory.mkdir(parents=True, exist_ok=True)
    key = hashlib.sha256(f"{application}/{environment}".encode()).hexdigest()[:16]
    return directory / f"{application}-{environment}-{key}.lock"


def _process_lock(path: Path) -> threading.Lock:
    with _process_locks_guard:
        return _process_locks.setdefault(str(path), threading.Lock())


@contextmanager
def environment_lease(
    application: str,
    environment: str,
    *,
    timeout_seconds: float = 30.0,
    lock_dir: str | Path | None = None,
    cancel: CancellationToken | None = None,
) -> Iterator[Path]:
    """Hold the lease on ``application``/``environment`` for the block.

    Yields:
        The lease file path.

    Raises:
        ConflictError: If the lease is not acquired within ``timeout_seconds``.
        RunCancelledError: If ``cancel`` fires while waiting.
    """
    cancel = cancel or CancellationToken()
    resource = f"environment {application}/{environment}"
    path = lease_path(application, environment, lock_dir)
    deadline = time.monotonic() + timeout_seconds

    local = _process_lock(path)
    if not local.acquire(timeout=max(timeout_seconds, 0.0)):
        raise ConflictError(resource, f"lease held by another run (waited {timeout_seconds}s)")

    lock_fd: int | None = None
    acquired = False
    try:
        path.touch(exist_ok=True)
        lock_fd = os.open(str(path), os.O_RDWR)
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                acquired = True
                break
            except OSError as e:
                if e.errno not in (errno.EAGAIN, errno.EWOULDBLOCK):
                    raise
                if time.monotonic() >= deadline:
                    raise ConflictError(
                        resource,
                        f"lease held by another process (waited {timeout_seconds}s)",
                    ) from e
                if cancel.wait(LOCK_RETRY_INTERVAL):
                    cancel.raise_if_cancelled("lease")

        os.ftruncate(lock_fd, 0)
        os.write(lock_fd, f"{os.getpid()}\n".encode())
        logger.info("environment_lease_acquired", application=application, environment=environment)
        yield path
    finally:
        if lock_fd is not None:
            if acquired:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
                logger.info(
                    "environment_lease_released",
                    application=application,
                    environment=environment,
                )
            os.close(lock_fd)
        local.release()


__all__ = ["LOCK_RETRY_INTERVAL", "default_lock_dir", "environment_lease", "lease_path"]
