"""Unit tests for environment leases."""

from __future__ import annotations

import fcntl
import os
import threading
from pathlib import Path

import pytest

from ferry_core.errors import ConflictError, RunCancelledError
from ferry_core.promotion.locks import environment_lease, lease_path
from ferry_core.resilience import CancellationToken


class TestEnvironmentLease:
    """Tests for environment_lease()."""

    @pytest.mark.requirement("FR-500")
    def test_lease_writes_holder_pid(self, tmp_path: Path) -> None:
        """The lease file records the holding process."""
        with environment_lease("shop-api", "prod", lock_dir=tmp_path) as path:
            assert path.read_text().strip() == str(os.getpid())

    @pytest.mark.requirement("FR-500")
    def test_lease_is_reacquirable_after_release(self, tmp_path: Path) -> None:
        """Leaving the block releases the lease."""
        with environment_lease("shop-api", "prod", lock_dir=tmp_path):
            pass
        with environment_lease("shop-api", "prod", lock_dir=tmp_path, timeout_seconds=0):
            pass

    @pytest.mark.requirement("FR-501")
    def test_second_thread_times_out(self, tmp_path: Path) -> None:
        """A concurrent holder makes the second acquisition fail with ConflictError."""
        held = threading.Event()
        release = threading.Event()

        def holder() -> None:
            with environment_lease("shop-api", "prod", lock_dir=tmp_path):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(ConflictError) as exc_info:
                with environment_lease("shop-api", "prod", lock_dir=tmp_path, timeout_seconds=0.1):
                    pass
        finally:
            release.set()
            thread.join()

        assert exc_info.value.retryable

    @pytest.mark.requirement("FR-501")
    def test_file_lock_held_elsewhere_times_out(self, tmp_path: Path) -> None:
        """A flock held through another descriptor blocks the lease."""
        path = lease_path("shop-api", "prod", tmp_path)
        path.touch()
        with open(path, "r+") as other:
            fcntl.flock(other.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            with pytest.raises(ConflictError):
                with environment_lease("shop-api", "prod", lock_dir=tmp_path, timeout_seconds=0.2):
                    pass

    @pytest.mark.requirement("FR-502")
    def test_cancel_while_waiting(self, tmp_path: Path) -> None:
        """Cancellation interrupts waiting for a held file lock."""
        path = lease_path("shop-api", "prod", tmp_path)
        path.touch()
        token = CancellationToken("run-1")
        threading.Timer(0.05, token.cancel).start()
        with open(path, "r+") as other:
            fcntl.flock(other.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            with pytest.raises(RunCancelledError):
                with environment_lease(
                    "shop-api", "prod", lock_dir=tmp_path, timeout_seconds=10, cancel=token
                ):
                    pass

    @pytest.mark.requirement("FR-503")
    def test_environments_are_independent(self, tmp_path: Path) -> None:
        """Leases on different environments do not contend."""
        with environment_lease("shop-api", "prod", lock_dir=tmp_path):
            with environment_lease("shop-api", "test", lock_dir=tmp_path, timeout_seconds=0):
                pass
