"""Git-backed desired-state store.

The production desired state is a Helm values file in a deployment
configuration repository. Every mutation is one commit: pull, patch the
file (atomic replace), commit, push. A push rejected because another writer
got there first raises ConflictError and the local commit is rolled back, so
the clone always matches the remote after a failed write.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from pathlib import Path
from typing import Any

import structlog

from ferry_core.backends._process import run_tool, tail
from ferry_core.errors import ConflictError, StateStoreError, ValidationError
from ferry_core.helm.values import dump_values, load_values, merge_values
from ferry_core.schemas.config import GitOpsConfig
from ferry_core.telemetry.tracing import create_span, traced

logger = structlog.get_logger(__name__)

_REJECTED_PUSH_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "stale info")


def is_rejected_push(stderr: str) -> bool:
    """Check whether git push output describes a lost race with another writer."""
    return any(marker in stderr for marker in _REJECTED_PUSH_MARKERS)


def write_atomic(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` without exposing a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class GitValuesStore:
    """DesiredStateStore over a local git clone.

    Attributes:
        config: Repository location, remote, branch and author.
    """

    def __init__(self, config: GitOpsConfig) -> None:
        self.config = config
        self.repo = Path(config.repo_path)
        self._log = logger.bind(repo=str(self.repo), branch=config.branch)

    @property
    def _upstream(self) -> str:
        return f"{self.config.remote}/{self.config.branch}"

    def _git(self, operation: str, *args: str) -> subprocess.CompletedProcess[str]:
        try:
            return run_tool(
                ["git", *args],
                cwd=str(self.repo),
                timeout=self.config.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            raise StateStoreError(
                operation, f"git {args[0]} timed out after {self.config.timeout_seconds}s"
            ) from e
        except FileNotFoundError as e:
            raise StateStoreError(operation, "git is not installed or repo_path is missing") from e

    def _git_checked(self, operation: str, *args: str) -> str:
        result = self._git(operation, *args)
        if result.returncode != 0:
            raise StateStoreError(operation, tail(result.stderr, 1000).strip())
        return result.stdout.strip()

    def _resolve(self, path: str) -> Path:
        resolved = (self.repo / path).resolve()
        if not resolved.is_relative_to(self.repo.resolve()):
            raise ValidationError("path", f"'{path}' is outside the desired-state repository")
        return resolved

    def _sync(self) -> None:
        self._git_checked("pull", "pull", "--ff-only", self.config.remote, self.config.branch)

    def _rollback(self) -> None:
        self._git_checked("rollback", "reset", "--hard", self._upstream)

    @traced(name="ferry.state_store.revision")
    def current_revision(self) -> str:
        """HEAD of the local clone, the revision last read or committed.

        Raises:
            StateStoreError: If git cannot resolve HEAD.
        """
        return self._git_checked("rev-parse", "rev-parse", "HEAD")

    def read_desired_state(self, path: str) -> dict[str, Any]:
        """Pull and read the values document (missing file reads as empty).

        Raises:
            StateStoreError: If the pull fails or the file is not a mapping.
        """
        file_path = self._resolve(path)
        self._sync()
        if not file_path.exists():
            return {}
        try:
            return load_values(file_path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise StateStoreError("read", f"{path}: {e}") from e

    def commit_desired_state(self, path: str, patch: dict[str, Any], message: str) -> str:
        """Apply ``patch`` to the values file and push it as one commit.

        Re-applying a patch already present is a no-op that returns the
        current HEAD.

        Returns:
            The commit sha holding the desired state.

        Raises:
            ConflictError: If the push was rejected by a concurrent writer.
            StateStoreError: If any other git operation fails.
        """
        file_path = self._resolve(path)
        with create_span(
            "ferry.state_store.commit",
            attributes={"path": path, "branch": self.config.branch},
        ) as span:
            self._sync()
            current = (
                load_values(file_path.read_text(encoding="utf-8")) if file_path.exists() else {}
            )
            updated = merge_values(current, patch)
            if updated == current and file_path.exists():
                head = self.current_revision()
                self._log.info("desired_state_unchanged", path=path, commit=head)
                span.set_attribute("commit", head)
                return head

            write_atomic(file_path, dump_values(updated))
            relative = str(file_path.relative_to(self.repo.resolve()))
            try:
                self._git_checked("add", "add", "--", relative)
                self._git_checked(
                    "commit",
                    "-c",
                    f"user.name={self.config.author_name}",
                    "-c",
                    f"user.email={self.config.author_email}",
                    "commit",
                    "-m",
                    message,
                )
            except StateStoreError:
                self._rollback()
                raise
            commit = self._git_checked("rev-parse", "rev-parse", "HEAD")

            push = self._git("push", "push", self.config.remote, f"HEAD:{self.config.branch}")
            if push.returncode != 0:
                self._rollback()
                if is_rejected_push(push.stderr):
                    self._log.warning("desired_state_push_rejected", path=path, commit=commit)
                    raise ConflictError(path, "push rejected: remote has newer commits")
                raise StateStoreError("push", tail(push.stderr, 1000).strip())

            span.set_attribute("commit", commit)
            self._log.info("desired_state_committed", path=path, commit=commit)
            return commit


__all__ = ["GitValuesStore", "is_rejected_push", "write_atomic"]
