"""Run record store.

Keeps the latest PipelineRun of every run in memory and, when a directory is
configured, archives it as ``<run_id>.json`` so that ``ferry status`` can
read runs from another process.
"""

from __future__ import annotations

import re
import threading
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from ferry_core.backends.git_store import write_atomic
from ferry_core.errors import RunNotFoundError, StateStoreError, ValidationError
from ferry_core.schemas.pipeline import PipelineRun

logger = structlog.get_logger(__name__)

RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def validate_run_id(run_id: str) -> str:
    """Reject run ids that cannot be used as file names.

    Raises:
        ValidationError: If the run id is malformed.
    """
    if not RUN_ID_PATTERN.match(run_id):
        raise ValidationError("run_id", f"'{run_id}' must match {RUN_ID_PATTERN.pattern}")
    return run_id


class RunStore:
    """Thread-safe store of PipelineRun snapshots.

    Args:
        directory: Archive directory; None keeps runs in memory only.
    """

    def __init__(self, directory: str | Path | None = None) -> None:
        self.directory = Path(directory) if directory is not None else None
        self._runs: dict[str, PipelineRun] = {}
        self._lock = threading.Lock()

    def _path(self, run_id: str) -> Path:
        if self.directory is None:
            raise StateStoreError("archive run", "no run store directory configured")
        return self.directory / f"{validate_run_id(run_id)}.json"

    def save(self, run: PipelineRun) -> None:
        """Record the latest snapshot of a run (and archive it)."""
        with self._lock:
            self._runs[run.run_id] = run
            if self.directory is not None:
                try:
                    write_atomic(self._path(run.run_id), run.model_dump_json(indent=2))
                except OSError as e:
                    raise StateStoreError("save run", f"{run.run_id}: {e}") from e
        logger.debug("run_saved", run_id=run.run_id, state=run.state.value)

    def get(self, run_id: str) -> PipelineRun:
        """Latest snapshot of a run.

        Raises:
            RunNotFoundError: If the run is unknown.
            StateStoreError: If the archived record cannot be read.
        """
        with self._lock:
            run = self._runs.get(run_id)
        if run is not None:
            return run
        if self.directory is None or not RUN_ID_PATTERN.match(run_id):
            raise RunNotFoundError(run_id)
        path = self._path(run_id)
        if not path.exists():
            raise RunNotFoundError(run_id)
        return self._load(path)

    def _load(self, path: Path) -> PipelineRun:
        try:
            return PipelineRun.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as e:
            raise StateStoreError("read run", f"{path.name}: {e}") from e

    def list_runs(self) -> list[PipelineRun]:
        """All known runs, oldest first."""
        with self._lock:
            runs = dict(self._runs)
        if self.directory is not None and self.directory.is_dir():
            for path in sorted(self.directory.glob("*.json")):
                run_id = path.stem
                if run_id not in runs:
                    runs[run_id] = self._load(path)
        return sorted(runs.values(), key=lambda r: r.created_at)


__all__ = ["RUN_ID_PATTERN", "RunStore", "validate_run_id"]
