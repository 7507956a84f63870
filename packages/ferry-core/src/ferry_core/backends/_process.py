"""Subprocess helper shared by the CLI-driven backends."""

from __future__ import annotations

import subprocess
import time
from collections.abc import Sequence

import structlog

from ferry_core.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

OUTPUT_TAIL_CHARS = 4000
"""How much tool output is kept in diagnostics."""


def tail(text: str | None, limit: int = OUTPUT_TAIL_CHARS) -> str:
    """Last ``limit`` characters of ``text`` (tool output is noisy at the top)."""
    if not text:
        return ""
    return text[-limit:]


def run_tool(
    cmd: Sequence[str],
    *,
    timeout: float,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    input_text: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run an external tool and capture its output.

    Never raises on a non-zero exit code; callers map return codes to their
    own errors.

    Raises:
        subprocess.TimeoutExpired: If the tool runs longer than ``timeout``.
        FileNotFoundError: If the executable is not installed.
    """
    start = time.monotonic()
    logger.debug("tool_started", tool=cmd[0], args=list(cmd[1:]), cwd=cwd)
    result = subprocess.run(
        list(cmd),
        cwd=cwd,
        env=env,
        input=input_text,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    duration_ms = int((time.monotonic() - start) * 1000)
    if result.returncode == 0:
        logger.debug("tool_completed", tool=cmd[0], duration_ms=duration_ms)
    else:
        logger.warning(
            "tool_failed",
            tool=cmd[0],
            exit_code=result.returncode,
            duration_ms=duration_ms,
            stderr=sanitize_error_message(tail(result.stderr, 500)),
        )
    return result


__all__ = ["OUTPUT_TAIL_CHARS", "run_tool", "tail"]
