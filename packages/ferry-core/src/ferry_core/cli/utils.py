"""CLI utility functions, exit codes and output helpers.

Errors and progress go to stderr; command results go to stdout so that
``--output json`` can be piped.

Example:
    from ferry_core.cli.utils import error_exit, ExitCode

    if not config_path.exists():
        error_exit("Config not found", exit_code=ExitCode.USAGE_ERROR, path=str(config_path))
"""

from __future__ import annotations

import os
import sys
from enum import IntEnum
from typing import TYPE_CHECKING

import click
import yaml

from ferry_core.errors import ValidationError
from ferry_core.schemas.pipeline import PipelineRun, RunState

if TYPE_CHECKING:
    from typing import NoReturn


class ExitCode(IntEnum):
    """Exit codes of the ferry CLI.

    A finished run maps to exactly one code: converged, failed in a given
    stage, or cancelled. A run that has not finished yet is IN_PROGRESS.
    """

    SUCCESS = 0
    """Run converged (or query succeeded)."""

    GENERAL_ERROR = 1
    """Unexpected error."""

    USAGE_ERROR = 2
    """Invalid arguments or configuration."""

    RUN_NOT_FOUND = 3
    """Unknown run id."""

    IN_PROGRESS = 4
    """Run has not finished yet (status of a pending or running run)."""

    FAILED_PENDING = 10
    FAILED_BUILDING = 11
    FAILED_DEPLOYED = 12
    FAILED_GATING = 13
    FAILED_PROMOTING = 14

    CANCELLED = 130
    """Run cancelled (SIGINT/SIGTERM)."""


_FAILED_STAGE_CODES = {
    RunState.PENDING: ExitCode.FAILED_PENDING,
    RunState.BUILDING: ExitCode.FAILED_BUILDING,
    RunState.DEPLOYED: ExitCode.FAILED_DEPLOYED,
    RunState.GATING: ExitCode.FAILED_GATING,
    RunState.PROMOTING: ExitCode.FAILED_PROMOTING,
}


def exit_code_for_run(run: PipelineRun) -> ExitCode:
    """Exit code reported for a run in its current state."""
    if run.state == RunState.CONVERGED:
        return ExitCode.SUCCESS
    if run.state != RunState.FAILED:
        return ExitCode.IN_PROGRESS
    if run.cancelled:
        return ExitCode.CANCELLED
    if run.failed_stage is None:
        return ExitCode.GENERAL_ERROR
    return _FAILED_STAGE_CODES[run.failed_stage]


def resolve_secret(env_name: str | None) -> str | None:
    """Read a credential from the environment variable named in the config.

    Raises:
        ValidationError: If the variable is named but not set.
    """
    if not env_name:
        return None
    value = os.environ.get(env_name)
    if not value:
        raise ValidationError("credentials", f"environment variable {env_name} is not set")
    return value


def _with_context(prefix: str, message: str, context: dict[str, str | int | bool | None]) -> str:
    context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
    if context_str:
        return f"{prefix}: {message} ({context_str})"
    return f"{prefix}: {message}"


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr."""
    click.echo(_with_context("Error", message, context), err=True)


def error_exit(
    message: str,
    exit_code: ExitCode | int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code."""
    error(message, **context)
    sys.exit(int(exit_code))


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    click.echo(_with_context("Warning", message, context), err=True)


def success(message: str) -> None:
    """Print a result to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print progress information to stderr."""
    click.echo(message, err=True)


def format_run(run: PipelineRun, output_format: str) -> str:
    """Render a run as table, json or yaml."""
    if output_format == "json":
        return run.model_dump_json(indent=2)
    if output_format == "yaml":
        return yaml.safe_dump(run.model_dump(mode="json"), default_flow_style=False, sort_keys=False)

    state = run.state.value
    if run.state == RunState.FAILED:
        state = f"failed({run.failed_stage.value if run.failed_stage else '?'})"
        if run.cancelled:
            state += " [cancelled]"
    lines = [
        "",
        f"Run:      {run.run_id}",
        f"State:    {state}",
        f"Build:    {run.source.build_number}",
        f"Image:    {run.artifact.image if run.artifact else '-'}",
    ]
    if run.commit_ref:
        lines.append(f"Commit:   {run.commit_ref}")
    if run.trace_id:
        lines.append(f"Trace:    {run.trace_id}")

    if run.targets:
        lines.append("")
        lines.append("Environments:")
        for env, status in sorted(run.targets.items()):
            image = status.observed_image or status.desired_image or "-"
            lines.append(
                f"  {env}: {status.phase.value} "
                f"(generation {status.generation}, {status.ready_replicas}/"
                f"{status.desired_replicas} ready, {image})"
            )

    if run.gate_results:
        lines.append("")
        lines.append("Gates:")
        for result in run.gate_results:
            icon = "✓" if result.passed else "✗"
            optional = "" if result.required else " (optional)"
            lines.append(
                f"  {icon} {result.gate_name}{optional}: {result.outcome.value} "
                f"[{result.attempts} attempts, {result.duration_ms}ms]"
            )

    if run.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {w}" for w in run.warnings)

    if run.failure is not None:
        lines.append("")
        lines.append(f"Failure:  {run.failure.error_type}: {run.failure.message}")
        lines.append(f"Retry:    {'safe' if run.failure.retryable else 'not expected to help'}")

    lines.append("")
    return "\n".join(lines)


__all__ = [
    "ExitCode",
    "error",
    "error_exit",
    "exit_code_for_run",
    "format_run",
    "info",
    "resolve_secret",
    "success",
    "warn",
]
