"""``ferry status`` and ``ferry runs``: inspect archived runs.

The run store is ``--store`` when given, else the ``run_store`` of the
pipeline configuration passed with ``--config``, else ``.ferry/runs``.

Example:
    $ ferry status shop-api-42-1f2e3d4c --config ferry.yaml
    $ ferry runs --store .ferry/runs
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from ferry_core.cli.utils import error_exit, exit_code_for_run, format_run, success
from ferry_core.config import load_pipeline_config
from ferry_core.errors import FerryError
from ferry_core.promotion import RunStore, get_run_status

DEFAULT_STORE = ".ferry/runs"

_store_option = click.option(
    "--store",
    "store_dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help=f"Run store directory (default: run_store from --config, else {DEFAULT_STORE}).",
)

_config_option = click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Pipeline configuration whose run_store to read.",
)


def resolve_store(store_dir: Path | None, config_path: Path | None) -> RunStore:
    """Open the run store selected by ``--store`` and ``--config``.

    Raises:
        ValidationError: If the configuration cannot be loaded.
    """
    if store_dir is not None:
        return RunStore(store_dir)
    if config_path is not None:
        return RunStore(load_pipeline_config(config_path).run_store)
    return RunStore(DEFAULT_STORE)


@click.command(
    name="status",
    help="Show the state of a run.",
    epilog="""
Exit Codes:
    The exit code of the run's state (see 'ferry run --help'),
    4 if the run has not finished yet, or 3 if the run is unknown.
""",
)
@click.argument("run_id")
@_store_option
@_config_option
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["table", "json", "yaml"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def status_command(
    run_id: str,
    store_dir: Path | None,
    config_path: Path | None,
    output_format: str,
) -> None:
    """Print the latest snapshot of RUN_ID."""
    try:
        store = resolve_store(store_dir, config_path)
        run = get_run_status(run_id, store)
    except FerryError as e:
        error_exit(str(e), exit_code=e.exit_code, store=str(store_dir) if store_dir else None)
    success(format_run(run, output_format))
    sys.exit(int(exit_code_for_run(run)))


@click.command(name="runs", help="List archived runs, oldest first.")
@_store_option
@_config_option
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def runs_command(store_dir: Path | None, config_path: Path | None, output_format: str) -> None:
    """List runs in the run store."""
    try:
        runs = resolve_store(store_dir, config_path).list_runs()
    except FerryError as e:
        error_exit(str(e), exit_code=e.exit_code, store=str(store_dir) if store_dir else None)

    if output_format == "json":
        rows = [
            {
                "run_id": r.run_id,
                "state": r.state.value,
                "failed_stage": r.failed_stage.value if r.failed_stage else None,
                "build_number": r.source.build_number,
                "image": r.artifact.image if r.artifact else None,
                "updated_at": r.updated_at.isoformat(),
            }
            for r in runs
        ]
        success(json.dumps(rows, indent=2))
        return

    if not runs:
        success("No runs found.")
        return
    success(f"{'RUN':<40} {'STATE':<22} {'BUILD':>6}  UPDATED")
    for r in runs:
        state = r.state.value
        if r.failed_stage is not None:
            state = f"failed({r.failed_stage.value})"
        success(
            f"{r.run_id:<40} {state:<22} {r.source.build_number:>6}  "
            f"{r.updated_at.isoformat(timespec='seconds')}"
        )


__all__ = ["runs_command", "status_command"]
