"""Main entry point for the ferry CLI.

Commands:
    ferry run: Build, verify and promote one build
    ferry status: Show the state of a run
    ferry runs: List archived runs

Example:
    $ ferry --help
    $ ferry run ferry.yaml --source . --build-number 42
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version

import click

from ferry_core.cli.run import run_command
from ferry_core.cli.status import runs_command, status_command
from ferry_core.telemetry.logging import configure_logging


def _get_version() -> str:
    try:
        return get_version("ferry-core")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="ferry",
    help="ferry - build, verify and promote container images to production.",
    epilog="Use 'ferry <command> --help' for command-specific help.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=_get_version(), prog_name="ferry", message="%(prog)s %(version)s")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    envvar="FERRY_LOG_LEVEL",
    help="Log level for structured logs (stderr).",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"], case_sensitive=False),
    default="json",
    show_default=True,
    envvar="FERRY_LOG_FORMAT",
    help="Structured log renderer.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str, log_format: str) -> None:
    """Root command group for the ferry CLI."""
    ctx.ensure_object(dict)
    configure_logging(log_level=log_level.upper(), json_output=log_format == "json")


cli.add_command(run_command)
cli.add_command(status_command)
cli.add_command(runs_command)


def main(argv: list[str] | None = None) -> None:
    """Console script entry point."""
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
