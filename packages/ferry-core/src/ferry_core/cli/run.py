"""``ferry run``: run the pipeline for one build.

Example:
    $ ferry run ferry.yaml --source . --build-number 42
    $ ferry run ferry.yaml --source . --build-number 42 --output json
"""

from __future__ import annotations

import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType

import click
import structlog

from ferry_core.backends import (
    ArgoCDEngine,
    DockerRegistry,
    GitValuesStore,
    HelmClusterBackend,
    MavenBuildBackend,
    SonarQubeBackend,
)
from ferry_core.cli.utils import (
    ExitCode,
    error,
    error_exit,
    exit_code_for_run,
    format_run,
    info,
    resolve_secret,
    success,
    warn,
)
from ferry_core.config import load_pipeline_config
from ferry_core.errors import FerryError
from ferry_core.promotion import PipelineBackends, PromotionController, RunStore
from ferry_core.resilience import CancellationToken
from ferry_core.schemas.artifact import SourceReference
from ferry_core.schemas.config import PipelineConfig, PromotionStrategy

logger = structlog.get_logger(__name__)


def build_backends(config: PipelineConfig) -> PipelineBackends:
    """Create the real tool adapters for a configuration.

    Credentials named by ``*_env`` fields are resolved here.

    Raises:
        ValidationError: If a referenced credential variable is not set.
    """
    # Per-environment charts and values files travel on the targets.
    default_chart = config.test.chart or config.production.chart
    if default_chart is None:
        default_chart = f"./helm/{config.application}"
    cluster = HelmClusterBackend(
        default_chart,
        timeout_seconds=max(
            config.test.readiness.timeout_seconds,
            config.production.readiness.timeout_seconds,
        ),
    )

    analysis = None
    if config.sonarqube is not None:
        analysis = SonarQubeBackend(
            config.sonarqube.url,
            config.sonarqube.project_key,
            token=resolve_secret(config.sonarqube.token_env),
            poll_interval_seconds=config.sonarqube.poll_interval_seconds,
        )

    state_store = None
    engine = None
    if config.production.strategy == PromotionStrategy.GITOPS:
        assert config.gitops is not None and config.argocd is not None
        state_store = GitValuesStore(config.gitops)
        engine = ArgoCDEngine(
            server=config.argocd.server,
            auth_token=resolve_secret(config.argocd.auth_token_env),
            insecure=config.argocd.insecure,
            poll_interval_seconds=config.argocd.poll_interval_seconds,
        )

    return PipelineBackends(
        build=MavenBuildBackend(config.build),
        registry=DockerRegistry(),
        cluster=cluster,
        analysis=analysis,
        state_store=state_store,
        engine=engine,
    )


@contextmanager
def cancel_on_signals(token: CancellationToken) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request for the block."""

    def handler(signum: int, frame: FrameType | None) -> None:
        token.cancel(f"received {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@click.command(
    name="run",
    help="Build, verify and promote one build.",
    epilog="""
Exit Codes:
    0   - Converged: production runs the new build
    2   - Invalid arguments or configuration
    4   - Run not finished (reported by 'ferry status')
    10  - Failed while pending
    11  - Failed while building (build, unit tests, push, test deploy)
    12  - Failed after the test deployment
    13  - Failed gating (a required gate did not pass)
    14  - Failed promoting (conflict, convergence timeout, sync failure)
    130 - Cancelled
""",
)
@click.argument("config_path", metavar="CONFIG", type=click.Path(path_type=Path))
@click.option(
    "--source",
    "source_path",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Source checkout to build.",
)
@click.option(
    "--build-number",
    required=True,
    type=click.IntRange(min=1),
    help="CI build counter; used as the image tag.",
)
@click.option("--revision", default=None, help="VCS revision of the checkout.")
@click.option("--run-id", default=None, help="Run identifier (default: generated).")
@click.option(
    "--store",
    "store_dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Run store directory (default: run_store from the config).",
)
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["table", "json", "yaml"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def run_command(
    config_path: Path,
    source_path: Path,
    build_number: int,
    revision: str | None,
    run_id: str | None,
    store_dir: Path | None,
    output_format: str,
) -> None:
    """Run the pipeline and exit with the code of its final state."""
    try:
        config = load_pipeline_config(config_path)
        backends = build_backends(config)
        store = RunStore(store_dir if store_dir is not None else config.run_store)
        controller = PromotionController(config, backends, store=store)
        source = SourceReference(
            path=str(source_path.resolve()),
            build_number=build_number,
            revision=revision,
        )
    except FerryError as e:
        error_exit(str(e), exit_code=e.exit_code)

    if output_format == "table":
        info(f"Running {config.application} build {build_number}")

    token = CancellationToken(run_id or "")
    try:
        with cancel_on_signals(token):
            run = controller.run_pipeline(source, run_id=run_id, cancel=token)
    except FerryError as e:
        error_exit(str(e), exit_code=e.exit_code)

    success(format_run(run, output_format))
    exit_code = exit_code_for_run(run)
    if run.failure is not None and output_format == "table":
        if exit_code == ExitCode.CANCELLED:
            warn("Run cancelled", run_id=run.run_id, stage=run.failure.stage.value)
        else:
            error(
                run.failure.message,
                stage=run.failure.stage.value,
                retryable=run.failure.retryable,
            )
    sys.exit(int(exit_code))


__all__ = ["build_backends", "cancel_on_signals", "run_command"]
