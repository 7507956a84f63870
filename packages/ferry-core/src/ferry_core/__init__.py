"""ferry: build, verify and promote container images from test to production."""

from __future__ import annotations

from ferry_core.config import load_pipeline_config
from ferry_core.errors import FerryError
from ferry_core.promotion import (
    PipelineBackends,
    PromotionController,
    RunStore,
    get_run_status,
    run_pipeline,
)
from ferry_core.schemas import PipelineConfig, PipelineRun, RunState, SourceReference

__version__ = "0.1.0"

__all__ = [
    "FerryError",
    "PipelineBackends",
    "PipelineConfig",
    "PipelineRun",
    "PromotionController",
    "RunState",
    "RunStore",
    "SourceReference",
    "__version__",
    "get_run_status",
    "load_pipeline_config",
    "run_pipeline",
]
