"""Pipeline runs: state machine, environment leases and the run store."""

from __future__ import annotations

from ferry_core.promotion.controller import (
    PipelineBackends,
    PromotionController,
    get_run_status,
    run_pipeline,
)
from ferry_core.promotion.locks import environment_lease
from ferry_core.promotion.store import RunStore

__all__ = [
    "PipelineBackends",
    "PromotionController",
    "RunStore",
    "environment_lease",
    "get_run_status",
    "run_pipeline",
]
