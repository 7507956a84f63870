"""Pydantic schemas for ferry-core.

Value types (artifacts, deployment targets, gate results, pipeline runs) and
the pipeline configuration model.
"""

from __future__ import annotations

from ferry_core.schemas.artifact import ArtifactReference, SourceReference
from ferry_core.schemas.config import (
    ArgoCDConfig,
    BuildConfig,
    EnvironmentConfig,
    GitOpsConfig,
    PipelineConfig,
    ProductionConfig,
    PromotionStrategy,
    SonarQubeConfig,
    UnitTestPolicy,
    WebhookConfig,
)
from ferry_core.schemas.deployment import (
    DeploymentPhase,
    DeploymentStatus,
    DeploymentTarget,
    ObservedState,
    ReadinessPolicy,
)
from ferry_core.schemas.gates import (
    AcceptanceTestGateConfig,
    GateKind,
    GateOutcome,
    GateResult,
    GatesConfig,
    HealthCheckGateConfig,
    QualityGateConfig,
)
from ferry_core.schemas.pipeline import PipelineRun, RunFailure, RunState

__all__ = [
    "AcceptanceTestGateConfig",
    "ArgoCDConfig",
    "ArtifactReference",
    "BuildConfig",
    "DeploymentPhase",
    "DeploymentStatus",
    "DeploymentTarget",
    "EnvironmentConfig",
    "GateKind",
    "GateOutcome",
    "GateResult",
    "GatesConfig",
    "GitOpsConfig",
    "HealthCheckGateConfig",
    "ObservedState",
    "PipelineConfig",
    "PipelineRun",
    "ProductionConfig",
    "PromotionStrategy",
    "QualityGateConfig",
    "ReadinessPolicy",
    "RunFailure",
    "RunState",
    "SonarQubeConfig",
    "SourceReference",
    "UnitTestPolicy",
    "WebhookConfig",
]
