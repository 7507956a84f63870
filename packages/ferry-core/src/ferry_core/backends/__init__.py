"""Adapters for the external tools ferry drives.

Protocols live in ``ferry_core.backends.protocols``; each adapter module
implements one of them on top of a CLI or HTTP API.
"""

from __future__ import annotations

from ferry_core.backends.argocd import ArgoCDEngine
from ferry_core.backends.build import DockerRegistry, MavenBuildBackend
from ferry_core.backends.git_store import GitValuesStore
from ferry_core.backends.helm_cluster import HelmClusterBackend
from ferry_core.backends.protocols import (
    AnalysisBackend,
    BuildBackend,
    ClusterBackend,
    ContainerRegistry,
    DesiredStateStore,
    EngineStatus,
    PromotionEngine,
    UnitTestReport,
)
from ferry_core.backends.sonarqube import SonarQubeBackend

__all__ = [
    "AnalysisBackend",
    "ArgoCDEngine",
    "BuildBackend",
    "ClusterBackend",
    "ContainerRegistry",
    "DesiredStateStore",
    "DockerRegistry",
    "EngineStatus",
    "GitValuesStore",
    "HelmClusterBackend",
    "MavenBuildBackend",
    "PromotionEngine",
    "SonarQubeBackend",
    "UnitTestReport",
]
