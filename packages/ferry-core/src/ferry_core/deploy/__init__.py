"""Deployment of built artifacts to environments."""

from __future__ import annotations

from ferry_core.deploy.driver import DeploymentDriver

__all__ = ["DeploymentDriver"]
