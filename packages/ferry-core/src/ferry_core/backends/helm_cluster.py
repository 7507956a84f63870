"""Kubernetes cluster backend driven by the helm and kubectl CLIs.

apply_deployment runs ``helm upgrade --install`` with the desired image;
get_status reads the Deployment named after the release with
``kubectl get deployment -o json``.
"""

from __future__ import annotations

import json
import subprocess
from typing import Any

import structlog

from ferry_core.backends._process import run_tool, tail
from ferry_core.errors import DeployRejectedError
from ferry_core.schemas.deployment import DeploymentTarget, ObservedState
from ferry_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


def observed_state_from_deployment(manifest: dict[str, Any]) -> ObservedState:
    """Build an ObservedState from a Deployment object as returned by kubectl.

    The first container's image is taken as the rolled-out image. A rollout
    still in progress (observedGeneration behind metadata.generation, or
    updated replicas lagging) reports zero ready replicas for the new image.
    """
    spec = manifest.get("spec", {})
    status = manifest.get("status", {})
    containers = spec.get("template", {}).get("spec", {}).get("containers", [])
    image = containers[0].get("image") if containers else None

    desired = int(spec.get("replicas", 1))
    ready = int(status.get("readyReplicas", 0))
    updated = int(status.get("updatedReplicas", 0))
    generation = manifest.get("metadata", {}).get("generation")
    observed_generation = status.get("observedGeneration")

    rolled_out = observed_generation is None or observed_generation >= (generation or 0)
    if not rolled_out or updated < desired:
        ready = min(ready, updated) if rolled_out else 0

    message = None
    for condition in status.get("conditions", []):
        if condition.get("type") == "Progressing" and condition.get("message"):
            message = condition["message"]
    return ObservedState(
        image=image,
        ready_replicas=ready,
        desired_replicas=desired,
        message=message,
    )


class HelmClusterBackend:
    """ClusterBackend over ``helm`` and ``kubectl``.

    The chart and values files come from the target, so each environment
    is installed with its own settings.

    Args:
        default_chart: Chart used for targets that do not name one.
        kube_context: kubectl/helm context (None uses the current context).
        timeout_seconds: Timeout for each CLI invocation.
    """

    def __init__(
        self,
        default_chart: str,
        *,
        kube_context: str | None = None,
        timeout_seconds: float = 300.0,
    ) -> None:
        self.default_chart = default_chart
        self.kube_context = kube_context
        self.timeout_seconds = timeout_seconds

    def _context_args(self) -> list[str]:
        return ["--kube-context", self.kube_context] if self.kube_context else []

    def apply_deployment(self, target: DeploymentTarget) -> ObservedState:
        """Upgrade (or install) the release with the target's desired image.

        Raises:
            DeployRejectedError: If helm refuses the release or is unavailable.
        """
        if target.desired_image is None:
            raise DeployRejectedError(target.environment, "no desired image set")
        repository, _, tag = target.desired_image.rpartition(":")

        cmd = [
            "helm",
            "upgrade",
            "--install",
            target.release,
            target.chart or self.default_chart,
            "--namespace",
            target.namespace,
            "--create-namespace",
            "--set",
            f"image.repository={repository}",
            "--set-string",
            f"image.tag={tag}",
            *self._context_args(),
        ]
        for values_file in target.values_files:
            cmd.extend(["-f", values_file])

        with create_span(
            "ferry.cluster.apply",
            attributes={
                "environment": target.environment,
                "namespace": target.namespace,
                "image": target.desired_image,
            },
        ):
            try:
                result = run_tool(cmd, timeout=self.timeout_seconds)
            except subprocess.TimeoutExpired as e:
                raise DeployRejectedError(
                    target.environment, f"helm timed out after {self.timeout_seconds}s"
                ) from e
            except FileNotFoundError as e:
                raise DeployRejectedError(target.environment, "helm is not installed") from e
            if result.returncode != 0:
                raise DeployRejectedError(target.environment, tail(result.stderr, 1000).strip())

            logger.info(
                "helm_release_applied",
                environment=target.environment,
                release=target.release,
                image=target.desired_image,
            )
        return ObservedState(message="release applied")

    def get_status(self, target: DeploymentTarget) -> ObservedState:
        """Read the Deployment status.

        A missing Deployment is reported as nothing deployed rather than an
        error so that polling continues while the release is created.
        """
        context = ["--context", self.kube_context] if self.kube_context else []
        cmd = [
            "kubectl",
            "get",
            "deployment",
            target.release,
            "--namespace",
            target.namespace,
            "-o",
            "json",
            *context,
        ]
        result = run_tool(cmd, timeout=self.timeout_seconds)
        if result.returncode != 0:
            if "NotFound" in result.stderr:
                return ObservedState(message="deployment not found")
            raise RuntimeError(f"kubectl get deployment failed: {tail(result.stderr, 500)}")
        return observed_state_from_deployment(json.loads(result.stdout))


__all__ = ["HelmClusterBackend", "observed_state_from_deployment"]
