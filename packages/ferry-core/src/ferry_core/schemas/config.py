"""Pipeline configuration schemas.

PipelineConfig is loaded from a YAML file (see ferry_core.config) and passed
into the PromotionController. Credentials are referenced by environment
variable name (``*_env`` fields) and resolved by the CLI, never inside
business logic.

Example configuration:

    application: shop-api
    build:
      repository: registry.example.com/shop/api
      unit_tests: enforce
    test:
      environment: test
      namespace: shop-test
      release: shop-api
      chart: helm/shop-api
    gates:
      checks:
        - kind: health_check
          name: liveness
          url: http://{release}.{namespace}.svc:8080/actuator/health
    production:
      environment: prod
      namespace: shop-prod
      release: shop-api
      values_path: helm/shop-api/values-prod.yaml
    gitops:
      repo_path: /work/deploy-config
    argocd:
      app_name: shop-api-prod
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ferry_core.schemas.deployment import DeploymentTarget, ReadinessPolicy
from ferry_core.schemas.gates import GatesConfig

VALID_WEBHOOK_EVENTS = frozenset({"run_started", "run_converged", "run_failed"})


class UnitTestPolicy(str, Enum):
    """What to do with unit test results during the build stage.

    Attributes:
        ENFORCE: Failing unit tests fail the run.
        REPORT: Failing unit tests are recorded as a warning.
        SKIP: Unit tests are not run.
    """

    ENFORCE = "enforce"
    REPORT = "report"
    SKIP = "skip"


class PromotionStrategy(str, Enum):
    """How production converges on a new desired state.

    Attributes:
        GITOPS: Commit the desired tag to a values file, then sync the GitOps engine.
        DIRECT: Deploy to the production cluster through the DeploymentDriver.
    """

    GITOPS = "gitops"
    DIRECT = "direct"


class BuildConfig(BaseModel):
    """Build stage configuration.

    Attributes:
        repository: Image repository the build pushes to.
        unit_tests: Unit test policy.
        maven_args: Extra arguments for every Maven invocation.
        dockerfile: Dockerfile path relative to the source checkout.
        timeout_seconds: Timeout for each build tool invocation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str = Field(..., min_length=1)
    unit_tests: UnitTestPolicy = UnitTestPolicy.ENFORCE
    maven_args: list[str] = Field(default_factory=lambda: ["-B"])
    dockerfile: str = "Dockerfile"
    timeout_seconds: float = Field(default=1800.0, gt=0)


class EnvironmentConfig(BaseModel):
    """Configuration of one deployment environment.

    Attributes:
        environment: Environment name (unique key).
        namespace: Kubernetes namespace.
        release: Helm release and Deployment name.
        chart: Helm chart path (direct deployments).
        values_files: Extra Helm values files.
        readiness: Convergence policy.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment: str = Field(..., min_length=1, max_length=50, pattern=r"^[a-z][a-z0-9_-]*$")
    namespace: str = Field(..., min_length=1, max_length=63)
    release: str = Field(..., min_length=1, max_length=53)
    chart: str | None = None
    values_files: list[str] = Field(default_factory=list)
    readiness: ReadinessPolicy = Field(default_factory=ReadinessPolicy)

    def to_target(self) -> DeploymentTarget:
        """Create a fresh DeploymentTarget for this environment."""
        return DeploymentTarget(
            environment=self.environment,
            namespace=self.namespace,
            release=self.release,
            chart=self.chart,
            values_files=tuple(self.values_files),
            readiness=self.readiness,
        )


class ProductionConfig(EnvironmentConfig):
    """Production environment configuration.

    Attributes:
        strategy: gitops (values file + GitOps engine) or direct.
        values_path: Values file holding the desired tag, relative to the GitOps repo.
        tag_key: Dotted key of the image tag inside the values file.
        allow_downgrade: Allow promoting a lower build number than recorded.
        lease_timeout_seconds: How long to wait for the environment lease.
    """

    strategy: PromotionStrategy = PromotionStrategy.GITOPS
    values_path: str | None = None
    tag_key: str = Field(default="image.tag", pattern=r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*$")
    allow_downgrade: bool = False
    lease_timeout_seconds: float = Field(default=30.0, ge=0)


class GitOpsConfig(BaseModel):
    """Git-backed desired-state store.

    Attributes:
        repo_path: Local clone of the deployment configuration repository.
        remote: Remote name to pull from and push to.
        branch: Branch holding the desired state.
        author_name: Commit author name.
        author_email: Commit author email.
        timeout_seconds: Timeout for each git invocation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    repo_path: str = Field(..., min_length=1)
    remote: str = "origin"
    branch: str = "main"
    author_name: str = "ferry"
    author_email: str = "ferry@localhost"
    timeout_seconds: float = Field(default=120.0, gt=0)


class ArgoCDConfig(BaseModel):
    """ArgoCD promotion engine.

    Attributes:
        app_name: ArgoCD application tracking the production values file.
        server: ArgoCD server address (None uses the CLI context).
        auth_token_env: Environment variable holding the API token.
        insecure: Skip TLS verification.
        poll_interval_seconds: Delay between health polls.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    app_name: str = Field(..., min_length=1)
    server: str | None = None
    auth_token_env: str | None = "ARGOCD_AUTH_TOKEN"
    insecure: bool = False
    poll_interval_seconds: float = Field(default=5.0, gt=0)


class SonarQubeConfig(BaseModel):
    """SonarQube analysis backend.

    Attributes:
        url: SonarQube base URL.
        project_key: Project key whose quality gate is checked.
        token_env: Environment variable holding the API token.
        poll_interval_seconds: Delay between analysis status polls.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1)
    project_key: str = Field(..., min_length=1)
    token_env: str | None = "SONAR_TOKEN"
    poll_interval_seconds: float = Field(default=5.0, gt=0)


class WebhookConfig(BaseModel):
    """Webhook notification target for run lifecycle events.

    Attributes:
        url: Endpoint URL.
        events: Events to deliver.
        headers: Extra request headers.
        timeout_seconds: Request timeout.
        retry_count: Retries after the first attempt.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1)
    events: list[str] = Field(..., min_length=1)
    headers: dict[str, str] | None = None
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    retry_count: int = Field(default=3, ge=0, le=10)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        """Validate all events are known run events."""
        invalid = set(v) - VALID_WEBHOOK_EVENTS
        if invalid:
            raise ValueError(
                f"Invalid event types: {invalid}. Valid types: {sorted(VALID_WEBHOOK_EVENTS)}"
            )
        return v


class PipelineConfig(BaseModel):
    """Top-level pipeline configuration.

    Attributes:
        application: Application name (used in logs, commits and locks).
        build: Build stage configuration.
        test: Test environment.
        gates: Gates run between the test deployment and promotion.
        production: Production environment.
        gitops: Desired-state store (gitops strategy).
        argocd: Promotion engine (gitops strategy).
        sonarqube: Analysis backend (quality gates).
        webhooks: Notification targets.
        run_store: Directory where run records are archived.
        lock_dir: Directory for environment lease files (None: system temp dir).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    application: str = Field(..., min_length=1, max_length=63, pattern=r"^[a-z][a-z0-9-]*$")
    build: BuildConfig
    test: EnvironmentConfig
    gates: GatesConfig
    production: ProductionConfig
    gitops: GitOpsConfig | None = None
    argocd: ArgoCDConfig | None = None
    sonarqube: SonarQubeConfig | None = None
    webhooks: list[WebhookConfig] = Field(default_factory=list)
    run_store: str = ".ferry/runs"
    lock_dir: str | None = None

    @model_validator(mode="after")
    def validate_environments(self) -> PipelineConfig:
        """Test and production must be distinct environments."""
        if self.test.environment == self.production.environment:
            raise ValueError("test and production must use different environment names")
        if (self.test.namespace, self.test.release) == (
            self.production.namespace,
            self.production.release,
        ):
            raise ValueError("test and production must not share namespace and release")
        return self

    @model_validator(mode="after")
    def validate_strategy_requirements(self) -> PipelineConfig:
        """GitOps promotion needs a store, an engine and a values file."""
        if self.production.strategy == PromotionStrategy.GITOPS:
            missing = [
                name
                for name, value in (
                    ("gitops", self.gitops),
                    ("argocd", self.argocd),
                    ("production.values_path", self.production.values_path),
                )
                if value is None
            ]
            if missing:
                raise ValueError(f"gitops promotion strategy requires: {', '.join(missing)}")
        return self

    @model_validator(mode="after")
    def validate_quality_backend(self) -> PipelineConfig:
        """Quality gates need an analysis backend."""
        has_quality = any(c.kind == "quality" for c in self.gates.checks)
        if has_quality and self.sonarqube is None:
            raise ValueError("quality gates require a sonarqube section")
        return self


__all__ = [
    "ArgoCDConfig",
    "BuildConfig",
    "EnvironmentConfig",
    "GitOpsConfig",
    "PipelineConfig",
    "ProductionConfig",
    "PromotionStrategy",
    "SonarQubeConfig",
    "UnitTestPolicy",
    "VALID_WEBHOOK_EVENTS",
    "WebhookConfig",
]
