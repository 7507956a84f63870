"""Unit tests for pipeline configuration validation."""

from __future__ import annotations

from collections.abc import Callable

import pytest
from pydantic import ValidationError as PydanticValidationError

from ferry_core.schemas.config import (
    PipelineConfig,
    PromotionStrategy,
    UnitTestPolicy,
    WebhookConfig,
)
from ferry_core.schemas.gates import GatesConfig, HealthCheckGateConfig


class TestPipelineConfig:
    """Cross-field validation of PipelineConfig."""

    @pytest.mark.requirement("FR-130")
    def test_defaults(self, make_config: Callable[..., PipelineConfig]) -> None:
        """Unspecified settings take the documented defaults."""
        config = make_config()

        assert config.build.unit_tests == UnitTestPolicy.ENFORCE
        assert config.production.strategy == PromotionStrategy.GITOPS
        assert config.production.tag_key == "image.tag"
        assert config.gates.parallel is True

    @pytest.mark.requirement("FR-130")
    def test_test_and_production_must_differ(
        self, make_config: Callable[..., PipelineConfig]
    ) -> None:
        """Test and production cannot be the same environment."""
        with pytest.raises(PydanticValidationError, match="different environment names"):
            make_config(production={"environment": "test"})

    @pytest.mark.requirement("FR-130")
    def test_shared_release_rejected(self, make_config: Callable[..., PipelineConfig]) -> None:
        """Test and production cannot share a namespace and release."""
        with pytest.raises(PydanticValidationError, match="namespace and release"):
            make_config(production={"namespace": "shop-test"})

    @pytest.mark.requirement("FR-131")
    def test_gitops_requires_values_path(self, make_config: Callable[..., PipelineConfig]) -> None:
        """The gitops strategy needs to know which file records the tag."""
        with pytest.raises(PydanticValidationError, match="production.values_path"):
            make_config(production={"values_path": None})

    @pytest.mark.requirement("FR-131")
    def test_direct_strategy_needs_no_gitops(
        self, make_config: Callable[..., PipelineConfig]
    ) -> None:
        """The direct strategy works without a store or engine."""
        config = make_config(
            production={"strategy": "direct", "values_path": None},
            gitops=None,
            argocd=None,
        )

        assert config.gitops is None

    @pytest.mark.requirement("FR-132")
    def test_quality_gate_requires_sonarqube(
        self, make_config: Callable[..., PipelineConfig]
    ) -> None:
        """A quality gate without an analysis backend is rejected."""
        with pytest.raises(PydanticValidationError, match="sonarqube"):
            make_config(sonarqube=None)

    @pytest.mark.requirement("FR-133")
    def test_unknown_keys_rejected(self, make_config: Callable[..., PipelineConfig]) -> None:
        """Typos in the configuration file are errors."""
        with pytest.raises(PydanticValidationError):
            make_config(build={"unit_test": "skip"})


class TestGatesConfig:
    """Validation of the gate set."""

    @pytest.mark.requirement("FR-134")
    def test_duplicate_names_rejected(self) -> None:
        """Gate names key the results and must be unique."""
        with pytest.raises(PydanticValidationError, match="Duplicate gate names"):
            GatesConfig.model_validate(
                {
                    "checks": [
                        {"kind": "health_check", "name": "liveness", "url": "http://a"},
                        {"kind": "health_check", "name": "liveness", "url": "http://b"},
                    ]
                }
            )

    @pytest.mark.requirement("FR-134")
    def test_at_least_one_required_gate(self) -> None:
        """A gate set made only of optional gates would promote unverified builds."""
        with pytest.raises(PydanticValidationError, match="required gate"):
            GatesConfig.model_validate(
                {"checks": [{"kind": "quality", "name": "sonar", "required": False}]}
            )

    @pytest.mark.requirement("FR-134")
    def test_kind_discriminates_variants(self) -> None:
        """The kind field selects the gate configuration class."""
        gates = GatesConfig.model_validate(
            {"checks": [{"kind": "health_check", "name": "liveness", "url": "http://a"}]}
        )

        check = gates.checks[0]
        assert isinstance(check, HealthCheckGateConfig)
        assert check.max_attempts == 30
        assert check.interval_seconds == 10.0


class TestWebhookConfig:
    """Validation of webhook targets."""

    @pytest.mark.requirement("FR-135")
    def test_unknown_event_rejected(self) -> None:
        """Only run lifecycle events can be subscribed to."""
        with pytest.raises(PydanticValidationError, match="Invalid event types"):
            WebhookConfig(url="https://hooks.example.com", events=["run_exploded"])
