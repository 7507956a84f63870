"""Pipeline configuration loading.

Example:
    >>> config = load_pipeline_config("ferry.yaml")
    >>> config.production.values_path
    'helm/shop-api/values-prod.yaml'
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from ferry_core.errors import ValidationError
from ferry_core.schemas.config import PipelineConfig

logger = structlog.get_logger(__name__)


def format_validation_errors(error: PydanticValidationError) -> str:
    """One line per invalid field, e.g. ``gates.checks.0.url: Field required``."""
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        lines.append(f"{location}: {item['msg']}")
    return "; ".join(lines)


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    """Load and validate a pipeline configuration file.

    Raises:
        ValidationError: If the file is missing, not YAML or not a valid
            pipeline configuration.
    """
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError("config", f"cannot read {config_path}: {e.strerror or e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError("config", f"{config_path} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("config", f"{config_path} must contain a mapping")

    try:
        config = PipelineConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("config", format_validation_errors(e)) from e

    logger.debug(
        "pipeline_config_loaded",
        path=str(config_path),
        application=config.application,
        gates=[c.name for c in config.gates.checks],
        strategy=config.production.strategy.value,
    )
    return config


__all__ = ["format_validation_errors", "load_pipeline_config"]
