"""
Engine settings.

Reads config from the SKYMOSAIC_CONFIG env var (a YAML file with an
``engine`` mapping) or falls back to defaults when the file is absent.

Supports ${ENV_VAR} interpolation in YAML string values so that
deployment-specific values can be injected via environment variables
rather than hard-coded in the config file.
"""

import logging
import os
import re
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_settings = None

_ENV_RE = re.compile(r"\$\{(\w+)\}")


class EngineSettings(BaseModel):
    """Tunables for ingestion, tiling and request scheduling."""

    # HEALPix order at which per-feature cell membership is precomputed
    index_order: int = Field(4, ge=0, le=10)
    # Deepest tile order served
    max_order: int = Field(12, ge=0, le=29)
    # Samples per cell edge at order 0, halved at each deeper order
    boundary_step: int = Field(16, ge=1)

    allsky_max_features: int = Field(2000, ge=1)
    allsky_simplify_tolerance: float = Field(0.5, ge=0.0)
    coordinate_precision: int = Field(6, ge=0, le=12)

    worker_count: int = Field(4, ge=1)
    queue_size: int = Field(64, ge=0)
    task_timeout_seconds: float = Field(30.0, gt=0)

    # None keeps every registered query for the process lifetime
    registry_max_entries: Optional[int] = Field(None, ge=1)


def _resolve_env_vars(value):
    """Replace ${VAR} placeholders with environment variable values."""
    if isinstance(value, str):
        return _ENV_RE.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)), value
        )
    return value


def load_settings(config_path: str) -> EngineSettings:
    """Load settings from a YAML file. A missing file yields defaults."""
    if not os.path.exists(config_path):
        logger.info("No engine config at %s, using defaults", config_path)
        return EngineSettings()
    with open(config_path) as f:
        config = yaml.safe_load(f) or {}
    engine_config = {
        k: _resolve_env_vars(v) for k, v in (config.get("engine") or {}).items()
    }
    return EngineSettings(**engine_config)


def get_settings() -> EngineSettings:
    """Singleton settings instance."""
    global _settings
    if _settings is None:
        config_path = os.environ.get("SKYMOSAIC_CONFIG", "config/engine.yml")
        _settings = load_settings(config_path)
    return _settings


def set_settings(settings: EngineSettings):
    """Override the settings instance (used for testing)."""
    global _settings
    _settings = settings


def reset_settings():
    """Reset the singleton settings (used for testing)."""
    global _settings
    _settings = None
