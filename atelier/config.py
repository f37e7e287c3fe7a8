from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BASE_DELAY,
    DEFAULT_JITTER,
    DEFAULT_LIMITER_CAPACITY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_MAX_LOOKS,
    DEFAULT_MAX_REFERENCE_IMAGES,
    DEFAULT_MIN_ITEMS_PER_LOOK,
    DEFAULT_MIN_LOOKS,
    DEFAULT_STEP_TIMEOUT,
)


class RetryConfig(BaseModel):
    """Default retry policy for registered steps."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    jitter: float = Field(default=DEFAULT_JITTER, ge=0, le=1)


class LimiterConfig(BaseModel):
    """Concurrency limiter settings."""

    capacity: int = Field(default=DEFAULT_LIMITER_CAPACITY, ge=1)
    acquire_timeout: Optional[float] = 60.0


class StepsConfig(BaseModel):
    """Per-attempt step settings.

    ``lease_timeout`` overrides how long a claimed attempt stays exclusive to
    the executor that claimed it; by default it is derived from ``timeout``.
    """

    timeout: Optional[float] = DEFAULT_STEP_TIMEOUT
    lease_timeout: Optional[float] = Field(default=None, gt=0)


class CurationConfig(BaseModel):
    """Bounds applied to curated outfit compositions."""

    min_looks: int = Field(default=DEFAULT_MIN_LOOKS, ge=1)
    max_looks: int = Field(default=DEFAULT_MAX_LOOKS, ge=1)
    min_items_per_look: int = Field(default=DEFAULT_MIN_ITEMS_PER_LOOK, ge=1)
    model: str = "openai:gpt-4o"
    catalog_limit: int = 500


class RendererConfig(BaseModel):
    """Try-on image generation service settings."""

    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 120.0
    max_reference_images: int = Field(default=DEFAULT_MAX_REFERENCE_IMAGES, ge=1)


class AtelierConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    looks_database_url: Optional[str] = None
    retry: RetryConfig = Field(default_factory=RetryConfig)
    limiter: LimiterConfig = Field(default_factory=LimiterConfig)
    steps: StepsConfig = Field(default_factory=StepsConfig)
    curation: CurationConfig = Field(default_factory=CurationConfig)
    renderer: RendererConfig = Field(default_factory=RendererConfig)


def load_config(path: Optional[str] = None) -> AtelierConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ATELIER_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("ATELIER_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AtelierConfig(**data)
    else:
        config = AtelierConfig()

    env_db_url = os.getenv("ATELIER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_api_key = os.getenv("ATELIER_RENDERER_API_KEY")
    if env_api_key:
        config.renderer.api_key = env_api_key
    return config
