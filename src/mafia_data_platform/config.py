"""Import configuration models using Pydantic."""

import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class BackoffStrategy(str, Enum):
    """Retry backoff strategies."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    CONSTANT = "constant"


class RetryConfig(BaseModel):
    """Retry configuration for per-unit work."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay: float = Field(default=1.0, ge=0)  # seconds
    max_delay: float = Field(default=60.0, ge=0)  # seconds


class SiteConfig(BaseModel):
    """Rating site connection settings."""

    base_url: str = "https://gomafia.pro"
    rate_limit: int = Field(default=60, ge=1, description="Max requests per minute")
    timeout: int = Field(default=30, ge=1, le=300, description="Request timeout in seconds")
    max_pages: Optional[int] = Field(
        default=None, ge=1, description="Upper bound on listing pages per phase"
    )


class ImportConfig(BaseModel):
    """Complete import pipeline configuration."""

    retry: RetryConfig = Field(default_factory=RetryConfig)
    site: SiteConfig = Field(default_factory=SiteConfig)

    batch_size: int = Field(default=100, ge=1, description="Units per checkpoint batch")
    max_duration_hours: float = Field(default=12, gt=0, description="Hard wall-clock limit")

    # PLAYER_YEAR_STATS walks back from the current year to this one
    stats_start_year: int = Field(default=2022, ge=2000)
    stats_empty_years_stop: int = Field(default=2, ge=1)

    @classmethod
    def from_env(cls, base: Optional["ImportConfig"] = None) -> "ImportConfig":
        """Apply IMPORT_* environment overrides on top of ``base``.

        Environment variables:
        - IMPORT_BASE_URL: Rating site base URL
        - IMPORT_RATE_LIMIT: Max requests per minute
        - IMPORT_BATCH_SIZE: Units per checkpoint batch
        - IMPORT_MAX_DURATION_HOURS: Hard wall-clock limit
        - IMPORT_MAX_ATTEMPTS: Attempts per unit before it is skipped

        Returns:
            ImportConfig instance
        """
        data = (base or cls()).model_dump()

        if os.getenv("IMPORT_BASE_URL"):
            data["site"]["base_url"] = os.environ["IMPORT_BASE_URL"]
        if os.getenv("IMPORT_RATE_LIMIT"):
            data["site"]["rate_limit"] = int(os.environ["IMPORT_RATE_LIMIT"])
        if os.getenv("IMPORT_BATCH_SIZE"):
            data["batch_size"] = int(os.environ["IMPORT_BATCH_SIZE"])
        if os.getenv("IMPORT_MAX_DURATION_HOURS"):
            data["max_duration_hours"] = float(os.environ["IMPORT_MAX_DURATION_HOURS"])
        if os.getenv("IMPORT_MAX_ATTEMPTS"):
            data["retry"]["max_attempts"] = int(os.environ["IMPORT_MAX_ATTEMPTS"])

        return cls(**data)


def load_import_config(path: str | Path) -> ImportConfig:
    """Load import configuration from YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ImportConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid
    """
    config_path = Path(path)

    if not config_path.exists():
        raise FileNotFoundError(f"Import config not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f) or {}

    return ImportConfig(**config_data)
