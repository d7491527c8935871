"""Environment-based runner settings.

Tunables for the pagination loop, the secondary batcher, the upstream
HTTP client and the polling contract. Every field can be overridden with
an environment variable prefixed ``DATASET_RUNNER_`` or from a ``.env``
file.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

__all__ = ["RunnerSettings", "get_settings"]


class RunnerSettings(BaseSettings):
    """Runner settings using pydantic-settings.

    Example:
        >>> # DATASET_RUNNER_BATCH_SIZE=25
        >>> # DATASET_RUNNER_STATE_DIR=/var/lib/dataset-runner
        >>> settings = RunnerSettings()
        >>> settings.batch_size
        25
    """

    # Pagination
    page_size: int = Field(default=250, ge=1, le=250, description="Records requested per page (GraphQL 'first')")
    page_delay_seconds: float = Field(default=0.5, ge=0.0, description="Delay between primary pages")
    max_pages: Optional[int] = Field(default=None, ge=1, description="Stop after this many pages")

    # Secondary enrichment
    batch_size: int = Field(default=50, ge=1, description="Ids per secondary query")
    batch_delay_seconds: float = Field(default=0.5, ge=0.0, description="Delay between secondary queries")

    # Upstream HTTP
    timeout: float = Field(default=30.0, gt=0.0, description="Request timeout in seconds")
    max_retries: int = Field(default=3, ge=1, le=10, description="Max attempts for retryable failures")
    backoff_factor: float = Field(default=1.0, ge=0.0, le=60.0, description="Exponential backoff multiplier")

    # Polling
    max_poll_count: int = Field(default=120, ge=1, description="Polls before giving up")
    poll_interval: float = Field(default=2.0, ge=0.0, description="Seconds between polls")
    max_consecutive_errors: int = Field(default=3, ge=1, description="Read errors tolerated in a row")

    # Storage and logging
    state_dir: str = Field(default=".state/executions", description="Directory for execution records")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: 'json' or 'console'")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    model_config = SettingsConfigDict(
        env_prefix="DATASET_RUNNER_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is a known value."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate format is a known value."""
        valid_formats = ["json", "console"]
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {valid_formats}")
        return v.lower()


def get_settings() -> RunnerSettings:
    """Load settings from the environment."""
    return RunnerSettings()
