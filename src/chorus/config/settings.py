"""Application configuration settings.

This module provides the AppConfig class and settings singleton.
"""

from pathlib import Path

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chorus.config.env_loader import Environment, get_environment, load_env_files
from chorus.config.validators import (
    normalize_provider_list,
    resolve_path,
    validate_log_format,
    validate_log_level,
    validate_ratio,
)

log = structlog.get_logger(__name__)


class AppConfig(BaseSettings):
    """Unified application configuration.

    Loads configuration from environment variables, .env files, and defaults.
    Validates all values using Pydantic.
    """

    model_config = SettingsConfigDict(
        # .env files are loaded manually via env_loader to honor environment priority
        env_prefix="CHORUS_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    environment: Environment = Field(
        default_factory=get_environment, description="Current environment"
    )
    debug: bool = Field(default=False, alias="APP_DEBUG", description="Debug mode flag")

    # Application
    project_name: str = Field(default="Chorus Orchestrator", description="Project name")
    version: str = Field(default="0.1.0", description="Application version")

    # Telemetry
    log_dir: Path = Field(default=Path("telemetry/logs"), description="Log directory path")
    log_level: str = Field(
        default="INFO",
        alias="APP_LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_format: str = Field(
        default="json", alias="APP_LOG_FORMAT", description="Log format (json or console)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        return validate_log_level(v)

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        return validate_log_format(v)

    @field_validator("log_dir", mode="before")
    @classmethod
    def resolve_paths(cls, v: Path | str) -> Path:
        """Resolve relative paths to absolute."""
        return resolve_path(v)

    # Providers
    default_batch_providers: list[str] = Field(
        default_factory=lambda: ["claude", "gemini", "chatgpt"],
        description="Providers used for the batch fan-out when a request names none",
    )
    default_concierge_provider: str = Field(
        default="gemini", description="Concierge provider when neither request nor session names one"
    )
    provider_timeout_seconds: float = Field(
        default=180.0, gt=0, description="Cap for a single provider call"
    )
    refinement_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Cap for auxiliary refinement calls"
    )

    @field_validator("default_batch_providers", mode="before")
    @classmethod
    def parse_provider_list(cls, v: str | list[str]) -> list[str]:
        """Accept CSV or JSON-style lists for provider ids."""
        return normalize_provider_list(v)

    # Streaming
    stream_append_prefix_ratio: float = Field(
        default=0.7, description="Common-prefix share of the previous text that counts as an append"
    )
    stream_regression_max_chars: int = Field(
        default=200, ge=0, description="Shrink (chars) treated as benign"
    )
    stream_regression_max_ratio: float = Field(
        default=0.05, description="Shrink (fraction of previous text) treated as benign"
    )
    stream_warn_max: int = Field(
        default=2, ge=0, description="Regression warnings allowed per key per window"
    )
    stream_warn_window_seconds: float = Field(
        default=5.0, gt=0, description="Window for regression warning rate limit"
    )

    @field_validator("stream_append_prefix_ratio", "stream_regression_max_ratio")
    @classmethod
    def check_ratio(cls, v: float) -> float:
        """Validate stream ratios."""
        return validate_ratio(v)

    # Orchestrator
    inflight_stale_after_seconds: float = Field(
        default=600.0,
        gt=0,
        description="In-flight continuation keys older than this are treated as abandoned",
    )


_settings: AppConfig | None = None


def load_app_config() -> AppConfig:
    """Load and validate application configuration.

    This function:
    1. Loads .env files in priority order (via env_loader)
    2. Creates AppConfig instance (reads from environment variables)
    3. Validates all values using Pydantic
    4. Logs configuration loading using structlog

    Returns:
        Validated AppConfig instance.

    Raises:
        ValidationError: If configuration validation fails.
    """
    log.info("loading_app_config", environment=get_environment().value)

    load_env_files()

    try:
        config = AppConfig()
        log.info(
            "app_config_loaded",
            environment=config.environment.value,
            debug=config.debug,
            log_level=config.log_level,
            default_concierge_provider=config.default_concierge_provider,
        )
        return config
    except Exception as e:
        log.error("app_config_load_failed", error=str(e), error_type=type(e).__name__)
        raise


def get_settings() -> AppConfig:
    """Get the application settings singleton.

    Returns:
        AppConfig instance (singleton pattern).
    """
    global _settings
    if _settings is None:
        _settings = load_app_config()
    return _settings
