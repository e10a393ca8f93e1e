"""Tests for configuration settings."""

import importlib
import os
from pathlib import Path

import pytest
from pydantic import ValidationError

settings_module = importlib.import_module("chorus.config.settings")
from chorus.config import (
    AppConfig,
    Environment,
    get_environment,
    get_settings,
    load_app_config,
    settings,
)
from chorus.config.bootstrap import get_bootstrap_log_dir, get_bootstrap_log_level
from chorus.config.env_loader import env_file_candidates, load_env_files


class TestEnvironmentDetection:
    """Test environment detection."""

    def test_get_environment_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test default environment is development."""
        monkeypatch.delenv("APP_ENV", raising=False)
        assert get_environment() == Environment.DEVELOPMENT

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("production", Environment.PRODUCTION),
            ("prod", Environment.PRODUCTION),
            ("staging", Environment.STAGING),
            ("stage", Environment.STAGING),
            ("TEST", Environment.TEST),
            ("qa", Environment.DEVELOPMENT),
        ],
    )
    def test_get_environment_values(
        self, monkeypatch: pytest.MonkeyPatch, value: str, expected: Environment
    ) -> None:
        """Test APP_ENV values and aliases."""
        monkeypatch.setenv("APP_ENV", value)
        assert get_environment() == expected


class TestAppConfig:
    """Test AppConfig class."""

    def test_app_config_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test AppConfig has correct code defaults."""
        monkeypatch.delenv("APP_LOG_LEVEL", raising=False)
        monkeypatch.delenv("APP_DEBUG", raising=False)
        monkeypatch.setenv("APP_ENV", "test")
        config = AppConfig()
        assert config.environment == Environment.TEST
        assert config.debug is False
        assert config.project_name == "Chorus Orchestrator"
        assert config.log_level == "INFO"
        assert config.log_format == "json"
        assert config.default_batch_providers == ["claude", "gemini", "chatgpt"]
        assert config.default_concierge_provider == "gemini"
        assert config.provider_timeout_seconds == 180.0
        assert config.stream_append_prefix_ratio == 0.7
        assert config.stream_regression_max_chars == 200
        assert config.inflight_stale_after_seconds == 600.0

    def test_app_config_from_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test AppConfig reads CHORUS_-prefixed and APP_ aliased variables."""
        monkeypatch.setenv("APP_DEBUG", "1")
        monkeypatch.setenv("APP_LOG_LEVEL", "debug")
        monkeypatch.setenv("CHORUS_DEFAULT_CONCIERGE_PROVIDER", "claude")
        monkeypatch.setenv("CHORUS_PROVIDER_TIMEOUT_SECONDS", "30")
        monkeypatch.setenv("CHORUS_DEFAULT_BATCH_PROVIDERS", '["gemini", "chatgpt"]')

        config = AppConfig()

        assert config.debug is True
        assert config.log_level == "DEBUG"
        assert config.default_concierge_provider == "claude"
        assert config.provider_timeout_seconds == 30.0
        assert config.default_batch_providers == ["gemini", "chatgpt"]

    def test_provider_list_accepts_csv(self) -> None:
        """Provider lists given as CSV are split, lowercased, and deduplicated."""
        config = AppConfig(default_batch_providers="Claude, gemini,,claude")
        assert config.default_batch_providers == ["claude", "gemini"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"stream_append_prefix_ratio": 1.5},
            {"stream_regression_max_ratio": -0.1},
            {"provider_timeout_seconds": 0},
            {"stream_warn_window_seconds": -1},
        ],
    )
    def test_invalid_tuning_values(self, overrides: dict) -> None:
        """Out-of-range tuning values are rejected."""
        with pytest.raises(ValidationError):
            AppConfig(**overrides)

    def test_app_config_log_level_validation(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test log level validation."""
        monkeypatch.setenv("APP_LOG_LEVEL", "INVALID")
        with pytest.raises(ValidationError):
            AppConfig()

    def test_app_config_log_format_validation(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test log format validation."""
        monkeypatch.setenv("APP_LOG_FORMAT", "xml")
        with pytest.raises(ValidationError):
            AppConfig()

    def test_app_config_path_resolution(self) -> None:
        """Test that relative paths are resolved to absolute."""
        config = AppConfig(log_dir="telemetry/logs")
        assert config.log_dir.is_absolute()
        assert config.log_dir.parts[-2:] == ("telemetry", "logs")


class TestBootstrap:
    """Pre-settings helpers used by the logger."""

    def test_log_level_falls_back_on_invalid(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("APP_LOG_LEVEL", "chatty")
        assert get_bootstrap_log_level() == "INFO"
        monkeypatch.setenv("APP_LOG_LEVEL", "warning")
        assert get_bootstrap_log_level() == "WARNING"

    def test_log_dir_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("CHORUS_LOG_DIR", str(tmp_path / "logs"))
        assert get_bootstrap_log_dir() == (tmp_path / "logs").resolve()


class TestSingleton:
    """Test singleton pattern."""

    def test_get_settings_returns_singleton(self) -> None:
        """Test that get_settings returns the same instance."""
        assert get_settings() is get_settings()

    def test_settings_module_export(self) -> None:
        """Test that settings is exported from module."""
        assert isinstance(settings, AppConfig)

    def test_reset_singleton_reloads(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A cleared singleton is rebuilt from the environment."""
        monkeypatch.setattr(settings_module, "_settings", None)
        monkeypatch.setenv("CHORUS_DEFAULT_CONCIERGE_PROVIDER", "chatgpt")
        assert get_settings().default_concierge_provider == "chatgpt"


class TestEnvFileLoading:
    """Test .env file loading."""

    def test_load_env_files_priority(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test .env file loading priority order."""
        (tmp_path / ".env").write_text("CHORUS_TEST_VAR=base\nCHORUS_BASE_ONLY=yes\n")
        (tmp_path / ".env.local").write_text("CHORUS_TEST_VAR=local\n")
        (tmp_path / ".env.development").write_text("CHORUS_TEST_VAR=development\n")
        (tmp_path / ".env.development.local").write_text("CHORUS_TEST_VAR=development_local\n")
        monkeypatch.setenv("APP_ENV", "development")
        monkeypatch.delenv("CHORUS_TEST_VAR", raising=False)
        monkeypatch.delenv("CHORUS_BASE_ONLY", raising=False)

        try:
            loaded = load_env_files(tmp_path)

            assert os.getenv("CHORUS_TEST_VAR") == "development_local"
            assert os.getenv("CHORUS_BASE_ONLY") == "yes"
            assert loaded[0] == ".env.development.local"
            assert len(loaded) == 4
        finally:
            os.environ.pop("CHORUS_TEST_VAR", None)
            os.environ.pop("CHORUS_BASE_ONLY", None)

    def test_explicit_env_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Variables already in the environment are not overridden."""
        (tmp_path / ".env").write_text("CHORUS_TEST_VAR=from_file\n")
        monkeypatch.setenv("CHORUS_TEST_VAR", "explicit")

        load_env_files(tmp_path)

        assert os.getenv("CHORUS_TEST_VAR") == "explicit"

    def test_no_files(self, tmp_path: Path) -> None:
        assert load_env_files(tmp_path) == []

    def test_candidates_most_specific_first(self, tmp_path: Path) -> None:
        """The environment-local file is tried first and the base file last."""
        names = [p.name for p in env_file_candidates(tmp_path, Environment.STAGING)]
        assert names == [".env.staging.local", ".env.staging", ".env.local", ".env"]


class TestLoadAppConfig:
    """Test load_app_config function."""

    def test_load_app_config_creates_config(self) -> None:
        """Test that load_app_config creates a valid config."""
        config = load_app_config()
        assert isinstance(config, AppConfig)
        assert config.log_level in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
