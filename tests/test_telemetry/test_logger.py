"""Tests for structured logging configuration."""

import json
import logging
import pathlib

import pytest
import structlog

import chorus.telemetry.logger as logger_module
from chorus.telemetry import PIPELINE_STARTED
from chorus.telemetry.logger import configure_logging, get_logger


def _last_entry(log_dir: pathlib.Path) -> dict:
    with open(log_dir / "current.jsonl", encoding="utf-8") as f:
        lines = f.readlines()
    assert lines
    return json.loads(lines[-1])


@pytest.fixture
def log_dir(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> pathlib.Path:
    """Reconfigure logging to write into a temporary directory."""
    target = tmp_path / "logs"
    monkeypatch.setattr(logger_module, "_get_log_dir", lambda: target)
    monkeypatch.setattr(logger_module, "_get_log_level", lambda: "DEBUG")
    structlog.reset_defaults()
    logging.root.handlers.clear()
    configure_logging()
    return target


class TestLoggerConfiguration:
    """Test logger configuration and setup."""

    def test_get_logger_returns_bound_logger(self) -> None:
        """Test that get_logger returns a logger that can be used."""
        log = get_logger(__name__)
        assert hasattr(log, "info")
        assert hasattr(log, "error")
        assert hasattr(log, "warning")

    def test_get_logger_configures_on_first_call(self, log_dir: pathlib.Path) -> None:
        """Test that get_logger configures logging when nothing is configured."""
        structlog.reset_defaults()

        get_logger("chorus.test_module")

        assert structlog.is_configured()

    def test_logger_emits_structured_logs(self, log_dir: pathlib.Path) -> None:
        """Test that pipeline events land in the JSONL file with their fields."""
        log = get_logger("chorus.orchestrator.orchestrator")
        log.info(PIPELINE_STARTED, session_id="s-1", providers=["claude", "gemini"], trace_id="trace-123")

        entry = _last_entry(log_dir)
        assert entry["event"] == "pipeline_started"
        assert entry["session_id"] == "s-1"
        assert entry["providers"] == ["claude", "gemini"]
        assert entry["trace_id"] == "trace-123"
        assert entry["level"] == "info"

    def test_logger_includes_timestamp(self, log_dir: pathlib.Path) -> None:
        """Test that log entries include a UTC timestamp."""
        get_logger("chorus").info("test_event")

        timestamp = _last_entry(log_dir)["timestamp"]
        assert "T" in timestamp
        assert timestamp.endswith("Z") or timestamp.endswith("+00:00")

    @pytest.mark.parametrize(
        ("name", "component"),
        [
            ("chorus.orchestrator.streaming", "streaming"),
            ("chorus.persistence.continuity", "continuity"),
            ("chorus", "chorus"),
        ],
    )
    def test_logger_component_is_last_module_segment(
        self, log_dir: pathlib.Path, name: str, component: str
    ) -> None:
        """Test that the component is derived from the module name."""
        get_logger(name).info("test_event")
        assert _last_entry(log_dir)["component"] == component

    def test_debug_stays_out_of_file(self, log_dir: pathlib.Path) -> None:
        """The file handler keeps INFO and above only."""
        log = get_logger("chorus.artifact.parser")
        log.info("kept_event")
        log.debug("dropped_event")
        assert _last_entry(log_dir)["event"] == "kept_event"

    def test_stdlib_records_are_formatted(self, log_dir: pathlib.Path) -> None:
        """Third-party stdlib loggers go through the same JSON formatter."""
        logging.getLogger("asyncio.events").warning("slow callback")

        entry = _last_entry(log_dir)
        assert entry["event"] == "slow callback"
        assert entry["component"] == "events"

    def test_logger_creates_log_directory(self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that logger creates log directory if it doesn't exist."""
        target = tmp_path / "new_logs" / "subdir"
        monkeypatch.setattr(logger_module, "_get_log_dir", lambda: target)
        structlog.reset_defaults()
        logging.root.handlers.clear()
        assert not target.exists()

        configure_logging()

        assert target.exists()
