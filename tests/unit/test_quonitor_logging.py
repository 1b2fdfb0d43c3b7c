"""Unit tests for the logging configuration module."""

import json
import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import MagicMock, patch

import pytest
import structlog

from quonitor.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state before and after each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    logging.root.setLevel(logging.WARNING)
    yield
    for handler in logging.root.handlers:
        if handler not in original_handlers:
            handler.close()
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)
    structlog.reset_defaults()


def _settings(level: str = "INFO", *, to_file: bool = False, path: str = "", dev: bool = False):
    mock_settings = MagicMock()
    mock_settings.log_level = level
    mock_settings.log_to_file = to_file
    mock_settings.log_file_path = path
    mock_settings.is_development = dev
    return mock_settings


def _ours():
    return [
        h
        for h in logging.root.handlers
        if isinstance(h.formatter, structlog.stdlib.ProcessorFormatter)
    ]


def _read_json_lines(path) -> list[dict]:
    for handler in logging.root.handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_root_level_from_settings(self):
        with patch("quonitor.logging.get_settings", return_value=_settings("DEBUG")):
            setup_logging()

        assert logging.root.level == logging.DEBUG

    def test_invalid_level_defaults_to_info(self):
        with patch("quonitor.logging.get_settings", return_value=_settings("NONEXISTENT")):
            setup_logging()

        assert logging.root.level == logging.INFO

    def test_console_handler_has_structlog_formatter(self):
        """The console handler renders through a ProcessorFormatter."""
        with patch("quonitor.logging.get_settings", return_value=_settings(dev=True)):
            setup_logging()

        handlers = _ours()
        assert len(handlers) == 1
        assert type(handlers[0]) is logging.StreamHandler

    def test_rotating_file_handler_when_enabled(self, tmp_path):
        """A RotatingFileHandler is added and its directory created."""
        log_file = tmp_path / "nested" / "quonitor.log"

        with patch(
            "quonitor.logging.get_settings",
            return_value=_settings(to_file=True, path=str(log_file)),
        ):
            setup_logging()

        file_handlers = [h for h in _ours() if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 10 * 1024 * 1024
        assert file_handlers[0].backupCount == 5
        assert log_file.parent.exists()

    def test_app_events_reach_log_file(self, tmp_path):
        """structlog events are written to the rotating file as JSON."""
        log_file = tmp_path / "quonitor.log"
        with patch(
            "quonitor.logging.get_settings",
            return_value=_settings(to_file=True, path=str(log_file), dev=True),
        ):
            setup_logging()

        get_logger("quonitor.test").info("file_event_marker", account_id="acct-1")

        entries = [e for e in _read_json_lines(log_file) if e["event"] == "file_event_marker"]
        assert len(entries) == 1
        assert entries[0]["account_id"] == "acct-1"
        assert entries[0]["level"] == "info"
        assert entries[0]["logger"] == "quonitor.test"
        assert "timestamp" in entries[0]

    def test_debug_events_filtered_at_info(self, tmp_path):
        log_file = tmp_path / "quonitor.log"
        with patch(
            "quonitor.logging.get_settings",
            return_value=_settings("INFO", to_file=True, path=str(log_file)),
        ):
            setup_logging()

        log = get_logger("quonitor.test")
        log.debug("hidden_event")
        log.warning("shown_event")

        events = [e["event"] for e in _read_json_lines(log_file)]
        assert "shown_event" in events
        assert "hidden_event" not in events

    def test_stdlib_records_share_the_format(self, tmp_path):
        """Third-party stdlib loggers are rendered as JSON in the file too."""
        log_file = tmp_path / "quonitor.log"
        with patch(
            "quonitor.logging.get_settings",
            return_value=_settings(to_file=True, path=str(log_file)),
        ):
            setup_logging()

        logging.getLogger("some.library").warning("library warning")

        entries = [e for e in _read_json_lines(log_file) if e["event"] == "library warning"]
        assert len(entries) == 1
        assert entries[0]["logger"] == "some.library"

    def test_repeated_setup_replaces_handlers(self):
        with patch("quonitor.logging.get_settings", return_value=_settings()):
            setup_logging()
            setup_logging()

        assert len(_ours()) == 1

    def test_noisy_loggers_lowered(self):
        with patch("quonitor.logging.get_settings", return_value=_settings("DEBUG")):
            setup_logging()

        for name in ("httpx", "httpcore", "asyncpg"):
            assert logging.getLogger(name).level == logging.WARNING


class TestGetLogger:
    """Tests for get_logger."""

    def test_returns_bindable_logger(self):
        log = get_logger("quonitor.test")
        assert hasattr(log, "info")
        assert hasattr(log, "bind")
