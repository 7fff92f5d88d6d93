"""
Tests for the logging module.

This test module validates:
- JSON-formatted structured logging output
- Logger configuration and setup
- Extra fields in log entries
"""

from __future__ import annotations

import json
import logging
import sys
from io import StringIO

import pytest

from luffy_ota.config import LoggingConfig
from luffy_ota.logging import JSONFormatter, get_logger, setup_logging

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> None:
    """Clean up loggers after each test (autouse fixture)."""
    yield
    logger = logging.getLogger("luffy_ota")
    logger.handlers.clear()
    logger.propagate = True


def _record(msg: str = "Test message", level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="luffy_ota.test",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_format_basic_log_record(self) -> None:
        """Test formatting a basic log record as JSON."""
        parsed = json.loads(JSONFormatter().format(_record()))

        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "luffy_ota.test"
        assert parsed["message"] == "Test message"
        assert "T" in parsed["timestamp"]

    def test_format_with_extra_fields(self) -> None:
        """Test extra fields are added to the entry."""
        record = _record("Installed package")
        record.package = "luffy-gateway"
        record.version = "1.2.0"

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["package"] == "luffy-gateway"
        assert parsed["version"] == "1.2.0"

    def test_format_skips_none_extras(self) -> None:
        """Test None-valued extra fields are omitted."""
        record = _record()
        record.path = None

        parsed = json.loads(JSONFormatter().format(record))

        assert "path" not in parsed

    def test_format_with_exception(self) -> None:
        """Test formatting with exception info."""
        try:
            raise ValueError("dpkg exploded")
        except ValueError:
            exc_info = sys.exc_info()

        record = _record("Install failed", logging.ERROR)
        record.exc_info = exc_info

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["level"] == "ERROR"
        assert "ValueError: dpkg exploded" in parsed["exception"]


# =============================================================================
# Tests for setup_logging / get_logger
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_returns_root_logger(self) -> None:
        """Test setup_logging returns the package root logger."""
        logger = setup_logging(level="DEBUG")
        assert logger.name == "luffy_ota"
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1

    def test_setup_logging_json_handler(self) -> None:
        """Test JSON formatting is the default."""
        logger = setup_logging()
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_setup_logging_from_config(self) -> None:
        """Test config overrides the keyword arguments."""
        config = LoggingConfig(level="warning", json_format=False)
        logger = setup_logging(config, level="DEBUG")

        assert logger.level == logging.WARNING
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_setup_logging_without_stdout(self) -> None:
        """Test no handler is added when stdout logging is off."""
        logger = setup_logging(log_to_stdout=False)
        assert logger.handlers == []

    def test_reconfigure_does_not_duplicate_handlers(self) -> None:
        """Test repeated setup keeps a single handler."""
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1

    def test_child_logger_output(self) -> None:
        """Test module loggers write through the root handler."""
        root = setup_logging()
        stream = StringIO()
        root.handlers[0].stream = stream

        get_logger("luffy_ota.ota.installer").info(
            "Installed", extra={"package": "luffy-media"}
        )

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["logger"] == "luffy_ota.ota.installer"
        assert parsed["package"] == "luffy-media"


class TestGetLogger:
    """Tests for get_logger function."""

    def test_prefix_added(self) -> None:
        """Test names outside the package get the package prefix."""
        assert get_logger("custom").name == "luffy_ota.custom"

    def test_prefix_not_duplicated(self) -> None:
        """Test package names are left alone."""
        assert get_logger("luffy_ota.ota.manager").name == "luffy_ota.ota.manager"
