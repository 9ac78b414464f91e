"""Unit tests for the logging configuration module."""

import logging
from unittest.mock import MagicMock, patch

import pytest
import structlog

from pushdeploy.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset root logger and structlog state around each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    logging.root.setLevel(logging.WARNING)
    yield
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)
    structlog.reset_defaults()


def _settings(level: str, development: bool = False) -> MagicMock:
    settings = MagicMock()
    settings.log_level = level
    settings.is_development = development
    return settings


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_basic_config_uses_settings_level(self):
        with patch("pushdeploy.logging.logging.basicConfig") as mock_basic:
            setup_logging(_settings("DEBUG", development=True))

        assert mock_basic.call_args.kwargs["level"] == logging.DEBUG
        assert mock_basic.call_args.kwargs["format"] == "%(message)s"

    def test_invalid_level_defaults_to_info(self):
        with patch("pushdeploy.logging.logging.basicConfig") as mock_basic:
            setup_logging(_settings("NONEXISTENT"))

        assert mock_basic.call_args.kwargs["level"] == logging.INFO

    def test_without_settings_defaults_to_info(self):
        with patch("pushdeploy.logging.logging.basicConfig") as mock_basic:
            setup_logging()

        assert mock_basic.call_args.kwargs["level"] == logging.INFO

    def test_quiets_http_libraries(self):
        setup_logging(_settings("DEBUG"))
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_json_renderer_in_production(self):
        with patch("pushdeploy.logging.structlog.configure") as mock_configure:
            setup_logging(_settings("INFO", development=False))

        processors = mock_configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_renderer_in_development(self):
        with patch("pushdeploy.logging.structlog.configure") as mock_configure:
            setup_logging(_settings("INFO", development=True))

        processors = mock_configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


class TestGetLogger:
    def test_returns_usable_logger(self):
        log = get_logger("pushdeploy.test")
        assert hasattr(log, "info")
        assert hasattr(log, "warning")
