"""
Tests for structured logging setup.

Tests cover:
- JSON output renders each event once, with bound fields as top-level keys
- Standard library records share the same JSON format
- Console output renders each event once
"""

import io
import json
import logging

import pytest
import structlog

from smearscan.config.logging_config import configure_logging, get_logger


@pytest.fixture
def log_stream():
    """Capture the root handler's output and restore logging afterwards."""
    root_logger = logging.getLogger()
    saved_handlers = root_logger.handlers[:]
    saved_level = root_logger.level
    saved_config = structlog.get_config()

    stream = io.StringIO()

    def configure(settings):
        configure_logging(settings)
        root_logger.handlers[0].setStream(stream)
        return stream

    yield configure

    root_logger.handlers = saved_handlers
    root_logger.setLevel(saved_level)
    structlog.configure(**saved_config)


class TestJsonLogging:
    def test_event_fields_are_top_level(self, settings, log_stream):
        stream = log_stream(settings.model_copy(update={"log_format": "json"}))

        get_logger("smearscan.tests").info("Smear analysis complete", verified=True, confidence=92)

        lines = stream.getvalue().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["event"] == "Smear analysis complete"
        assert record["verified"] is True
        assert record["confidence"] == 92
        assert record["level"] == "info"
        assert record["logger"] == "smearscan.tests"
        assert "_record" not in record

    def test_stdlib_records_use_same_format(self, settings, log_stream):
        stream = log_stream(settings.model_copy(update={"log_format": "json"}))

        logging.getLogger("uvicorn.error").warning("Port %s busy", 8000)

        record = json.loads(stream.getvalue().splitlines()[0])
        assert record["event"] == "Port 8000 busy"
        assert record["level"] == "warning"

    def test_level_from_settings(self, settings, log_stream):
        stream = log_stream(settings.model_copy(update={"log_format": "json", "log_level": "WARNING"}))

        get_logger("smearscan.tests").info("Classifier preloaded")

        assert stream.getvalue() == ""


class TestConsoleLogging:
    def test_event_rendered_once(self, settings, log_stream):
        stream = log_stream(settings.model_copy(update={"log_format": "console"}))

        get_logger("smearscan.tests").info("Smear analysis complete", verified=True)

        output = stream.getvalue()
        assert output.count("Smear analysis complete") == 1
        assert output.count("info") == 1
        assert "verified" in output
