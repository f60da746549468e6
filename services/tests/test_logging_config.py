"""Tests for structlog configuration."""

import json
import logging

import pytest

from forgestatus.logging_config import (
    add_app_context,
    configure_logging,
    reorder_keys,
    utc_timestamper,
)


@pytest.fixture
def restore_logging():
    yield
    configure_logging(json_logs=False, log_level="DEBUG")


def _record(message: str, level: int = logging.WARNING) -> logging.LogRecord:
    return logging.LogRecord("forgestatus.test", level, __file__, 1, message, None, None)


class TestProcessors:
    def test_app_context(self):
        assert add_app_context(None, "info", {"event": "x"})["app"] == "forgestatus"

    def test_utc_timestamp_format(self):
        timestamp = utc_timestamper(None, "info", {})["timestamp"]
        assert timestamp.endswith("Z")
        assert len(timestamp) == len("2024-05-01T10:00:00.000Z")

    def test_level_and_timestamp_come_first(self):
        event = {"event": "x", "repository": "api", "timestamp": "t", "level": "info"}
        assert list(reorder_keys(None, "info", event)) == [
            "level",
            "timestamp",
            "event",
            "repository",
        ]


class TestConfigureLogging:
    def test_json_lines(self, restore_logging):
        configure_logging(json_logs=True, log_level="INFO")
        formatter = logging.getLogger().handlers[0].formatter

        line = json.loads(formatter.format(_record("Forge rate limited")))

        assert list(line)[:2] == ["level", "timestamp"]
        assert line["event"] == "Forge rate limited"
        assert line["level"] == "warning"
        assert line["app"] == "forgestatus"

    def test_single_root_handler(self, restore_logging):
        configure_logging(json_logs=True)
        configure_logging(json_logs=True)

        assert len(logging.getLogger().handlers) == 1

    def test_level_and_quiet_libraries(self, restore_logging):
        configure_logging(json_logs=False, log_level="debug")

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, restore_logging):
        configure_logging(json_logs=False, log_level="chatty")

        assert logging.getLogger().level == logging.INFO
