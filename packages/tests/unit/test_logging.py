"""Unit tests for smarther_bridge._logging — JSON formatter and config.

Test Techniques Used:
    - Specification-based Testing: JsonFormatter output schema and context ids
    - State Inspection: Root logger handler/level after configure
    - Fixture Isolation: Save/restore root logger state
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from smarther_bridge._logging import JsonFormatter, TextFormatter, configure_logging
from smarther_bridge._settings import LoggingSettings

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    """Save and restore root logger handlers and level."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    access = logging.getLogger("aiohttp.access")
    access_level = access.level
    yield
    for h in root.handlers:
        if h not in original_handlers:
            h.close()
    root.handlers = original_handlers
    root.setLevel(original_level)
    access.setLevel(access_level)


def _record(message: str = "hello", level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="smarther_bridge._token",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )


class TestJsonFormatter:
    """Technique: Specification-based Testing."""

    def test_single_line_with_required_fields(self) -> None:
        line = JsonFormatter(service="smarther-bridge").format(_record())
        assert "\n" not in line
        entry = json.loads(line)
        assert entry["level"] == "INFO"
        assert entry["logger"] == "smarther_bridge._token"
        assert entry["message"] == "hello"
        assert entry["service"] == "smarther-bridge"

    def test_timestamp_is_utc_iso8601(self) -> None:
        record = _record()
        record.created = datetime(2025, 1, 1, 12, 0, tzinfo=UTC).timestamp()
        entry = json.loads(JsonFormatter().format(record))
        assert entry["timestamp"] == "2025-01-01T12:00:00+00:00"

    def test_version_only_when_set(self) -> None:
        assert "version" not in json.loads(JsonFormatter().format(_record()))
        entry = json.loads(JsonFormatter(version="1.2.3").format(_record()))
        assert entry["version"] == "1.2.3"

    def test_exception_stays_on_one_line(self) -> None:
        record = _record(level=logging.ERROR)
        try:
            raise RuntimeError("refresh exploded")
        except RuntimeError:
            record.exc_info = sys.exc_info()

        line = JsonFormatter().format(record)

        assert "\n" not in line
        assert "refresh exploded" in json.loads(line)["exception"]

    def test_context_extras_become_top_level_keys(self) -> None:
        record = _record()
        record.plant_id = "plantA"
        record.module_id = "modA"

        entry = json.loads(JsonFormatter().format(record))

        assert entry["plant_id"] == "plantA"
        assert entry["module_id"] == "modA"
        assert "subscription_id" not in entry

    def test_builtin_module_attribute_not_reported(self) -> None:
        entry = json.loads(JsonFormatter().format(_record()))
        assert "module" not in entry
        assert "module_id" not in entry

    def test_context_through_logger_extra(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = logging.getLogger("smarther_bridge._webhook")
        with caplog.at_level(logging.ERROR, logger="smarther_bridge._webhook"):
            logger.error(
                "unregister failed",
                extra={"plant_id": "p1", "subscription_id": "sub-1"},
            )

        entry = json.loads(JsonFormatter().format(caplog.records[-1]))

        assert (entry["plant_id"], entry["subscription_id"]) == ("p1", "sub-1")


class TestTextFormatter:
    def test_plain_record_unchanged(self) -> None:
        line = TextFormatter().format(_record())
        assert line.endswith("[INFO] smarther_bridge._token: hello")

    def test_context_appended(self) -> None:
        record = _record("set_status failed")
        record.plant_id = "plantA"
        record.module_id = "modA"

        line = TextFormatter().format(record)

        assert line.endswith("set_status failed [plant_id=plantA module_id=modA]")


class TestConfigureLogging:
    """Technique: State Inspection of the root logger."""

    def test_json_format(self) -> None:
        configure_logging(LoggingSettings(format="json"), service="svc")
        (handler,) = logging.getLogger().handlers
        assert isinstance(handler.formatter, JsonFormatter)

    def test_text_format(self) -> None:
        configure_logging(LoggingSettings(format="text"), service="svc")
        (handler,) = logging.getLogger().handlers
        assert isinstance(handler.formatter, TextFormatter)

    def test_level_applied(self) -> None:
        configure_logging(LoggingSettings(level="WARNING"), service="svc")
        assert logging.getLogger().level == logging.WARNING

    def test_repeated_calls_do_not_duplicate(self) -> None:
        configure_logging(LoggingSettings(), service="svc")
        configure_logging(LoggingSettings(), service="svc")
        assert len(logging.getLogger().handlers) == 1

    def test_file_handler_added(self, tmp_path: Path) -> None:
        log_file = tmp_path / "bridge.log"
        configure_logging(
            LoggingSettings(file=str(log_file), backup_count=5, format="json"),
            service="svc",
        )
        handlers = logging.getLogger().handlers
        assert len(handlers) == 2
        file_handler = next(h for h in handlers if isinstance(h, RotatingFileHandler))
        assert file_handler.backupCount == 5

        logging.getLogger("smarther_bridge").info("to file")
        file_handler.flush()
        assert json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])["message"] == (
            "to file"
        )

    def test_access_log_quietened_unless_debug(self) -> None:
        configure_logging(LoggingSettings(level="INFO"), service="svc")
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_access_log_restored_for_debug(self) -> None:
        configure_logging(LoggingSettings(level="INFO"), service="svc")
        configure_logging(LoggingSettings(level="DEBUG"), service="svc")
        assert logging.getLogger("aiohttp.access").level == logging.NOTSET
