"""Log formatting and root-logger configuration.

Two output formats are supported:

- ``json`` — one JSON object per line (NDJSON) for container log
  drivers.  Each line carries ``service`` and ``version`` so entries
  from several bridges can be told apart after aggregation.
- ``text`` — ``asctime [LEVEL] logger: message`` for terminals.

Records about a particular device or subscription pass the ids as
logging extras::

    logger.error("...", extra={"plant_id": plant_id, "module_id": module_id})

The JSON formatter lifts them into top-level ``plant_id`` / ``module_id``
/ ``subscription_id`` keys so an aggregator can filter on them; the text
formatter appends them as ``[plant_id=... module_id=...]``.  Built-in
:class:`~logging.LogRecord` attributes such as ``module`` cannot be
used as extras.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from smarther_bridge._settings import LoggingSettings

_TEN_MB = 10 * 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

#: Logging extras that identify what a record is about, in output order.
CONTEXT_FIELDS: tuple[str, ...] = ("plant_id", "module_id", "subscription_id")

# Chatty third-party loggers that only matter when debugging transport.
_QUIET_LOGGERS = ("aiohttp.access",)


def record_context(record: logging.LogRecord) -> dict[str, str]:
    """Return the device/subscription ids attached to *record*, if any."""
    context: dict[str, str] = {}
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            context[name] = str(value)
    return context


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects.

    Fields: ``timestamp`` (ISO 8601, UTC), ``level``, ``logger``,
    ``message``, ``service``, then ``version`` when set, any of
    :data:`CONTEXT_FIELDS` present on the record, and ``exception``
    when the record carries one.
    """

    def __init__(self, *, service: str = "", version: str = "") -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }
        if self._version:
            entry["version"] = self._version
        entry.update(record_context(record))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with the record's context ids appended."""

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line
        tags = " ".join(f"{key}={value}" for key, value in context.items())
        head, sep, tail = line.partition("\n")
        return f"{head} [{tags}]{sep}{tail}"


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Point the root logger at stderr (and ``settings.file``, if set).

    Previous root handlers are replaced, so calling this again from the
    CLI or a test never duplicates output.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter: logging.Formatter
    if settings.format == "json":
        formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = TextFormatter()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        handlers.append(
            RotatingFileHandler(
                settings.file,
                maxBytes=_TEN_MB,
                backupCount=settings.backup_count,
            ),
        )
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel(settings.level)
    quiet_level = logging.NOTSET if settings.level == "DEBUG" else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
