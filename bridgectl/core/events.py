"""Structured events on top of stdlib logging.

The proxy's stdout carries frames, so every handler installed here writes to
stderr or to a file.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from bridgectl.core.model import RoutingConfig

EVENT_LOGGER_NAME = "bridgectl.events"
DEBUG_ENV = "BRIDGECTL_DEBUG"

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class EventSink(Protocol):
    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None: ...


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value if value and " " not in value else json.dumps(value)
    return json.dumps(value, default=str)


class LoggingEventSink:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(EVENT_LOGGER_NAME)

    def emit(self, event: str, level: int = logging.INFO, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        rendered = " ".join(f"{key}={_render(value)}" for key, value in fields.items())
        message = f"{event} {rendered}" if rendered else event
        self.logger.log(level, message, extra={"event": event, "fields": fields})


def error_fields(error: BaseException) -> dict[str, Any]:
    return {
        "code": getattr(error, "code", None),
        "recoverable": getattr(error, "recoverable", False),
        "error_type": type(error).__name__,
        "error": str(error),
    }


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        doc: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            doc["event"] = event
        fields = getattr(record, "fields", None)
        if fields:
            doc["data"] = fields
        if record.exc_info:
            doc["exception"] = self.formatException(record.exc_info)
        return json.dumps(doc, ensure_ascii=False, default=str)


def debug_enabled(config: RoutingConfig | None = None) -> bool:
    if os.environ.get(DEBUG_ENV, "").strip().lower() in ("1", "true", "yes"):
        return True
    return bool(config is not None and config.advanced.debug)


def configure_logging(
    level: int = logging.INFO,
    log_file: Path | None = None,
    *,
    json_lines: bool = False,
) -> logging.Handler:
    """Attach one handler to the ``bridgectl`` logger. File output is always JSON lines."""
    handler: logging.Handler
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(JsonLineFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonLineFormatter() if json_lines else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger("bridgectl")
    root.setLevel(level)
    root.addHandler(handler)
    return handler
