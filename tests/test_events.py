from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from bridgectl.core.errors import ReconnectFailedError, TransportConnectError
from bridgectl.core.events import (
    DEBUG_ENV,
    EVENT_LOGGER_NAME,
    JsonLineFormatter,
    LoggingEventSink,
    configure_logging,
    debug_enabled,
    error_fields,
)
from bridgectl.core.model import AdvancedConfig, RoutingConfig


def test_sink_logs_event_with_fields(caplog: pytest.LogCaptureFixture) -> None:
    sink = LoggingEventSink()
    with caplog.at_level(logging.INFO, logger=EVENT_LOGGER_NAME):
        sink.emit("target_changed", target="desktop", previous="cli", reason="auto", trigger=None)

    record = caplog.records[-1]
    assert record.name == EVENT_LOGGER_NAME
    assert record.event == "target_changed"
    assert record.fields["target"] == "desktop"
    assert record.getMessage() == "target_changed target=desktop previous=cli reason=auto trigger=null"


def test_sink_skips_disabled_levels(caplog: pytest.LogCaptureFixture) -> None:
    sink = LoggingEventSink()
    with caplog.at_level(logging.INFO, logger=EVENT_LOGGER_NAME):
        sink.emit("message_forwarded", logging.DEBUG, direction="extension_to_backend")
    assert caplog.records == []


def test_error_fields_carry_code_and_recoverability() -> None:
    assert error_fields(TransportConnectError("refused")) == {
        "code": "I001",
        "recoverable": True,
        "error_type": "TransportConnectError",
        "error": "refused",
    }
    assert error_fields(ReconnectFailedError("gave up"))["recoverable"] is False
    assert error_fields(ValueError("x"))["code"] is None


def test_json_line_formatter_includes_event_data() -> None:
    record = logging.LogRecord(EVENT_LOGGER_NAME, logging.WARNING, __file__, 1, "frame_dropped", None, None)
    record.event = "frame_dropped"
    record.fields = {"reason": "no active connection", "id": 7}

    doc = json.loads(JsonLineFormatter().format(record))

    assert doc["level"] == "warning"
    assert doc["event"] == "frame_dropped"
    assert doc["data"] == {"reason": "no active connection", "id": 7}
    assert doc["timestamp"].endswith("+00:00")


def test_debug_flag_from_env_or_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(DEBUG_ENV, raising=False)
    assert not debug_enabled()
    assert debug_enabled(RoutingConfig(advanced=AdvancedConfig(debug=True)))

    monkeypatch.setenv(DEBUG_ENV, "true")
    assert debug_enabled()


def test_file_logging_writes_json_lines(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "bridge.log"
    handler = configure_logging(logging.INFO, log_file)
    try:
        LoggingEventSink().emit("bridge_started", target="cli")
        handler.flush()
    finally:
        logging.getLogger("bridgectl").removeHandler(handler)
        handler.close()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    doc = json.loads(lines[-1])
    assert doc["event"] == "bridge_started"
    assert doc["data"] == {"target": "cli"}
