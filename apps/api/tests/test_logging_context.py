from __future__ import annotations

import json
import logging

from leadboard.context import get_log_context, reset_correlation_id, set_correlation_id
from leadboard.logging import CorrelationIdFilter, JsonLogFormatter


def _record(message: str, **extra: object) -> logging.LogRecord:
    record = logging.makeLogRecord({"name": "leadboard.test", "levelname": "INFO", "levelno": logging.INFO, "msg": message})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_filter_stamps_current_correlation_id() -> None:
    token = set_correlation_id("corr-log-1")
    try:
        record = _record("pipeline.move")
        assert CorrelationIdFilter().filter(record) is True
        assert record.correlation_id == "corr-log-1"
        assert get_log_context() == {"correlation_id": "corr-log-1"}
    finally:
        reset_correlation_id(token)

    assert get_log_context() == {"correlation_id": None}


def test_filter_keeps_explicit_correlation_id() -> None:
    token = set_correlation_id("ambient")
    try:
        record = _record("webhook.lead_received", correlation_id="explicit")
        CorrelationIdFilter().filter(record)
        assert record.correlation_id == "explicit"
    finally:
        reset_correlation_id(token)


def test_json_formatter_keeps_known_fields_only() -> None:
    record = _record(
        "pipeline.move",
        correlation_id="corr-log-2",
        lead_id="lead-1",
        to_status="won",
        password="hunter2",
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "leadboard.test"
    assert payload["msg"] == "pipeline.move"
    assert payload["correlation_id"] == "corr-log-2"
    assert payload["fields"] == {"lead_id": "lead-1", "to_status": "won"}


def test_json_formatter_truncates_long_errors() -> None:
    record = _record("webhook.lead_save_failed", error="x" * 900)

    payload = json.loads(JsonLogFormatter().format(record))

    assert len(payload["fields"]["error"]) == 500
