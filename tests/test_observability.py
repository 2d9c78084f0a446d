"""Tests for observability utilities."""

import json
import logging

from rainbowpay.observability.correlation import (
    generate_correlation_id,
    get_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from rainbowpay.observability.logging import JsonFormatter, get_logger, log_alert
from rainbowpay.observability.redaction import safe_log_context


def _record(msg: str = "hello", **attrs) -> logging.LogRecord:
    record = logging.LogRecord("rainbowpay.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestCorrelation:
    def test_set_and_reset(self):
        before = get_correlation_id()
        token = set_correlation_id("abc")
        try:
            assert get_correlation_id() == "abc"
        finally:
            reset_correlation_id(token)
        assert get_correlation_id() == before

    def test_generated_ids_are_unique(self):
        assert generate_correlation_id() != generate_correlation_id()


class TestJsonFormatter:
    def test_basic_fields(self):
        token = set_correlation_id("")
        try:
            out = json.loads(JsonFormatter().format(_record()))
        finally:
            reset_correlation_id(token)
        assert out["level"] == "INFO"
        assert out["logger"] == "rainbowpay.test"
        assert out["message"] == "hello"
        assert "correlationId" not in out
        assert "alert" not in out

    def test_includes_correlation_id(self):
        token = set_correlation_id("corr-9")
        try:
            out = json.loads(JsonFormatter().format(_record()))
        finally:
            reset_correlation_id(token)
        assert out["correlationId"] == "corr-9"

    def test_merges_extra_fields(self):
        record = _record(extra_fields=safe_log_context(booking_id=42, status="paid"))
        out = json.loads(JsonFormatter().format(record))
        assert out["booking_id"] == "42"
        assert out["status"] == "paid"

    def test_alert_flag(self):
        out = json.loads(JsonFormatter().format(_record(alert=True)))
        assert out["alert"] is True


class TestGetLogger:
    def test_handler_attached_once(self):
        first = get_logger("rainbowpay.test.once")
        second = get_logger("rainbowpay.test.once")
        assert first is second
        assert len(first.handlers) == 1
        assert first.propagate is False


class TestLogAlert:
    def test_emits_error_with_alert(self):
        logger = logging.getLogger("rainbowpay.test.alert")
        records: list[logging.LogRecord] = []

        class _Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = _Capture()
        logger.addHandler(handler)
        try:
            log_alert(logger, "handler failed", {"booking_id": "1"}, exc_info=False)
        finally:
            logger.removeHandler(handler)

        (record,) = records
        assert record.levelno == logging.ERROR
        assert record.alert is True
        assert record.extra_fields == {"booking_id": "1"}
