import json
import logging
import sys

import pytest

from services.shared.logging import (
    JsonFormatter,
    configure_logging,
    log_context,
    log_event,
    log_exception,
    trace_id_var,
)

pytestmark = [pytest.mark.unit]


def _record(msg="hello", level=logging.INFO, **extra):
    record = logging.LogRecord("evaluator", level, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_one_json_object():
    line = JsonFormatter("portal").format(_record(tenant_id=3, alert_id=501))
    entry = json.loads(line)
    assert entry["service"] == "portal"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "evaluator"
    assert entry["msg"] == "hello"
    assert entry["tenant_id"] == 3
    assert entry["alert_id"] == 501
    assert entry["ts"].endswith("Z")
    assert "pathname" not in entry


def test_formatter_includes_trace_id():
    token = trace_id_var.set("trace-123")
    try:
        entry = json.loads(JsonFormatter("portal").format(_record()))
    finally:
        trace_id_var.reset(token)
    assert entry["trace_id"] == "trace-123"


def test_formatter_includes_exception_text():
    try:
        raise ValueError("bad threshold")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    entry = json.loads(JsonFormatter("portal").format(record))
    assert "ValueError: bad threshold" in entry["exc"]


def test_formatter_stringifies_unserialisable_values():
    entry = json.loads(JsonFormatter("portal").format(_record(when=object())))
    assert entry["when"].startswith("<object object")


def test_bound_context_is_merged_and_nested():
    formatter = JsonFormatter("portal")
    with log_context(tenant_id=3, device_id=100):
        with log_context(device_id=101, source="api"):
            inner = json.loads(formatter.format(_record(variable="W")))
        outer = json.loads(formatter.format(_record()))
    after = json.loads(formatter.format(_record()))
    assert (inner["tenant_id"], inner["device_id"], inner["source"], inner["variable"]) == (3, 101, "api", "W")
    assert outer["device_id"] == 100
    assert "source" not in outer
    assert "tenant_id" not in after


def test_call_site_extra_wins_over_bound_context():
    with log_context(alert_id=1):
        entry = json.loads(JsonFormatter("portal").format(_record(alert_id=2)))
    assert entry["alert_id"] == 2


def test_log_event_attaches_context(caplog):
    logger = logging.getLogger("test.log_event")
    with caplog.at_level(logging.INFO, logger="test.log_event"):
        log_event(logger, "alert opened", severity="critical", alert_id=9)
        log_event(logger, "slow", level="WARNING", elapsed_ms=1200)
    first, second = caplog.records
    assert first.severity == "critical"
    assert first.alert_id == 9
    assert second.levelno == logging.WARNING


def test_log_exception_records_type(caplog):
    logger = logging.getLogger("test.log_exception")
    with caplog.at_level(logging.ERROR, logger="test.log_exception"):
        log_exception(logger, "delivery failed", RuntimeError("timeout"), {"channel": "sms"})
    [record] = caplog.records
    assert record.error_type == "RuntimeError"
    assert record.error == "timeout"
    assert record.channel == "sms"


def test_configure_logging_installs_json_handler(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("health-monitor")
        [handler] = root.handlers
        assert isinstance(handler.formatter, JsonFormatter)
        assert handler.formatter.service == "health-monitor"
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
