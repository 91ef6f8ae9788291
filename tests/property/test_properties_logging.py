"""Tests for structured log formatting and error reporting"""
import json
import logging

import pytest

from opportunity_engine.db.models.error_log import ErrorLog
from opportunity_engine.utils.error_handler import ErrorHandler
from opportunity_engine.utils.logging_config import StructuredFormatter, setup_logging


def _record(msg="cycle complete", exc_info=None, **extra):
    record = logging.LogRecord("opportunity_engine.test", logging.INFO, __file__, 1, msg, None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_fields_are_included_when_set():
    line = StructuredFormatter().format(_record(symbol="AAPL", component="Pipeline", rule_id=None))
    data = json.loads(line)

    assert data["message"] == "cycle complete"
    assert data["level"] == "INFO"
    assert data["symbol"] == "AAPL"
    assert data["component"] == "Pipeline"
    assert "rule_id" not in data
    assert "execution_request_id" not in data


def test_exception_details_are_serialized():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        import sys
        exc_info = sys.exc_info()

    data = json.loads(StructuredFormatter().format(_record("failed", exc_info, execution_request_id=7)))
    assert data["exception"]["type"] == "RuntimeError"
    assert data["exception"]["message"] == "boom"
    assert "Traceback" in data["exception"]["traceback"]
    assert data["execution_request_id"] == 7


def test_setup_logging_quiets_third_party_loggers():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("DEBUG", structured=True)
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[-1].formatter, StructuredFormatter)
        assert logging.getLogger("aiohttp").level == logging.WARNING
        assert logging.getLogger("yfinance").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


class RecordingNotifier:
    def __init__(self):
        self.alerts = []

    async def send_error_alert(self, **fields):
        self.alerts.append(fields)


@pytest.mark.asyncio
async def test_startup_error_is_recorded_alerted_and_reraised(db):
    notifier = RecordingNotifier()

    with pytest.raises(ValueError, match="secret key"):
        await ErrorHandler(db, notifier).handle_startup_error("Startup", ValueError("secret key must be 32 bytes"))

    error = db.query(ErrorLog).one()
    assert error.component == "Startup"
    assert error.severity == "CRITICAL"
    assert error.exception_type == "ValueError"
    assert "ValueError" in error.stack_trace
    assert notifier.alerts[0]["severity"] == "CRITICAL"
