"""Tests for xcaudit.core.logging."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from xcaudit.core.logging import (
    DevFormatter,
    JSONFormatter,
    RunLogFilter,
    bind_run_id,
    get_current_run_id,
    setup_logging,
)


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("xcaudit.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestFormatters:
    def test_json_formatter_includes_run_fields(self):
        payload = json.loads(JSONFormatter().format(_record(run_id="abc123", contract="Vault")))
        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["run_id"] == "abc123"
        assert payload["contract"] == "Vault"
        assert "duration_ms" not in payload

    def test_json_formatter_exception(self):
        try:
            raise ValueError("broken")
        except ValueError:
            record = logging.LogRecord(
                "xcaudit.test", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )
        payload = json.loads(JSONFormatter().format(record))
        assert payload["exception"]["type"] == "ValueError"
        assert payload["exception"]["message"] == "broken"

    def test_dev_formatter_prefixes_run_id(self):
        text = DevFormatter().format(_record(run_id="0123456789abcdef"))
        assert "[01234567] hello" in text
        assert "xcaudit.test" in text


class TestRunLogFilter:
    def test_stamps_records(self):
        record = _record()
        assert RunLogFilter("run-1").filter(record)
        assert record.run_id == "run-1"

    def test_uses_bound_run_id(self):
        with bind_run_id("run-2"):
            record = _record()
            RunLogFilter().filter(record)
        assert record.run_id == "run-2"
        assert get_current_run_id() is None

    def test_unbound_records_are_left_alone(self):
        record = _record()
        assert RunLogFilter().filter(record)
        assert not hasattr(record, "run_id")


class TestSetupLogging:
    def test_production_uses_json(self, restore_root):
        setup_logging("production", "warning")
        assert restore_root.level == logging.WARNING
        assert len(restore_root.handlers) == 1
        assert isinstance(restore_root.handlers[0].formatter, JSONFormatter)

    def test_development_uses_dev_formatter(self, restore_root):
        setup_logging("development", "DEBUG")
        assert restore_root.level == logging.DEBUG
        assert isinstance(restore_root.handlers[0].formatter, DevFormatter)
