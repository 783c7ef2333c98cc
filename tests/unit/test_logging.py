"""Tests for logging configuration."""

import json
import logging

import pytest
import structlog

from did_core.core.logging import (
    LogContext,
    build_formatter,
    get_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestSetupLogging:
    """Tests for root logger configuration."""

    def test_installs_single_handler(self):
        setup_logging("debug", "json", service_name="did-engine-test")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_stdlib_record_rendered_as_json(self):
        record = logging.LogRecord("did_core.test", logging.INFO, __file__, 1, "hello", None, None)
        record.invoice_id = "inv-1"

        payload = json.loads(build_formatter("json").format(record))

        assert payload["event"] == "hello"
        assert payload["level"] == "info"
        assert payload["logger"] == "did_core.test"
        assert payload["invoice_id"] == "inv-1"
        assert "service" in payload

    def test_structlog_event_carries_bound_context(self, capsys):
        setup_logging("info", "json", service_name="did-engine-test")

        with LogContext(job="did_renewal"):
            get_logger("did_core.test").info("company_processed", company_id="c-1")

        lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
        payload = json.loads(lines[-1])
        assert payload["event"] == "company_processed"
        assert payload["job"] == "did_renewal"
        assert payload["company_id"] == "c-1"
        assert payload["service"] == "did-engine-test"


class TestLogContext:
    """Tests for run-scoped context binding."""

    def test_binds_and_resets(self):
        with LogContext(job="renewal", run_date="2026-01-15"):
            assert LogContext.all()["job"] == "renewal"

        assert "job" not in LogContext.all()

    def test_get_logger(self):
        logger = get_logger("did_core.test")
        assert hasattr(logger, "info")
