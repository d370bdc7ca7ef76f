"""Tests for structured logging helpers."""

import json
import logging

import pytest
import structlog

from teamspark.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    clear_context()
    structlog.reset_defaults()


class TestContextBinding:
    """Context variables carried into every event."""

    def test_bind_and_unbind(self):
        bind_context(queue="send-email", job_id="1")
        assert structlog.contextvars.get_contextvars() == {"queue": "send-email", "job_id": "1"}
        unbind_context("job_id")
        assert structlog.contextvars.get_contextvars() == {"queue": "send-email"}

    def test_log_context_sync(self):
        with LogContext(job_id="42"):
            assert structlog.contextvars.get_contextvars()["job_id"] == "42"
        assert "job_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_log_context_async(self):
        async with LogContext(queue="cleanup-old-data"):
            assert structlog.contextvars.get_contextvars()["queue"] == "cleanup-old-data"
        assert structlog.contextvars.get_contextvars() == {}


class TestConfigureLogging:
    """Rendered output."""

    def test_json_output_has_service_and_context(self, capsys):
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        configure_logging(level="INFO", json_format=True, service="teamspark-test")
        with LogContext(queue="send-email"):
            get_logger("tests").info("job_added", job_id="7")
        line = capsys.readouterr().out.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["job_id"] == "7"
        assert "job_added" in json.dumps(event)
        assert "teamspark-test" in json.dumps(event)
        assert "send-email" in json.dumps(event)

    def test_level_filters_debug(self, capsys):
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        configure_logging(level="WARNING", json_format=True)
        get_logger("tests").info("hidden_event")
        assert "hidden_event" not in capsys.readouterr().out
