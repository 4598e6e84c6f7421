"""Tests for the structured logging helpers."""

import structlog
from structlog.testing import capture_logs

from taskrelay.infrastructure.observability.logging import (
    add_task_context,
    drop_sensitive_fields,
    task_logger,
)


class TestProcessors:
    """Custom structlog processors"""

    def test_bound_identifiers_are_added(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(session_id="s1", task_id="t1")
        try:
            event = add_task_context(None, "info", {"event": "x", "task_id": "explicit"})
        finally:
            structlog.contextvars.clear_contextvars()

        assert event["session_id"] == "s1"
        assert event["task_id"] == "explicit"
        assert "call_id" not in event
        assert "timestamp" in event

    def test_sensitive_fields_are_dropped(self):
        event = drop_sensitive_fields(None, "info", {"event": "x", "key": "k", "value": "hunter2", "token": "t"})

        assert event == {"event": "x", "key": "k"}


class TestTaskLogger:
    """Named task events"""

    def test_tool_failure_logs_at_warning(self):
        with capture_logs() as logs:
            task_logger.log_tool_execution("toolA", "t1", "inv_1", duration_ms=1.23456,
                                           success=False, error_kind="timeout", error="slow")

        assert logs[0]["event"] == "tool_execution"
        assert logs[0]["log_level"] == "warning"
        assert logs[0]["duration_ms"] == 1.235
        assert logs[0]["error_kind"] == "timeout"

    def test_state_updates_never_carry_values(self):
        with capture_logs() as logs:
            task_logger.log_state_update("s1", "secret", "set", "api_token")

        assert logs[0]["key"] == "api_token"
        assert "value" not in logs[0]
