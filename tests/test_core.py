"""Tests for ``conductor.core`` - errors, settings, timestamps and logging setup."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest
import structlog
import structlog.testing
from pydantic import ValidationError as PydanticValidationError

from conductor.core.errors import (
    ConcurrencyConflict,
    ConductorError,
    ErrorCategory,
    ExecutionCancelled,
    HandlerError,
    HandlerTimeoutError,
    SchedulingError,
    ValidationError,
    error_type_name,
    is_retryable,
)
from conductor.core.logging import LogContext, configure_logging, get_logger
from conductor.core.settings import ConductorSettings, get_settings
from conductor.core.timestamps import ensure_utc, from_iso8601, to_iso8601


# ── Errors ───────────────────────────────────────────────────


class TestErrors:
    def test_categories_and_retryable_defaults(self):
        assert ValidationError("x").category == ErrorCategory.VALIDATION
        assert ValidationError("x").retryable is False
        assert HandlerError("x").retryable is True
        assert HandlerTimeoutError("x").category == ErrorCategory.TIMEOUT
        assert ExecutionCancelled("x").retryable is False
        assert ConcurrencyConflict("x").retryable is True
        assert SchedulingError("x").category == ErrorCategory.SCHEDULING

    def test_retryable_override(self):
        assert HandlerError("x", retryable=False).retryable is False

    def test_with_context_known_and_metadata_fields(self):
        error = HandlerError("boom").with_context(execution_id="e-1", status_code=503)
        data = error.to_dict()
        assert data["error_type"] == "HandlerError"
        assert data["context"] == {"execution_id": "e-1", "status_code": 503}

    def test_cause_is_chained(self):
        cause = OSError("disk")
        error = HandlerError("wrapped", cause=cause)
        assert error.__cause__ is cause
        assert error.to_dict()["cause"] == "disk"

    def test_validation_error_fields(self):
        data = ValidationError("bad", field="url", value=3, constraint="str").to_dict()
        assert data["field"] == "url"
        assert data["value"] == "3"
        assert data["constraint"] == "str"

    def test_is_retryable(self):
        assert is_retryable(RuntimeError("plain")) is True
        assert is_retryable(ValidationError("x")) is False
        assert error_type_name(HandlerTimeoutError("t")) == "HandlerTimeoutError"

    def test_hierarchy(self):
        assert issubclass(HandlerTimeoutError, HandlerError)
        assert issubclass(ExecutionCancelled, HandlerError)
        assert issubclass(SchedulingError, ConductorError)


# ── Settings ─────────────────────────────────────────────────


class TestSettings:
    def test_defaults(self):
        settings = ConductorSettings()
        assert settings.worker_concurrency >= 1
        assert settings.scheduler_enabled is True
        assert settings.timezone == "UTC"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_WORKER_CONCURRENCY", "7")
        monkeypatch.setenv("CONDUCTOR_DATABASE_PATH", "/tmp/c.db")
        settings = ConductorSettings()
        assert settings.worker_concurrency == 7
        assert settings.is_persistent

    def test_log_level_normalized(self):
        assert ConductorSettings(log_level="debug").log_level == "DEBUG"

    @pytest.mark.parametrize("overrides", [{"log_level": "loud"}, {"log_format": "xml"}, {"worker_concurrency": 0}])
    def test_rejects_invalid(self, overrides):
        with pytest.raises(PydanticValidationError):
            ConductorSettings(**overrides)

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()


# ── Timestamps ───────────────────────────────────────────────


class TestTimestamps:
    def test_naive_taken_as_utc(self):
        assert ensure_utc(datetime(2025, 1, 1, 12)).tzinfo == UTC

    def test_round_trip_normalizes_offset(self):
        local = datetime(2025, 1, 1, 14, tzinfo=timezone(timedelta(hours=2)))
        text = to_iso8601(local)
        assert text == "2025-01-01T12:00:00.000000+00:00"
        assert from_iso8601(text) == local

    def test_none_passthrough(self):
        assert to_iso8601(None) is None
        assert from_iso8601(None) is None


# ── Logging ──────────────────────────────────────────────────


class TestLogging:
    def test_configured_logger_emits_with_context(self):
        """JSON configuration with the stdlib factory logs without error."""
        try:
            configure_logging(level="INFO", json_format=True, service="conductor-test")
            logger = get_logger("conductor.tests")
            with LogContext(execution_id="e-42"):
                logger.info("execution.started", task_type="echo")
        finally:
            structlog.reset_defaults()

    def test_log_context_binds_and_unbinds(self):
        with LogContext(execution_id="e-1", task_type="echo"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["execution_id"] == "e-1"
            assert bound["task_type"] == "echo"
        assert "execution_id" not in structlog.contextvars.get_contextvars()

    def test_events_are_captured(self):
        with structlog.testing.capture_logs() as logs:
            get_logger("conductor.tests").warning("queue.rebuilt", total_queued=3)
        assert logs == [{"event": "queue.rebuilt", "total_queued": 3, "log_level": "warning"}]
