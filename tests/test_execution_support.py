"""Tests for the registry, execution context, retry strategies and run_with_timeout."""

from __future__ import annotations

import threading
import time

import pytest

from conductor.core.errors import ExecutionCancelled, HandlerError, HandlerTimeoutError, ValidationError
from conductor.core.models import TaskExecution
from conductor.execution import (
    ExecutionContext,
    ExponentialBackoff,
    FunctionHandler,
    RegistryFrozenError,
    TaskHandler,
    TaskTypeRegistry,
    run_with_timeout,
)

from conftest import echo, require_value


# ── Registry ─────────────────────────────────────────────────


class TestRegistry:
    def test_register_plain_callable(self):
        registry = TaskTypeRegistry()
        registry.register("echo", echo, tags={"category": "test"})

        handler = registry.get("echo")
        assert isinstance(handler, FunctionHandler)
        assert isinstance(handler, TaskHandler)
        assert "echo" in registry
        assert registry.list_types() == ["echo"]
        assert registry.get_metadata("echo")["tags"] == {"category": "test"}

    def test_unknown_type_is_validation_error(self):
        registry = TaskTypeRegistry()
        registry.register("echo", echo)
        with pytest.raises(ValidationError) as exc_info:
            registry.get("nope")
        assert exc_info.value.field == "task_type"
        assert "echo" in exc_info.value.message

    def test_duplicate_requires_replace(self):
        registry = TaskTypeRegistry()
        registry.register("echo", echo)
        with pytest.raises(ValueError):
            registry.register("echo", echo)
        registry.register("echo", FunctionHandler(echo), replace=True)

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            TaskTypeRegistry().register("bad", object())

    def test_frozen_registry_refuses_changes(self):
        """Task types are a closed set once the engine starts."""
        registry = TaskTypeRegistry()
        registry.register("echo", echo)
        registry.freeze()
        assert registry.frozen
        with pytest.raises(RegistryFrozenError):
            registry.register("late", echo)
        with pytest.raises(RegistryFrozenError):
            registry.unregister("echo")

    def test_validate_uses_handler_validator(self):
        registry = TaskTypeRegistry()
        registry.register("strict", FunctionHandler(echo, validator=require_value))
        registry.validate("strict", {"value": 1})
        with pytest.raises(ValidationError):
            registry.validate("strict", {})

    def test_metadata_description_falls_back_to_docstring(self):
        class Documented:
            """Does documented things.

            More text.
            """

            def validate(self, config):
                pass

            def run(self, ctx):
                return {}

        registry = TaskTypeRegistry()
        registry.register("doc", Documented())
        entry = registry.list_with_metadata()[0]
        assert entry["description"] == "Does documented things."
        assert entry["handler"] == "Documented"


# ── Execution context ────────────────────────────────────────


class TestExecutionContext:
    def _ctx(self, **kwargs) -> ExecutionContext:
        execution = TaskExecution.create("echo", {"a": 1}, input_data={"b": 2})
        return ExecutionContext(execution, **kwargs)

    def test_exposes_snapshot(self):
        ctx = self._ctx()
        assert ctx.config == {"a": 1}
        assert ctx.input == {"b": 2}
        assert ctx.task_type == "echo"

    def test_progress_is_clamped_and_forwarded(self):
        seen: list[int] = []
        ctx = self._ctx(on_progress=seen.append)
        ctx.report_progress(150)
        ctx.report_progress(-3)
        ctx.report_progress(42.9)
        assert seen == [100, 0, 42]
        assert ctx.progress == 42

    def test_check_cancelled(self):
        ctx = self._ctx()
        ctx.check_cancelled()
        ctx.cancel_event.set()
        assert ctx.cancelled
        with pytest.raises(ExecutionCancelled):
            ctx.check_cancelled()

    def test_sleep_wakes_on_cancel(self):
        ctx = self._ctx()
        threading.Timer(0.05, ctx.cancel_event.set).start()
        started = time.monotonic()
        with pytest.raises(ExecutionCancelled):
            ctx.sleep(5)
        assert time.monotonic() - started < 2

    def test_time_remaining(self):
        assert self._ctx().time_remaining() is None
        remaining = self._ctx(timeout_seconds=10).time_remaining()
        assert 9 < remaining <= 10

    def test_signal_timeout_message(self):
        ctx = self._ctx()
        ctx.signal_timeout()
        with pytest.raises(ExecutionCancelled, match="timed out"):
            ctx.check_cancelled()


# ── Retry ────────────────────────────────────────────────────


class TestRetry:
    def test_exponential_delays_capped(self):
        backoff = ExponentialBackoff(max_retries=5, base_delay=1.0, max_delay=5.0, jitter=False)
        assert [backoff.next_delay(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_range(self):
        backoff = ExponentialBackoff(base_delay=2.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 1.5 <= backoff.next_delay(0) <= 2.5

    def test_should_retry_counts_and_error_kind(self):
        backoff = ExponentialBackoff(max_retries=2, jitter=False)
        assert backoff.should_retry(0)
        assert backoff.should_retry(1)
        assert not backoff.should_retry(2)
        assert not backoff.should_retry(0, ValidationError("bad config"))
        assert backoff.should_retry(0, HandlerError("flaky"))

    def test_zero_retries(self):
        assert not ExponentialBackoff(max_retries=0).should_retry(0)


# ── Timeout ──────────────────────────────────────────────────


class TestRunWithTimeout:
    def test_returns_result(self):
        assert run_with_timeout(lambda x: x * 2, 1.0, args=(21,)) == 42

    def test_propagates_exception(self):
        def boom():
            raise HandlerError("boom")

        with pytest.raises(HandlerError):
            run_with_timeout(boom, 1.0)

    def test_times_out_and_signals(self):
        signalled = threading.Event()
        with pytest.raises(HandlerTimeoutError) as exc_info:
            run_with_timeout(time.sleep, 0.1, args=(2,), on_timeout=signalled.set)
        assert signalled.is_set()
        assert exc_info.value.timeout == 0.1

    def test_unacknowledged_cancel_after_grace(self):
        cancel = threading.Event()
        cancel.set()
        started = time.monotonic()
        with pytest.raises(ExecutionCancelled):
            run_with_timeout(time.sleep, None, args=(2,), cancel_event=cancel, grace_seconds=0.1)
        assert time.monotonic() - started < 1.5

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            run_with_timeout(lambda: None, 0)
