"""Tests for ``conductor.execution.executor`` - dispatch, outcomes, timeouts and cancellation."""

from __future__ import annotations

import threading
import time

import pytest

from conductor.core.models import ExecutionStatus, TaskExecution
from conductor.execution.executor import TaskExecutor, normalize_output
from conductor.execution.queue import TaskQueue

from conftest import Flaky, Recorder, wait_until


def _submit(store, queue, task_type: str, config: dict | None = None, **kwargs) -> TaskExecution:
    execution = TaskExecution.create(task_type, config or {}, **kwargs)
    store.create_execution(execution)
    queue.enqueue(execution)
    return execution


def _queued(store, task_type: str, config: dict | None = None, **kwargs) -> TaskExecution:
    execution = TaskExecution.create(task_type, config or {}, **kwargs)
    store.create_execution(execution)
    return execution


# ── Direct execution ─────────────────────────────────────────


class TestExecute:
    def test_success_records_output_and_timing(self, store, executor):
        execution = _queued(store, "echo", {"a": 1}, input_data={"b": 2})

        result = executor.execute(execution)

        assert result.status == ExecutionStatus.SUCCEEDED
        assert result.output == {"config": {"a": 1}, "input": {"b": 2}}
        assert result.progress == 100
        assert result.started_at is not None and result.completed_at is not None
        assert result.completed_at >= result.started_at
        assert result.duration_ms is not None and result.duration_ms >= 0
        assert result.error is None

    def test_handler_error_records_failure(self, store, executor):
        execution = _queued(store, "fail", {"message": "disk full"})

        result = executor.execute(execution)

        assert result.status == ExecutionStatus.FAILED
        assert result.error == "disk full"
        assert result.error_type == "HandlerError"
        assert result.started_at is not None

    def test_plain_exception_is_recorded(self, store, registry, queue):
        def broken(ctx):
            raise KeyError("missing")

        registry.register("broken", broken)
        executor = TaskExecutor(store, queue, registry)
        result = executor.execute(_queued(store, "broken"))
        assert result.status == ExecutionStatus.FAILED
        assert result.error_type == "KeyError"

    def test_invalid_config_fails_without_running(self, store, executor):
        """A configuration rejected by the handler never enters running."""
        execution = _queued(store, "strict", {})

        result = executor.execute(execution)

        assert result.status == ExecutionStatus.FAILED
        assert result.error_type == "ValidationError"
        assert result.started_at is None
        assert executor.get_stats().total_rejected == 1

    def test_unknown_task_type_fails_validation(self, store, executor):
        result = executor.execute(_queued(store, "no_such_type"))
        assert result.status == ExecutionStatus.FAILED
        assert result.error_type == "ValidationError"
        assert "no_such_type" in result.error

    def test_timeout_fails_with_timeout_error(self, store, executor):
        execution = _queued(store, "slow", {"seconds": 5}, timeout_seconds=0.2)

        started = time.monotonic()
        result = executor.execute(execution)

        assert time.monotonic() - started < 3
        assert result.status == ExecutionStatus.FAILED
        assert result.error_type == "HandlerTimeoutError"

    def test_claim_lost_is_skipped(self, store, executor):
        execution = _queued(store, "echo")
        store.claim_execution(execution.id, started_at=execution.queued_at)

        result = executor.execute(execution)

        assert result.status == ExecutionStatus.RUNNING
        assert executor.get_stats().claim_conflicts == 1

    def test_progress_is_persisted(self, store, registry, queue):
        reached = threading.Event()
        release = threading.Event()

        def stepping(ctx):
            ctx.report_progress(40)
            reached.set()
            release.wait(5)
            return {}

        registry.register("stepping", stepping)
        executor = TaskExecutor(store, queue, registry, progress_persist_interval=0.0)
        execution = _queued(store, "stepping")
        worker = threading.Thread(target=executor.execute, args=(execution,))
        worker.start()
        try:
            assert reached.wait(5)
            assert wait_until(lambda: store.get_execution(execution.id).progress == 40)
        finally:
            release.set()
            worker.join(5)
        assert store.get_execution(execution.id).progress == 100

    def test_non_dict_output_is_wrapped(self):
        assert normalize_output(None) == {}
        assert normalize_output(3) == {"result": 3}
        assert normalize_output({"a": 1}) == {"a": 1}


# ── Dispatch loop ────────────────────────────────────────────


class TestDispatch:
    def test_runs_queued_work(self, store, queue, executor):
        ids = [_submit(store, queue, "echo", {"i": i}).id for i in range(5)]
        executor.start()

        assert wait_until(lambda: all(store.get_execution(i).is_terminal for i in ids))
        assert all(store.get_execution(i).status == ExecutionStatus.SUCCEEDED for i in ids)
        assert len(queue) == 0

    def test_priority_order_with_single_worker(self, store, registry):
        """With one worker, dequeue order follows priority then FIFO."""
        recorder = Recorder()
        registry.register("record", recorder)
        queue = TaskQueue()
        _submit(store, queue, "record", {"label": "low"}, priority="low")
        _submit(store, queue, "record", {"label": "medium-1"}, priority="medium")
        _submit(store, queue, "record", {"label": "high"}, priority="high")
        _submit(store, queue, "record", {"label": "medium-2"}, priority="medium")
        executor = TaskExecutor(store, queue, registry, worker_concurrency=1, poll_interval=0.02)
        executor.start()
        try:
            assert wait_until(lambda: len(recorder.seen) == 4)
        finally:
            executor.stop()
        assert recorder.seen == ["high", "medium-1", "medium-2", "low"]

    def test_failure_does_not_stop_loop(self, store, queue, executor):
        bad = _submit(store, queue, "fail")
        good = _submit(store, queue, "echo")
        executor.start()

        assert wait_until(lambda: store.get_execution(good.id).status == ExecutionStatus.SUCCEEDED)
        assert store.get_execution(bad.id).status == ExecutionStatus.FAILED

    def test_concurrency_limit(self, store, registry):
        active = 0
        peak = 0
        lock = threading.Lock()

        def busy(ctx):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.1)
            with lock:
                active -= 1
            return {}

        registry.register("busy", busy)
        queue = TaskQueue()
        ids = [_submit(store, queue, "busy").id for _ in range(6)]
        executor = TaskExecutor(store, queue, registry, worker_concurrency=2, poll_interval=0.02)
        executor.start()
        try:
            assert wait_until(lambda: all(store.get_execution(i).is_terminal for i in ids))
        finally:
            executor.stop()
        assert peak == 2

    def test_stop_leaves_queued_rows(self, store, queue, executor):
        executor.start()
        executor.stop()
        execution = _submit(store, queue, "echo")
        time.sleep(0.1)
        assert store.get_execution(execution.id).status == ExecutionStatus.QUEUED
        assert not executor.is_running

    def test_flaky_handler_is_not_retried_here(self, store, queue, registry):
        flaky = Flaky(failures=1)
        registry.register("flaky", flaky)
        executor = TaskExecutor(store, queue, registry)
        result = executor.execute(_queued(store, "flaky"))
        assert result.status == ExecutionStatus.FAILED
        assert flaky.calls == 1


# ── Cancellation ─────────────────────────────────────────────


class TestCancel:
    def test_cancel_queued(self, store, queue, executor):
        execution = _submit(store, queue, "echo")

        assert executor.cancel(execution.id) is True

        row = store.get_execution(execution.id)
        assert row.status == ExecutionStatus.CANCELLED
        assert row.started_at is None
        assert execution.id not in queue

    def test_cancel_running_cooperative(self, store, queue, executor):
        execution = _submit(store, queue, "slow", {"seconds": 10})
        executor.start()
        assert wait_until(lambda: store.get_execution(execution.id).status == ExecutionStatus.RUNNING)

        assert executor.cancel(execution.id) is True

        assert wait_until(lambda: store.get_execution(execution.id).is_terminal)
        row = store.get_execution(execution.id)
        assert row.status == ExecutionStatus.CANCELLED
        assert row.error_type == "ExecutionCancelled"

    def test_cancel_unresponsive_handler_after_grace(self, store, queue, executor):
        """A handler that ignores the signal is abandoned after the grace period."""
        execution = _submit(store, queue, "slow", {"seconds": 3, "ignore_cancel": True})
        executor.start()
        assert wait_until(lambda: store.get_execution(execution.id).status == ExecutionStatus.RUNNING)

        executor.cancel(execution.id)

        assert wait_until(lambda: store.get_execution(execution.id).is_terminal, timeout=2.5)
        assert store.get_execution(execution.id).status == ExecutionStatus.CANCELLED

    def test_cancel_terminal_or_unknown(self, store, executor):
        done = executor.execute(_queued(store, "echo"))
        assert executor.cancel(done.id) is False
        assert executor.cancel("missing") is False
        assert store.get_execution(done.id).status == ExecutionStatus.SUCCEEDED

    def test_cancel_orphaned_running_row(self, store, executor):
        execution = _queued(store, "echo")
        store.claim_execution(execution.id, started_at=execution.queued_at)

        assert executor.cancel(execution.id) is True
        assert store.get_execution(execution.id).status == ExecutionStatus.CANCELLED

    def test_stop_with_cancel_running(self, store, queue, executor):
        execution = _submit(store, queue, "slow", {"seconds": 10})
        executor.start()
        assert wait_until(lambda: store.get_execution(execution.id).status == ExecutionStatus.RUNNING)

        executor.stop(cancel_running=True)

        assert store.get_execution(execution.id).status == ExecutionStatus.CANCELLED


class TestStats:
    def test_counts(self, store, executor):
        executor.execute(_queued(store, "echo"))
        executor.execute(_queued(store, "fail"))
        executor.execute(_queued(store, "strict", {}))

        stats = executor.get_stats().to_dict()
        assert stats["total_processed"] == 3
        assert stats["total_succeeded"] == 1
        assert stats["total_failed"] == 1
        assert stats["total_rejected"] == 1
        assert stats["active_runs"] == 0
