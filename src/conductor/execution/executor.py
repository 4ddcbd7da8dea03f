"""Task Executor - dequeues TaskExecutions and runs their handlers.

The executor bridges the in-memory queue to the registered handlers. A
dispatcher thread pulls the most urgent execution whenever a worker slot is
free and hands it to a thread pool; :meth:`TaskExecutor.execute` is also
callable directly (the workflow engine runs steps through it).

Lifecycle of one execution::

    dequeue ──▶ resolve + validate ──invalid──▶ queued → failed (ValidationError)
                    │
                    ▼
               claim (CAS queued → running) ──lost──▶ ConcurrencyConflict, skip
                    │
                    ▼
               run_with_timeout(handler.run, ctx)
                    ├── returns ─────────────▶ running → succeeded (output, duration)
                    ├── raises ──────────────▶ running → failed (error, error_type)
                    ├── deadline ────────────▶ running → failed (HandlerTimeoutError)
                    └── cancel acknowledged ─▶ running → cancelled

Usage::

    executor = TaskExecutor(store, queue, registry, worker_concurrency=4)
    executor.start()
    ...
    executor.stop()

No retries happen at this layer; a failure is final for its execution.
A failing execution never stops the loop.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from conductor.core.errors import (
    ConcurrencyConflict,
    ExecutionCancelled,
    ValidationError,
    error_type_name,
)
from conductor.core.logging import LogContext, get_logger
from conductor.core.models import ExecutionStatus, TaskExecution
from conductor.core.timestamps import to_iso8601, utc_now
from conductor.execution.context import ExecutionContext
from conductor.execution.queue import TaskQueue
from conductor.execution.registry import TaskTypeRegistry
from conductor.execution.timeout import run_with_timeout
from conductor.store.protocol import ExecutionStore

logger = get_logger(__name__)


@dataclass
class ExecutorStats:
    """Aggregate statistics for an executor."""

    total_processed: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    total_cancelled: int = 0
    total_rejected: int = 0
    claim_conflicts: int = 0
    active_runs: int = 0
    last_dequeue_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "total_cancelled": self.total_cancelled,
            "total_rejected": self.total_rejected,
            "claim_conflicts": self.claim_conflicts,
            "active_runs": self.active_runs,
            "last_dequeue_at": to_iso8601(self.last_dequeue_at),
        }


class _ProgressWriter:
    """Persists handler progress at most once per interval, only on change."""

    def __init__(self, store: ExecutionStore, execution_id: str, interval: float) -> None:
        self._store = store
        self._execution_id = execution_id
        self._interval = interval
        self._lock = threading.Lock()
        self._persisted: int | None = None
        self._last_write = float("-inf")
        self.writes = 0

    def __call__(self, value: int) -> None:
        now = time.monotonic()
        with self._lock:
            if value == self._persisted or now - self._last_write < self._interval:
                return
            self._last_write = now
            self._persisted = value
        try:
            self._store.transition_execution(
                self._execution_id,
                ExecutionStatus.RUNNING,
                ExecutionStatus.RUNNING,
                progress=value,
            )
            self.writes += 1
        except ConcurrencyConflict:
            # Already terminal; the final write carries the last value.
            logger.debug("progress.dropped", execution_id=self._execution_id, progress=value)


@dataclass
class _ActiveRun:
    cancel_event: threading.Event = field(default_factory=threading.Event)
    cancel_requested: bool = False


class TaskExecutor:
    """Runs queued executions concurrently up to ``worker_concurrency``.

    Thread-safety:
        The queue is only touched through its own lock; the store is the
        arbiter of ownership through ``claim_execution``. Active runs are
        tracked under ``_active_lock`` so cancellation can reach them.
    """

    def __init__(
        self,
        store: ExecutionStore,
        queue: TaskQueue,
        registry: TaskTypeRegistry,
        *,
        worker_concurrency: int = 4,
        default_timeout_seconds: float = 300.0,
        cancel_grace_seconds: float = 5.0,
        progress_persist_interval: float = 1.0,
        poll_interval: float = 0.5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if worker_concurrency < 1:
            raise ValueError("worker_concurrency must be at least 1")
        self.store = store
        self.queue = queue
        self.registry = registry
        self.worker_concurrency = worker_concurrency
        self.default_timeout_seconds = default_timeout_seconds
        self.cancel_grace_seconds = cancel_grace_seconds
        self.progress_persist_interval = progress_persist_interval
        self.poll_interval = poll_interval
        self._clock = clock

        self._shutdown = threading.Event()
        self._slots = threading.BoundedSemaphore(worker_concurrency)
        self._pool: ThreadPoolExecutor | None = None
        self._dispatcher: threading.Thread | None = None
        self._active: dict[str, _ActiveRun] = {}
        self._active_lock = threading.Lock()
        self._stats = ExecutorStats()
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and self._dispatcher.is_alive()

    def start(self) -> None:
        """Start the dispatcher thread and worker pool (non-blocking)."""
        if self.is_running:
            return
        self._shutdown.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.worker_concurrency, thread_name_prefix="conductor-worker")
        self._dispatcher = threading.Thread(target=self._run_loop, name="conductor-dispatcher", daemon=True)
        self._dispatcher.start()
        logger.info("executor.started", workers=self.worker_concurrency)

    def stop(self, wait: bool = True, cancel_running: bool = False, timeout: float | None = 10.0) -> None:
        """Stop dequeuing. Optionally signal in-flight handlers to stop."""
        self._shutdown.set()
        self.queue.wake_all()
        if cancel_running:
            with self._active_lock:
                for run in self._active.values():
                    run.cancel_requested = True
                    run.cancel_event.set()
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=timeout)
            self._dispatcher = None
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
        logger.info("executor.stopped")

    def get_stats(self) -> ExecutorStats:
        with self._active_lock:
            active = len(self._active)
        with self._stats_lock:
            self._stats.active_runs = active
            return ExecutorStats(**vars(self._stats))

    def is_active(self, execution_id: str) -> bool:
        with self._active_lock:
            return execution_id in self._active

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            if not self._slots.acquire(timeout=self.poll_interval):
                continue
            try:
                execution = self.queue.dequeue_next(timeout=self.poll_interval)
            except Exception:
                self._slots.release()
                logger.exception("executor.dequeue_error")
                continue
            if execution is None:
                self._slots.release()
                continue
            with self._stats_lock:
                self._stats.last_dequeue_at = self._clock()
            if self._shutdown.is_set() or self._pool is None:
                # Still persisted as queued; the next start rebuilds it.
                self._slots.release()
                break
            self._pool.submit(self._process, execution)

    def _process(self, execution: TaskExecution) -> None:
        try:
            self.execute(execution)
        except Exception:
            logger.exception("executor.unhandled_error", execution_id=execution.id)
        finally:
            self._slots.release()

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def execute(self, execution: TaskExecution) -> TaskExecution:
        """Run one queued execution to a terminal status in the calling thread.

        Returns the stored record after the run. Never raises for handler,
        validation or timeout failures; those are recorded on the row.
        """
        with self._stats_lock:
            self._stats.total_processed += 1

        # --- Resolve and validate before the row may enter running ---
        try:
            handler = self.registry.validate(execution.task_type, execution.config)
        except ValidationError as e:
            return self._reject(execution, e)

        run = _ActiveRun()
        with self._active_lock:
            self._active[execution.id] = run
        try:
            try:
                claimed = self.store.claim_execution(execution.id, started_at=self._clock())
            except ConcurrencyConflict:
                with self._stats_lock:
                    self._stats.claim_conflicts += 1
                logger.debug("executor.claim_lost", execution_id=execution.id)
                return self.store.get_execution(execution.id) or execution

            if run.cancel_requested:
                return self._finish_cancelled(claimed, "Cancelled before handler start", 0)
            return self._run_handler(claimed, handler, run)
        finally:
            with self._active_lock:
                self._active.pop(execution.id, None)

    def _run_handler(self, execution: TaskExecution, handler: Any, run: _ActiveRun) -> TaskExecution:
        timeout = execution.timeout_seconds or self.default_timeout_seconds
        writer = _ProgressWriter(self.store, execution.id, self.progress_persist_interval)
        ctx = ExecutionContext(
            execution,
            timeout_seconds=timeout,
            cancel_event=run.cancel_event,
            on_progress=writer,
        )
        started = time.perf_counter()
        with LogContext(execution_id=execution.id, task_type=execution.task_type):
            logger.info("execution.started", priority=execution.priority, timeout=timeout)
            try:
                output = run_with_timeout(
                    handler.run,
                    timeout,
                    operation=execution.task_type,
                    args=(ctx,),
                    cancel_event=run.cancel_event,
                    grace_seconds=self.cancel_grace_seconds,
                    on_timeout=ctx.signal_timeout,
                )
            except ExecutionCancelled as e:
                if run.cancel_requested:
                    return self._finish_cancelled(execution, e.message, ctx.progress, started)
                return self._finish_failed(execution, e, ctx.progress, started)
            except Exception as e:
                if run.cancel_requested:
                    return self._finish_cancelled(execution, str(e), ctx.progress, started)
                return self._finish_failed(execution, e, ctx.progress, started)

            if run.cancel_requested:
                return self._finish_cancelled(execution, "Cancelled while running", ctx.progress, started)
            return self._finish_succeeded(execution, output, started)

    # ------------------------------------------------------------------ #
    # Outcomes
    # ------------------------------------------------------------------ #

    def _reject(self, execution: TaskExecution, error: ValidationError) -> TaskExecution:
        with self._stats_lock:
            self._stats.total_rejected += 1
        logger.warning(
            "execution.rejected",
            execution_id=execution.id,
            task_type=execution.task_type,
            error=error.message,
        )
        return self._transition(
            execution,
            ExecutionStatus.QUEUED,
            ExecutionStatus.FAILED,
            error=error.message,
            error_type=error_type_name(error),
            completed_at=self._clock(),
        )

    def _finish_succeeded(self, execution: TaskExecution, output: Any, started: float) -> TaskExecution:
        duration_ms = (time.perf_counter() - started) * 1000
        with self._stats_lock:
            self._stats.total_succeeded += 1
        logger.info("execution.succeeded", duration_ms=round(duration_ms, 2))
        try:
            return self._transition(
                execution,
                ExecutionStatus.RUNNING,
                ExecutionStatus.SUCCEEDED,
                output=normalize_output(output),
                progress=100,
                completed_at=self._clock(),
                duration_ms=duration_ms,
            )
        except (TypeError, ValueError) as e:
            return self._finish_failed(execution, e, 100, started)

    def _finish_failed(
        self,
        execution: TaskExecution,
        error: BaseException,
        progress: int,
        started: float,
    ) -> TaskExecution:
        duration_ms = (time.perf_counter() - started) * 1000
        with self._stats_lock:
            self._stats.total_failed += 1
        message = getattr(error, "message", None) or str(error) or error_type_name(error)
        logger.warning("execution.failed", error=message, error_type=error_type_name(error))
        return self._transition(
            execution,
            ExecutionStatus.RUNNING,
            ExecutionStatus.FAILED,
            error=message,
            error_type=error_type_name(error),
            progress=progress,
            completed_at=self._clock(),
            duration_ms=duration_ms,
        )

    def _finish_cancelled(
        self,
        execution: TaskExecution,
        reason: str,
        progress: int,
        started: float | None = None,
    ) -> TaskExecution:
        duration_ms = (time.perf_counter() - started) * 1000 if started is not None else None
        with self._stats_lock:
            self._stats.total_cancelled += 1
        logger.info("execution.cancelled", execution_id=execution.id, reason=reason)
        return self._transition(
            execution,
            ExecutionStatus.RUNNING,
            ExecutionStatus.CANCELLED,
            error=reason,
            error_type=ExecutionCancelled.__name__,
            progress=progress,
            completed_at=self._clock(),
            duration_ms=duration_ms,
        )

    def _transition(
        self,
        execution: TaskExecution,
        expected: ExecutionStatus,
        target: ExecutionStatus,
        **changes: Any,
    ) -> TaskExecution:
        try:
            return self.store.transition_execution(execution.id, expected, target, **changes)
        except ConcurrencyConflict:
            # Someone else moved the row first (e.g. a cancel of a queued row).
            logger.debug("execution.transition_lost", execution_id=execution.id, target=target.value)
            return self.store.get_execution(execution.id) or execution

    # ------------------------------------------------------------------ #
    # Cancellation
    # ------------------------------------------------------------------ #

    def cancel(self, execution_id: str) -> bool:
        """Cancel a queued or running execution.

        Queued: removed from the queue and moved straight to cancelled.
        Running: the handler's cancel event is set; the row becomes
        cancelled when the handler acknowledges or the grace period ends.
        Returns False for unknown or already terminal executions.
        """
        execution = self.store.get_execution(execution_id)
        if execution is None or execution.is_terminal:
            return False

        if execution.status == ExecutionStatus.QUEUED:
            self.queue.remove(execution_id)
            with self._active_lock:
                run = self._active.get(execution_id)
                if run is not None:
                    run.cancel_requested = True
                    run.cancel_event.set()
            try:
                self.store.transition_execution(
                    execution_id,
                    ExecutionStatus.QUEUED,
                    ExecutionStatus.CANCELLED,
                    error="Cancelled before start",
                    error_type=ExecutionCancelled.__name__,
                    completed_at=self._clock(),
                )
                logger.info("execution.cancelled", execution_id=execution_id, reason="queued")
                return True
            except ConcurrencyConflict:
                # Claimed between our read and write; cancel the run instead.
                execution = self.store.get_execution(execution_id)
                if execution is None or execution.status != ExecutionStatus.RUNNING:
                    return False

        with self._active_lock:
            run = self._active.get(execution_id)
            if run is not None:
                run.cancel_requested = True
                run.cancel_event.set()
                logger.info("execution.cancel_requested", execution_id=execution_id)
                return True

        # Running but not owned by this process (interrupted by a restart).
        try:
            self.store.transition_execution(
                execution_id,
                ExecutionStatus.RUNNING,
                ExecutionStatus.CANCELLED,
                error="Cancelled (no live handler)",
                error_type=ExecutionCancelled.__name__,
                completed_at=self._clock(),
            )
            return True
        except ConcurrencyConflict:
            return False


def normalize_output(output: Any) -> dict[str, Any]:
    """Handlers may return a dict, None or a scalar; rows always store a dict."""
    if output is None:
        return {}
    if isinstance(output, dict):
        return dict(output)
    return {"result": output}
