"""Task scheduler - turns cron schedules into queued executions.

Manifesto:
    The scheduler follows the beat-as-poller pattern: a timing backend
    calls :meth:`TaskScheduler.tick` at a fixed interval, and each tick
    evaluates every active scheduled task against the clock. Timing and
    evaluation are separate, so tests drive ``tick(now=...)`` directly.

Per tick, for each active task with a cron schedule::

    next_fire reached?
        │ yes
        ▼
    latest due instant (missed fires coalesce into one)
        │
        ▼
    store.find_execution_for_schedule(task, instant) ──exists──▶ advance
        │ none
        ▼
    store.create_execution(queued) ──error──▶ log, count, do NOT advance
        │
        ▼
    queue.enqueue(execution) ──▶ advance next_fire

At most one execution exists per ``(task_id, scheduled_for)``: the store
lookup covers restarts and the store's unique key covers a concurrent
writer. A malformed expression marks the task skipped until its schedule
changes; other tasks are unaffected.

Tags:
    conductor, scheduling, cron, beat-as-poller, service

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from conductor.core.errors import ConcurrencyConflict, NotFoundError, SchedulingError
from conductor.core.logging import get_logger
from conductor.core.models import Task, TaskExecution
from conductor.core.timestamps import ensure_utc, to_iso8601, utc_now
from conductor.execution.queue import TaskQueue
from conductor.scheduling.cron import latest_fire_time, next_fire_time, validate_cron
from conductor.scheduling.thread_backend import ThreadSchedulerBackend
from conductor.store.protocol import ExecutionStore

logger = get_logger(__name__)


@dataclass
class SchedulerStats:
    """Statistics for the scheduler."""

    tick_count: int = 0
    ticks_overlapped: int = 0
    executions_created: int = 0
    duplicates_skipped: int = 0
    persistence_failures: int = 0
    invalid_schedules: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "ticks_overlapped": self.ticks_overlapped,
            "executions_created": self.executions_created,
            "duplicates_skipped": self.duplicates_skipped,
            "persistence_failures": self.persistence_failures,
            "invalid_schedules": self.invalid_schedules,
            "last_tick": to_iso8601(self.last_tick),
            "last_error": self.last_error,
        }


@dataclass
class TickResult:
    """What one tick did. ``overlapped`` means it was skipped entirely."""

    now: datetime
    created: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)
    overlapped: bool = False


@dataclass
class SchedulerHealth:
    healthy: bool
    backend: dict[str, Any]
    paused: bool = False
    scheduled_tasks: int = 0
    invalid_schedules: int = 0
    last_tick: datetime | None = None
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "paused": self.paused,
            "scheduled_tasks": self.scheduled_tasks,
            "invalid_schedules": self.invalid_schedules,
            "last_tick": to_iso8601(self.last_tick),
            "stats": self.stats.to_dict(),
        }


@dataclass
class _ScheduleState:
    expression: str
    next_fire: datetime


class TaskScheduler:
    """Creates queued executions for due cron schedules.

    Example:
        >>> scheduler = TaskScheduler(store, queue, interval_seconds=10)
        >>> scheduler.start()
        >>> ...
        >>> scheduler.stop()
    """

    def __init__(
        self,
        store: ExecutionStore,
        queue: TaskQueue,
        *,
        interval_seconds: float = 10.0,
        timezone: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
        backend: ThreadSchedulerBackend | None = None,
        max_errors: int = 100,
    ) -> None:
        self.store = store
        self.queue = queue
        self.interval = interval_seconds
        self.timezone = timezone
        self.backend = backend or ThreadSchedulerBackend()
        self._clock = clock

        self._tick_lock = threading.Lock()
        self._states: dict[str, _ScheduleState] = {}
        self._invalid: dict[str, str] = {}
        self._paused = False
        self._paused_tasks: set[str] = set()
        self._errors: deque[SchedulingError] = deque(maxlen=max_errors)
        self._stats = SchedulerStats()

    # === Lifecycle ===

    def start(self) -> None:
        """Start ticking in the background."""
        if self.backend.is_running:
            return
        logger.info("scheduler.started", backend=self.backend.name, interval_seconds=self.interval)
        self.backend.start(self.tick, self.interval)

    def stop(self) -> None:
        self.backend.stop()
        logger.info("scheduler.stopped")

    @property
    def is_running(self) -> bool:
        return self.backend.is_running

    # === Tick processing ===

    def tick(self, now: datetime | None = None) -> TickResult:
        """Evaluate every active scheduled task once.

        Returns immediately (``overlapped=True``) if another tick is still
        in progress.
        """
        now = ensure_utc(now or self._clock())
        if not self._tick_lock.acquire(blocking=False):
            self._stats.ticks_overlapped += 1
            logger.debug("scheduler.tick_overlapped")
            return TickResult(now=now, overlapped=True)
        try:
            self._stats.tick_count += 1
            self._stats.last_tick = now
            result = TickResult(now=now)
            if self._paused:
                return result

            try:
                tasks = self.store.list_tasks(active_only=True)
            except Exception as e:
                self._stats.last_error = str(e)
                logger.exception("scheduler.list_tasks_failed")
                return result

            scheduled = {t.id for t in tasks if t.cron_schedule}
            for stale in set(self._states) - scheduled:
                del self._states[stale]
            for stale in set(self._invalid) - scheduled:
                del self._invalid[stale]

            for task in tasks:
                if task.cron_schedule and task.id not in self._paused_tasks:
                    self._process_task(task, now, result)

            if result.created:
                logger.info("scheduler.tick", created=len(result.created), failed=len(result.failed))
            return result
        finally:
            self._tick_lock.release()

    def _process_task(self, task: Task, now: datetime, result: TickResult) -> None:
        expression = task.cron_schedule
        if self._invalid.get(task.id) == expression:
            result.invalid.append(task.id)
            return

        state = self._states.get(task.id)
        if state is None or state.expression != expression:
            try:
                expression = validate_cron(expression)
                state = _ScheduleState(expression, next_fire_time(expression, task.updated_at, self.timezone))
            except SchedulingError as e:
                self._mark_invalid(task, e)
                result.invalid.append(task.id)
                return
            self._states[task.id] = state

        if state.next_fire > now:
            return

        try:
            due = latest_fire_time(state.expression, now, self.timezone)
            following = next_fire_time(state.expression, due, self.timezone)
        except SchedulingError as e:
            self._mark_invalid(task, e)
            result.invalid.append(task.id)
            return
        if due > state.next_fire:
            logger.info(
                "scheduler.coalesced",
                task_id=task.id,
                first_missed=to_iso8601(state.next_fire),
                fire_at=to_iso8601(due),
            )

        if not self._fire(task, due, result):
            # Next tick retries the same instant.
            return
        state.next_fire = following

    def _fire(self, task: Task, scheduled_for: datetime, result: TickResult) -> bool:
        try:
            existing = self.store.find_execution_for_schedule(task.id, scheduled_for)
            if existing is not None:
                self._stats.duplicates_skipped += 1
                result.duplicates.append(task.id)
                logger.debug("scheduler.duplicate_skipped", task_id=task.id, execution_id=existing.id)
                return True

            execution = TaskExecution.for_task(task, scheduled_for=scheduled_for)
            try:
                self.store.create_execution(execution)
            except ConcurrencyConflict:
                self._stats.duplicates_skipped += 1
                result.duplicates.append(task.id)
                return True
        except Exception as e:
            error = SchedulingError(
                f"Could not persist scheduled execution for task {task.id}: {e}",
                task_id=task.id,
                expression=task.cron_schedule,
                cause=e,
            )
            self._errors.append(error)
            self._stats.persistence_failures += 1
            self._stats.last_error = error.message
            result.failed.append(task.id)
            logger.error("scheduler.persist_failed", task_id=task.id, error=str(e))
            return False

        self.queue.enqueue(execution)
        self._stats.executions_created += 1
        result.created.append(execution.id)
        logger.info(
            "scheduler.fired",
            task_id=task.id,
            execution_id=execution.id,
            scheduled_for=to_iso8601(scheduled_for),
        )
        return True

    def _mark_invalid(self, task: Task, error: SchedulingError) -> None:
        error.with_context(task_id=task.id)
        self._invalid[task.id] = task.cron_schedule
        self._states.pop(task.id, None)
        self._errors.append(error)
        self._stats.invalid_schedules += 1
        self._stats.last_error = error.message
        logger.error("scheduler.invalid_cron", task_id=task.id, expression=task.cron_schedule, error=error.message)

    # === Manual operations ===

    def trigger(self, task_id: str, input_overrides: dict[str, Any] | None = None) -> TaskExecution:
        """Fire *task_id* now, outside its schedule.

        Raises:
            NotFoundError: Unknown task.
        """
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}").with_context(task_id=task_id)
        execution = TaskExecution.for_task(task, input_overrides)
        self.store.create_execution(execution)
        self.queue.enqueue(execution)
        logger.info("scheduler.triggered", task_id=task_id, execution_id=execution.id)
        return execution

    def pause(self, task_id: str | None = None) -> None:
        """Pause one task's schedule, or every schedule when *task_id* is None."""
        if task_id is None:
            self._paused = True
        else:
            self._paused_tasks.add(task_id)
        logger.info("scheduler.paused", task_id=task_id)

    def resume(self, task_id: str | None = None) -> None:
        if task_id is None:
            self._paused = False
        else:
            self._paused_tasks.discard(task_id)
        logger.info("scheduler.resumed", task_id=task_id)

    # === Health & stats ===

    @property
    def errors(self) -> list[SchedulingError]:
        """Most recent scheduling errors, oldest first."""
        return list(self._errors)

    def next_fire_times(self) -> dict[str, datetime]:
        return {task_id: state.next_fire for task_id, state in self._states.items()}

    def health(self) -> SchedulerHealth:
        backend_health = self.backend.health()
        return SchedulerHealth(
            healthy=bool(backend_health.get("healthy")) and not self._paused,
            backend=backend_health,
            paused=self._paused,
            scheduled_tasks=len(self._states),
            invalid_schedules=len(self._invalid),
            last_tick=self._stats.last_tick,
            stats=self.get_stats(),
        )

    def get_stats(self) -> SchedulerStats:
        return SchedulerStats(**vars(self._stats))

    def reset_stats(self) -> None:
        self._stats = SchedulerStats()
