"""
In-memory priority queue of due TaskExecutions.

Manifesto:
    The queue is a transient, reconstructible view. The store owns durable
    state; callers persist an execution as ``queued`` before enqueueing it,
    and on process start the queue is rebuilt from the store's queued rows.
    The queue itself never touches storage.

Ordering:
    (priority ascending, queued_at ascending, submission sequence). Lower
    numbers are more urgent; within one priority, first in is first out.
    Items are never re-ordered after enqueue (no aging), so sustained
    high-priority load can starve lower bands.

Architecture:
    ::

        Scheduler ──enqueue──┐                ┌──dequeue_next── Executor
        Facade    ──enqueue──┤                ├──remove──────── cancel
                             ▼                │
                  ┌────────────────────────────────────┐
                  │ TaskQueue                           │
                  │  heap: [(prio, queued_at, seq, id)] │
                  │  entries: {id: _Entry}              │
                  │  Condition(lock)  one writer lock   │
                  └────────────────────────────────────┘
                             │
                             └──stats / peek_by_priority (snapshot)

Removal is lazy: ``remove`` marks the entry and drops it from the index;
dequeue skips marked heap items.

Tags:
    conductor, queue, priority, heapq, fifo

Doc-Types:
    api-reference
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from conductor.core.errors import ValidationError
from conductor.core.logging import get_logger
from conductor.core.models import ExecutionStatus, PriorityBand, TaskExecution, band_for
from conductor.core.timestamps import to_iso8601

logger = get_logger(__name__)


@dataclass(order=True)
class _Entry:
    priority: int
    queued_at: datetime
    seq: int
    execution: TaskExecution = field(compare=False)
    removed: bool = field(default=False, compare=False)


@dataclass
class QueueStats:
    """Point-in-time queue depth and distribution."""

    total_queued: int = 0
    by_priority_band: dict[str, int] = field(default_factory=lambda: {b.value: 0 for b in PriorityBand})
    oldest_queued_at: datetime | None = None
    average_priority: float | None = None
    priority_distribution: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_queued": self.total_queued,
            "by_priority_band": dict(self.by_priority_band),
            "oldest_queued_at": to_iso8601(self.oldest_queued_at),
            "average_priority": self.average_priority,
            "priority_distribution": {str(k): v for k, v in sorted(self.priority_distribution.items())},
        }


class TaskQueue:
    """Thread-safe priority queue of queued TaskExecutions."""

    def __init__(self) -> None:
        self._heap: list[_Entry] = []
        self._entries: dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._cond = threading.Condition(threading.Lock())

    # === Mutation ===

    def enqueue(self, execution: TaskExecution) -> None:
        """Insert a ``queued`` execution.

        Raises:
            ValidationError: Execution is not queued or is already enqueued.
        """
        if execution.status != ExecutionStatus.QUEUED:
            raise ValidationError(
                f"Only queued executions can be enqueued, got {execution.status.value}",
                field="status",
                value=execution.status.value,
            )
        with self._cond:
            if execution.id in self._entries:
                raise ValidationError(f"Execution {execution.id} is already queued", field="id", value=execution.id)
            self._push(execution)
            self._cond.notify()
        logger.debug("queue.enqueued", execution_id=execution.id, priority=execution.priority)

    def dequeue_next(self, timeout: float | None = None) -> TaskExecution | None:
        """Remove and return the most urgent execution.

        Returns None when the queue is empty. With a *timeout*, waits up to
        that many seconds for an item to arrive first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                entry = self._pop()
                if entry is not None:
                    return entry.execution
                if deadline is None:
                    return None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def remove(self, execution_id: str) -> bool:
        """Drop an execution (cancellation path). False if it is not queued."""
        with self._cond:
            entry = self._entries.pop(execution_id, None)
            if entry is None:
                return False
            entry.removed = True
        logger.debug("queue.removed", execution_id=execution_id)
        return True

    def rebuild(self, executions: Iterable[TaskExecution]) -> int:
        """Replace the content with *executions* (crash recovery).

        Non-queued rows are ignored. Order follows (priority, queued_at) and,
        for exact ties, the iteration order of *executions*.
        """
        queued = [e for e in executions if e.status == ExecutionStatus.QUEUED]
        queued.sort(key=lambda e: (e.priority, e.queued_at))
        with self._cond:
            self._heap = []
            self._entries = {}
            for execution in queued:
                if execution.id not in self._entries:
                    self._push(execution)
            self._cond.notify_all()
        logger.info("queue.rebuilt", total_queued=len(self._entries))
        return len(self._entries)

    def clear(self) -> None:
        with self._cond:
            self._heap = []
            self._entries = {}

    def wake_all(self) -> None:
        """Release threads blocked in :meth:`dequeue_next` (shutdown)."""
        with self._cond:
            self._cond.notify_all()

    # === Read-only views ===

    def peek_by_priority(self, band: PriorityBand | str) -> list[TaskExecution]:
        """Ordered snapshot of one band's executions. Does not mutate."""
        band = PriorityBand(band)
        return [e.execution.copy() for e in self._snapshot() if band_for(e.priority) == band]

    def peek(self) -> TaskExecution | None:
        """The execution :meth:`dequeue_next` would return, without removing it."""
        snapshot = self._snapshot()
        return snapshot[0].execution.copy() if snapshot else None

    def stats(self) -> QueueStats:
        entries = self._snapshot()
        stats = QueueStats(total_queued=len(entries))
        if not entries:
            return stats
        for entry in entries:
            stats.by_priority_band[band_for(entry.priority).value] += 1
        stats.oldest_queued_at = min(e.queued_at for e in entries)
        stats.average_priority = sum(e.priority for e in entries) / len(entries)
        stats.priority_distribution = dict(Counter(e.priority for e in entries))
        return stats

    def ids(self) -> list[str]:
        """Queued execution ids in dequeue order."""
        return [e.execution.id for e in self._snapshot()]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._entries

    # === Internals ===

    def _push(self, execution: TaskExecution) -> None:
        entry = _Entry(execution.priority, execution.queued_at, next(self._seq), execution.copy())
        self._entries[execution.id] = entry
        heapq.heappush(self._heap, entry)

    def _pop(self) -> _Entry | None:
        while self._heap:
            entry = heapq.heappop(self._heap)
            if entry.removed:
                continue
            del self._entries[entry.execution.id]
            return entry
        return None

    def _snapshot(self) -> list[_Entry]:
        with self._cond:
            entries = list(self._entries.values())
        return sorted(entries)
