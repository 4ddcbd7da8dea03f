"""Tests for ``conductor.execution.queue`` - priority ordering, FIFO ties, removal and stats."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conductor.core.errors import ValidationError
from conductor.core.models import ExecutionStatus, PriorityBand, TaskExecution
from conductor.execution.queue import TaskQueue

from conftest import T0


def _execution(priority: int, offset_seconds: float = 0.0, task_type: str = "echo") -> TaskExecution:
    execution = TaskExecution.create(task_type, {}, priority=priority)
    execution.queued_at = T0 + timedelta(seconds=offset_seconds)
    return execution


# ── Ordering ─────────────────────────────────────────────────


class TestOrdering:
    def test_lower_priority_number_first(self):
        """A priority-1 item dequeues before priority-5 and priority-8 items."""
        q = TaskQueue()
        low = _execution(8)
        medium = _execution(5)
        high = _execution(1, offset_seconds=10)
        for e in (low, medium, high):
            q.enqueue(e)

        assert [q.dequeue_next().id for _ in range(3)] == [high.id, medium.id, low.id]

    def test_fifo_within_priority(self):
        """Equal priorities dequeue in submission order."""
        q = TaskQueue()
        items = [_execution(5) for _ in range(5)]
        for e in items:
            e.queued_at = T0
            q.enqueue(e)

        assert [q.dequeue_next().id for _ in items] == [e.id for e in items]

    def test_earlier_queued_at_wins_within_priority(self):
        q = TaskQueue()
        late = _execution(3, offset_seconds=5)
        early = _execution(3, offset_seconds=1)
        q.enqueue(late)
        q.enqueue(early)

        assert q.dequeue_next().id == early.id

    def test_empty_queue_returns_none(self):
        assert TaskQueue().dequeue_next() is None

    def test_dequeue_waits_for_item(self):
        """With a timeout, dequeue blocks until another thread enqueues."""
        q = TaskQueue()
        execution = _execution(5)
        timer = threading.Timer(0.05, q.enqueue, args=(execution,))
        timer.start()
        try:
            got = q.dequeue_next(timeout=2.0)
        finally:
            timer.cancel()
        assert got is not None and got.id == execution.id

    def test_dequeue_timeout_expires(self):
        assert TaskQueue().dequeue_next(timeout=0.05) is None


# ── Enqueue validation ───────────────────────────────────────


class TestEnqueue:
    def test_rejects_non_queued(self):
        execution = _execution(5)
        execution.status = ExecutionStatus.RUNNING
        with pytest.raises(ValidationError):
            TaskQueue().enqueue(execution)

    def test_rejects_duplicate_id(self):
        q = TaskQueue()
        execution = _execution(5)
        q.enqueue(execution)
        with pytest.raises(ValidationError):
            q.enqueue(execution)
        assert len(q) == 1

    def test_enqueue_stores_a_copy(self):
        """Mutating the caller's object does not change the queued item."""
        q = TaskQueue()
        execution = _execution(5)
        q.enqueue(execution)
        execution.config["mutated"] = True

        assert "mutated" not in q.dequeue_next().config


# ── Removal ──────────────────────────────────────────────────


class TestRemove:
    def test_removed_item_never_dequeued(self):
        q = TaskQueue()
        a, b = _execution(1), _execution(2)
        q.enqueue(a)
        q.enqueue(b)

        assert q.remove(a.id) is True
        assert a.id not in q
        assert q.dequeue_next().id == b.id
        assert q.dequeue_next() is None

    def test_remove_unknown_returns_false(self):
        assert TaskQueue().remove("missing") is False

    def test_remove_after_dequeue_returns_false(self):
        q = TaskQueue()
        execution = _execution(5)
        q.enqueue(execution)
        q.dequeue_next()
        assert q.remove(execution.id) is False


# ── Views ────────────────────────────────────────────────────


class TestViews:
    def test_peek_by_priority_filters_band_and_keeps_order(self):
        q = TaskQueue()
        h2 = _execution(2, offset_seconds=1)
        h0 = _execution(0, offset_seconds=2)
        m = _execution(4)
        q.enqueue(h2)
        q.enqueue(m)
        q.enqueue(h0)

        high = q.peek_by_priority(PriorityBand.HIGH)
        assert [e.id for e in high] == [h0.id, h2.id]
        assert [e.id for e in q.peek_by_priority("medium")] == [m.id]
        assert q.peek_by_priority("low") == []
        assert len(q) == 3

    def test_peek_does_not_remove(self):
        q = TaskQueue()
        execution = _execution(5)
        q.enqueue(execution)
        assert q.peek().id == execution.id
        assert len(q) == 1

    def test_stats(self):
        q = TaskQueue()
        for priority, offset in [(1, 3), (1, 1), (5, 2), (9, 0)]:
            q.enqueue(_execution(priority, offset_seconds=offset))

        stats = q.stats()
        assert stats.total_queued == 4
        assert stats.by_priority_band == {"high": 2, "medium": 1, "low": 1}
        assert stats.oldest_queued_at == T0
        assert stats.average_priority == 4.0
        assert stats.priority_distribution == {1: 2, 5: 1, 9: 1}

    def test_stats_empty(self):
        stats = TaskQueue().stats()
        assert stats.total_queued == 0
        assert stats.oldest_queued_at is None
        assert stats.to_dict()["by_priority_band"] == {"high": 0, "medium": 0, "low": 0}


# ── Rebuild ──────────────────────────────────────────────────


class TestRebuild:
    def test_rebuild_orders_and_ignores_non_queued(self):
        """Crash recovery: only queued rows come back, in dequeue order."""
        q = TaskQueue()
        q.enqueue(_execution(1))
        a = _execution(5, offset_seconds=2)
        b = _execution(5, offset_seconds=1)
        c = _execution(0, offset_seconds=3)
        done = _execution(0)
        done.status = ExecutionStatus.SUCCEEDED

        count = q.rebuild([a, b, c, done])

        assert count == 3
        assert q.ids() == [c.id, b.id, a.id]

    def test_clear(self):
        q = TaskQueue()
        q.enqueue(_execution(5))
        q.clear()
        assert len(q) == 0
        assert q.dequeue_next() is None
