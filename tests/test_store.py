"""Tests for the execution record store contract, run against MemoryStore and SQLiteStore."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conductor.core.errors import ConcurrencyConflict, InvalidTransitionError, NotFoundError
from conductor.core.models import ExecutionStatus, Task, TaskExecution
from conductor.orchestration.models import (
    StepExecution,
    StepStatus,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStatus,
    WorkflowStep,
)
from conductor.store import MemoryStore, SQLiteStore, create_store
from conductor.store.protocol import ExecutionFilter, ExecutionStore, Page

from conftest import T0


def _scheduled(task: Task, offset_minutes: int = 0) -> TaskExecution:
    return TaskExecution.for_task(task, scheduled_for=T0 + timedelta(minutes=offset_minutes))


class TestFactory:
    def test_memory_by_default(self):
        assert isinstance(create_store(None), MemoryStore)

    def test_sqlite_with_path(self, tmp_path):
        s = create_store(str(tmp_path / "nested" / "c.db"))
        try:
            assert isinstance(s, SQLiteStore)
            assert isinstance(s, ExecutionStore)
        finally:
            s.close()


# ── Tasks ────────────────────────────────────────────────────


class TestTasks:
    def test_create_get_update(self, any_store):
        task = Task.create("health", "http_check", {"url": "https://x"}, cron_schedule="*/5 * * * *")
        any_store.create_task(task)

        loaded = any_store.get_task(task.id)
        assert loaded.name == "health"
        assert loaded.configuration == {"url": "https://x"}
        assert loaded.cron_schedule == "*/5 * * * *"
        assert loaded.created_at == task.created_at

        loaded.active = False
        any_store.update_task(loaded)
        assert any_store.get_task(task.id).active is False

    def test_list_active_only(self, any_store):
        a = Task.create("a", "echo")
        b = Task.create("b", "echo")
        b.active = False
        any_store.create_task(a)
        any_store.create_task(b)

        assert {t.id for t in any_store.list_tasks()} == {a.id, b.id}
        assert [t.id for t in any_store.list_tasks(active_only=True)] == [a.id]

    def test_unknown_task(self, any_store):
        assert any_store.get_task("missing") is None
        with pytest.raises(NotFoundError):
            any_store.update_task(Task.create("ghost", "echo"))


# ── Executions ───────────────────────────────────────────────


class TestExecutions:
    def test_round_trip(self, any_store):
        execution = TaskExecution.create("echo", {"n": [1, 2]}, priority="high", input_data={"k": "v"})
        any_store.create_execution(execution)

        loaded = any_store.get_execution(execution.id)
        assert loaded.config == {"n": [1, 2]}
        assert loaded.input_data == {"k": "v"}
        assert loaded.priority == 1
        assert loaded.status == ExecutionStatus.QUEUED
        assert loaded.queued_at == execution.queued_at

    def test_returned_rows_are_copies(self, any_store):
        execution = TaskExecution.create("echo", {"a": 1})
        any_store.create_execution(execution)
        loaded = any_store.get_execution(execution.id)
        loaded.config["a"] = 2
        assert any_store.get_execution(execution.id).config == {"a": 1}

    def test_claim_is_compare_and_set(self, any_store):
        """Only one claimer wins; the second sees ConcurrencyConflict."""
        execution = TaskExecution.create("echo")
        any_store.create_execution(execution)

        claimed = any_store.claim_execution(execution.id, started_at=T0)
        assert claimed.status == ExecutionStatus.RUNNING
        assert claimed.started_at == T0
        with pytest.raises(ConcurrencyConflict):
            any_store.claim_execution(execution.id, started_at=T0)

    def test_transition_sets_fields(self, any_store):
        execution = TaskExecution.create("echo")
        any_store.create_execution(execution)
        any_store.claim_execution(execution.id, started_at=T0)

        done = any_store.transition_execution(
            execution.id,
            ExecutionStatus.RUNNING,
            ExecutionStatus.SUCCEEDED,
            output={"ok": True},
            progress=100,
            completed_at=T0 + timedelta(seconds=2),
            duration_ms=2000.0,
        )
        assert done.status == ExecutionStatus.SUCCEEDED
        assert done.output == {"ok": True}
        assert done.duration_ms == 2000.0

    def test_terminal_rows_are_immutable(self, any_store):
        execution = TaskExecution.create("echo")
        any_store.create_execution(execution)
        any_store.transition_execution(execution.id, ExecutionStatus.QUEUED, ExecutionStatus.CANCELLED)

        with pytest.raises(ConcurrencyConflict):
            any_store.claim_execution(execution.id, started_at=T0)
        with pytest.raises(InvalidTransitionError):
            any_store.transition_execution(
                execution.id, ExecutionStatus.CANCELLED, ExecutionStatus.CANCELLED, error="again"
            )
        row = any_store.get_execution(execution.id)
        row.status = ExecutionStatus.RUNNING
        with pytest.raises(InvalidTransitionError):
            any_store.update_execution(row)

    def test_terminal_reads_are_stable(self, any_store):
        """Two reads of a finished row agree and mutating one does not touch the other."""
        execution = TaskExecution.create("echo", {"n": [1]}, input_data={"k": "v"})
        any_store.create_execution(execution)
        any_store.claim_execution(execution.id, started_at=T0)
        any_store.transition_execution(
            execution.id,
            ExecutionStatus.RUNNING,
            ExecutionStatus.SUCCEEDED,
            output={"rows": [1, 2]},
            progress=100,
            completed_at=T0 + timedelta(seconds=1),
            duration_ms=1000.0,
        )

        first = any_store.get_execution(execution.id)
        second = any_store.get_execution(execution.id)
        assert first.to_dict() == second.to_dict()

        first.output["rows"].append(3)
        first.config["n"] = []
        assert any_store.get_execution(execution.id).to_dict() == second.to_dict()
        assert second.output == {"rows": [1, 2]}

    def test_transition_rejects_unknown_fields(self, any_store):
        execution = TaskExecution.create("echo")
        any_store.create_execution(execution)
        with pytest.raises(ValueError):
            any_store.transition_execution(
                execution.id, ExecutionStatus.QUEUED, ExecutionStatus.RUNNING, priority=0
            )

    def test_transition_unknown_execution(self, any_store):
        with pytest.raises(NotFoundError):
            any_store.claim_execution("missing", started_at=T0)

    def test_find_by_status_in_queue_order(self, any_store):
        low = TaskExecution.create("echo", priority=8)
        high = TaskExecution.create("echo", priority=1)
        running = TaskExecution.create("echo", priority=0)
        for e in (low, high, running):
            any_store.create_execution(e)
        any_store.claim_execution(running.id, started_at=T0)

        queued = any_store.find_executions_by_status(ExecutionStatus.QUEUED)
        assert [e.id for e in queued] == [high.id, low.id]

    def test_schedule_key_is_unique(self, any_store):
        """At most one execution per (task_id, scheduled_for)."""
        task = Task.create("t", "echo")
        first = _scheduled(task)
        any_store.create_execution(first)

        assert any_store.find_execution_for_schedule(task.id, T0).id == first.id
        assert any_store.find_execution_for_schedule(task.id, T0 + timedelta(minutes=1)) is None
        with pytest.raises(ConcurrencyConflict):
            any_store.create_execution(_scheduled(task))
        any_store.create_execution(_scheduled(task, offset_minutes=1))

    def test_unscheduled_runs_do_not_collide(self, any_store):
        task = Task.create("t", "echo")
        any_store.create_execution(TaskExecution.for_task(task))
        any_store.create_execution(TaskExecution.for_task(task))
        assert any_store.count_executions_by_status()[ExecutionStatus.QUEUED] == 2


class TestListing:
    @pytest.fixture
    def populated(self, any_store):
        ids = []
        for i in range(5):
            execution = TaskExecution.create("echo" if i % 2 == 0 else "fail")
            execution.queued_at = T0 + timedelta(seconds=i)
            any_store.create_execution(execution)
            ids.append(execution.id)
        any_store.transition_execution(ids[0], ExecutionStatus.QUEUED, ExecutionStatus.CANCELLED)
        return any_store, ids

    def test_newest_first_with_pagination(self, populated):
        s, ids = populated
        page = s.list_executions(ExecutionFilter(), Page(limit=2, offset=1))
        assert [e.id for e in page.items] == [ids[3], ids[2]]
        assert page.total == 5
        assert page.has_more is True

    def test_filter_by_status_and_type(self, populated):
        s, ids = populated
        cancelled = s.list_executions(ExecutionFilter.for_status("cancelled"), Page())
        assert [e.id for e in cancelled.items] == [ids[0]]

        fails = s.list_executions(ExecutionFilter(task_type="fail"), Page())
        assert {e.id for e in fails.items} == {ids[1], ids[3]}

    def test_filter_by_time_window(self, populated):
        s, ids = populated
        window = ExecutionFilter(queued_after=T0 + timedelta(seconds=1), queued_before=T0 + timedelta(seconds=3))
        assert {e.id for e in s.list_executions(window, Page()).items} == {ids[1], ids[2]}

    def test_counts_by_status(self, populated):
        s, _ = populated
        counts = s.count_executions_by_status()
        assert counts[ExecutionStatus.QUEUED] == 4
        assert counts[ExecutionStatus.CANCELLED] == 1
        assert counts[ExecutionStatus.SUCCEEDED] == 0

    def test_page_bounds(self):
        with pytest.raises(ValueError):
            Page(limit=0)
        with pytest.raises(ValueError):
            Page(offset=-1)


# ── Workflows ────────────────────────────────────────────────


class TestWorkflowRecords:
    def test_workflow_round_trip(self, any_store):
        wf = Workflow.create("wf", [WorkflowStep("a", "echo", {"x": 1}), WorkflowStep("b", "echo", depends_on=(0,), optional=True)])
        any_store.create_workflow(wf)

        loaded = any_store.get_workflow(wf.id)
        assert loaded.step_names == ["a", "b"]
        assert loaded.steps[1].depends_on == (0,)
        assert loaded.steps[1].optional is True
        assert [w.id for w in any_store.list_workflows()] == [wf.id]

    def test_workflow_update(self, any_store):
        wf = Workflow.create("wf", [WorkflowStep("a", "echo")])
        any_store.create_workflow(wf)

        wf.steps.append(WorkflowStep("b", "echo", depends_on=(0,)))
        wf.version = 2
        wf.status = WorkflowStatus.ARCHIVED
        any_store.update_workflow(wf)

        loaded = any_store.get_workflow(wf.id)
        assert loaded.step_names == ["a", "b"]
        assert loaded.version == 2
        assert loaded.status == WorkflowStatus.ARCHIVED
        with pytest.raises(NotFoundError):
            any_store.update_workflow(Workflow.create("ghost", [WorkflowStep("a", "echo")]))

    def test_workflow_execution_and_steps(self, any_store):
        wfe = WorkflowExecution.create("wf-1", {"env": "prod"})
        any_store.create_workflow_execution(wfe)
        for i, name in enumerate(["a", "b"]):
            any_store.create_step_execution(StepExecution.create(wfe.id, i, name))

        wfe.transition_to(WorkflowExecutionStatus.RUNNING)
        wfe.context["a"] = 1
        any_store.update_workflow_execution(wfe)
        assert any_store.get_workflow_execution(wfe.id).context == {"env": "prod", "a": 1}
        assert [e.id for e in any_store.find_workflow_executions_by_status(WorkflowExecutionStatus.RUNNING)] == [wfe.id]

        steps = any_store.list_step_executions(wfe.id)
        assert [s.step_name for s in steps] == ["a", "b"]
        steps[0].transition_to(StepStatus.RUNNING)
        steps[0].retry_count = 2
        any_store.update_step_execution(steps[0])
        assert any_store.get_step_execution(steps[0].id).retry_count == 2

    def test_terminal_workflow_execution_is_immutable(self, any_store):
        wfe = WorkflowExecution.create("wf-1")
        any_store.create_workflow_execution(wfe)
        wfe.transition_to(WorkflowExecutionStatus.CANCELLED)
        any_store.update_workflow_execution(wfe)

        wfe.error = "changed"
        with pytest.raises(InvalidTransitionError):
            any_store.update_workflow_execution(wfe)


class TestSQLiteDurability:
    def test_rows_survive_reopen(self, tmp_path):
        path = tmp_path / "c.db"
        first = SQLiteStore(path)
        execution = TaskExecution.create("echo", {"a": 1})
        first.create_execution(execution)
        first.close()

        second = SQLiteStore(path)
        try:
            assert second.get_execution(execution.id).config == {"a": 1}
            assert [e.id for e in second.find_executions_by_status(ExecutionStatus.QUEUED)] == [execution.id]
        finally:
            second.close()
