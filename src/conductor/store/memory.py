"""In-memory execution record store.

Thread-safe (one re-entrant lock) and copy-on-read/copy-on-write, so callers
can never mutate stored state by holding on to a returned object. Used by
tests and by deployments that accept losing state on restart.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, TypeVar

from conductor.core.errors import ConcurrencyConflict, NotFoundError
from conductor.core.models import ExecutionStatus, Task, TaskExecution
from conductor.core.timestamps import ensure_utc
from conductor.orchestration.models import StepExecution, Workflow, WorkflowExecution, WorkflowExecutionStatus
from conductor.store.protocol import (
    ExecutionFilter,
    Page,
    PagedExecutions,
    check_execution_update,
    check_step_update,
    check_transition_fields,
    check_workflow_update,
    queue_order,
)

T = TypeVar("T")


def _copy(value: T) -> T:
    return copy.deepcopy(value)


class MemoryStore:
    """Dict-backed :class:`~conductor.store.protocol.ExecutionStore`."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._executions: dict[str, TaskExecution] = {}
        self._schedule_index: dict[tuple[str, datetime], str] = {}
        self._workflows: dict[str, Workflow] = {}
        self._workflow_executions: dict[str, WorkflowExecution] = {}
        self._steps: dict[str, StepExecution] = {}

    # === Tasks ===

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise ConcurrencyConflict(f"Task {task.id} already exists")
            self._tasks[task.id] = _copy(task)
            return _copy(task)

    def update_task(self, task: Task) -> Task:
        with self._lock:
            if task.id not in self._tasks:
                raise NotFoundError(f"Task {task.id} not found")
            self._tasks[task.id] = _copy(task)
            return _copy(task)

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return _copy(task) if task else None

    def list_tasks(self, *, active_only: bool = False) -> list[Task]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if t.active or not active_only]
            return [_copy(t) for t in sorted(tasks, key=lambda t: t.created_at)]

    # === Task executions ===

    def create_execution(self, execution: TaskExecution) -> TaskExecution:
        with self._lock:
            if execution.id in self._executions:
                raise ConcurrencyConflict(f"Execution {execution.id} already exists")
            key = self._schedule_key(execution)
            if key is not None and key in self._schedule_index:
                raise ConcurrencyConflict(
                    f"Task {execution.task_id} already fired for {execution.scheduled_for.isoformat()}"
                )
            self._executions[execution.id] = _copy(execution)
            if key is not None:
                self._schedule_index[key] = execution.id
            return _copy(execution)

    def update_execution(self, execution: TaskExecution) -> TaskExecution:
        with self._lock:
            stored = self._require_execution(execution.id)
            check_execution_update(stored.status, execution.status)
            self._executions[execution.id] = _copy(execution)
            return _copy(execution)

    def get_execution(self, execution_id: str) -> TaskExecution | None:
        with self._lock:
            execution = self._executions.get(execution_id)
            return _copy(execution) if execution else None

    def find_executions_by_status(self, status: ExecutionStatus) -> list[TaskExecution]:
        with self._lock:
            matches = [e for e in self._executions.values() if e.status == status]
            return [_copy(e) for e in queue_order(matches)]

    def find_execution_for_schedule(self, task_id: str, scheduled_for: datetime) -> TaskExecution | None:
        with self._lock:
            execution_id = self._schedule_index.get((task_id, ensure_utc(scheduled_for)))
            return self.get_execution(execution_id) if execution_id else None

    def claim_execution(self, execution_id: str, started_at: datetime) -> TaskExecution:
        return self.transition_execution(
            execution_id,
            ExecutionStatus.QUEUED,
            ExecutionStatus.RUNNING,
            started_at=started_at,
        )

    def transition_execution(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        target: ExecutionStatus,
        **changes: Any,
    ) -> TaskExecution:
        check_transition_fields(changes)
        with self._lock:
            stored = self._require_execution(execution_id)
            if stored.status != expected:
                raise ConcurrencyConflict(
                    f"Execution {execution_id} is {stored.status.value}, expected {expected.value}"
                ).with_context(execution_id=execution_id)
            check_execution_update(stored.status, target)
            updated = _copy(stored)
            updated.status = target
            for name, value in changes.items():
                setattr(updated, name, _copy(value))
            self._executions[execution_id] = updated
            return _copy(updated)

    def list_executions(self, flt: ExecutionFilter, page: Page) -> PagedExecutions:
        with self._lock:
            matches = [e for e in self._executions.values() if flt.matches(e)]
            matches.sort(key=lambda e: e.queued_at, reverse=True)
            window = matches[page.offset : page.offset + page.limit]
            return PagedExecutions(
                items=[_copy(e) for e in window],
                total=len(matches),
                limit=page.limit,
                offset=page.offset,
            )

    def count_executions_by_status(self) -> dict[ExecutionStatus, int]:
        with self._lock:
            counts = {status: 0 for status in ExecutionStatus}
            for execution in self._executions.values():
                counts[execution.status] += 1
            return counts

    # === Workflows ===

    def create_workflow(self, workflow: Workflow) -> Workflow:
        with self._lock:
            if workflow.id in self._workflows:
                raise ConcurrencyConflict(f"Workflow {workflow.id} already exists")
            self._workflows[workflow.id] = _copy(workflow)
            return _copy(workflow)

    def update_workflow(self, workflow: Workflow) -> Workflow:
        with self._lock:
            if workflow.id not in self._workflows:
                raise NotFoundError(f"Workflow {workflow.id} not found")
            self._workflows[workflow.id] = _copy(workflow)
            return _copy(workflow)

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            return _copy(workflow) if workflow else None

    def list_workflows(self) -> list[Workflow]:
        with self._lock:
            return [_copy(w) for w in sorted(self._workflows.values(), key=lambda w: w.created_at)]

    # === Workflow executions ===

    def create_workflow_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._lock:
            if execution.id in self._workflow_executions:
                raise ConcurrencyConflict(f"Workflow execution {execution.id} already exists")
            self._workflow_executions[execution.id] = _copy(execution)
            return _copy(execution)

    def update_workflow_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._lock:
            stored = self._workflow_executions.get(execution.id)
            if stored is None:
                raise NotFoundError(f"Workflow execution {execution.id} not found")
            check_workflow_update(stored.status, execution.status)
            self._workflow_executions[execution.id] = _copy(execution)
            return _copy(execution)

    def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None:
        with self._lock:
            execution = self._workflow_executions.get(execution_id)
            return _copy(execution) if execution else None

    def find_workflow_executions_by_status(self, status: WorkflowExecutionStatus) -> list[WorkflowExecution]:
        with self._lock:
            matches = [e for e in self._workflow_executions.values() if e.status == status]
            return [_copy(e) for e in sorted(matches, key=lambda e: e.created_at)]

    # === Step executions ===

    def create_step_execution(self, step: StepExecution) -> StepExecution:
        with self._lock:
            if step.id in self._steps:
                raise ConcurrencyConflict(f"Step execution {step.id} already exists")
            self._steps[step.id] = _copy(step)
            return _copy(step)

    def update_step_execution(self, step: StepExecution) -> StepExecution:
        with self._lock:
            stored = self._steps.get(step.id)
            if stored is None:
                raise NotFoundError(f"Step execution {step.id} not found")
            check_step_update(stored.status, step.status)
            self._steps[step.id] = _copy(step)
            return _copy(step)

    def get_step_execution(self, step_id: str) -> StepExecution | None:
        with self._lock:
            step = self._steps.get(step_id)
            return _copy(step) if step else None

    def list_step_executions(self, workflow_execution_id: str) -> list[StepExecution]:
        with self._lock:
            steps = [s for s in self._steps.values() if s.workflow_execution_id == workflow_execution_id]
            return [_copy(s) for s in sorted(steps, key=lambda s: s.step_index)]

    # === Internals ===

    def _require_execution(self, execution_id: str) -> TaskExecution:
        stored = self._executions.get(execution_id)
        if stored is None:
            raise NotFoundError(f"Execution {execution_id} not found").with_context(execution_id=execution_id)
        return stored

    @staticmethod
    def _schedule_key(execution: TaskExecution) -> tuple[str, datetime] | None:
        if execution.task_id is None or execution.scheduled_for is None:
            return None
        return (execution.task_id, ensure_utc(execution.scheduled_for))
