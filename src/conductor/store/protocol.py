"""
Execution Record Store contract.

The engine never talks to a database directly. Everything it persists goes
through :class:`ExecutionStore`: create / update / get / find-by-status for
each entity, plus two compare-and-set primitives that keep concurrent
workers honest:

- :meth:`ExecutionStore.claim_execution` moves a row ``queued → running``
  exactly once; the loser gets :class:`~conductor.core.errors.ConcurrencyConflict`.
- :meth:`ExecutionStore.transition_execution` applies a status change only
  if the row is still in the expected status.

Stores reject any write that would modify a row already in a terminal
status (``InvalidTransitionError``), and return copies, so a read never
exposes mutable internal state.

Tags:
    conductor, storage, repository, protocol

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from conductor.core.errors import InvalidTransitionError
from conductor.core.models import ExecutionStatus, Task, TaskExecution, validate_execution_transition
from conductor.orchestration.models import (
    StepExecution,
    StepStatus,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionStatus,
    validate_step_transition,
    validate_workflow_transition,
)

# Columns a compare-and-set transition may change alongside the status.
TRANSITION_FIELDS = frozenset({
    "output",
    "error",
    "error_type",
    "progress",
    "started_at",
    "completed_at",
    "duration_ms",
})


@dataclass
class ExecutionFilter:
    """Criteria for :meth:`ExecutionStore.list_executions`. None means "any"."""

    statuses: tuple[ExecutionStatus, ...] = field(default_factory=tuple)
    task_id: str | None = None
    task_type: str | None = None
    workflow_execution_id: str | None = None
    queued_after: datetime | None = None
    queued_before: datetime | None = None

    @classmethod
    def for_status(cls, *statuses: ExecutionStatus | str) -> ExecutionFilter:
        return cls(statuses=tuple(ExecutionStatus(s) for s in statuses))

    def matches(self, execution: TaskExecution) -> bool:
        if self.statuses and execution.status not in self.statuses:
            return False
        if self.task_id is not None and execution.task_id != self.task_id:
            return False
        if self.task_type is not None and execution.task_type != self.task_type:
            return False
        if self.workflow_execution_id is not None and execution.workflow_execution_id != self.workflow_execution_id:
            return False
        if self.queued_after is not None and execution.queued_at < self.queued_after:
            return False
        if self.queued_before is not None and execution.queued_at >= self.queued_before:
            return False
        return True


@dataclass(frozen=True)
class Page:
    """Pagination window."""

    limit: int = 50
    offset: int = 0

    def __post_init__(self):
        if self.limit < 1:
            raise ValueError("limit must be at least 1")
        if self.offset < 0:
            raise ValueError("offset must be >= 0")


@dataclass
class PagedExecutions:
    """One page of executions plus the total matching count."""

    items: list[TaskExecution]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [e.to_dict() for e in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "has_more": self.has_more,
        }


@runtime_checkable
class ExecutionStore(Protocol):
    """Narrow repository contract the engine consumes."""

    # --- Tasks -------------------------------------------------------------

    def create_task(self, task: Task) -> Task: ...

    def update_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(self, *, active_only: bool = False) -> list[Task]: ...

    # --- Task executions ---------------------------------------------------

    def create_execution(self, execution: TaskExecution) -> TaskExecution: ...

    def update_execution(self, execution: TaskExecution) -> TaskExecution: ...

    def get_execution(self, execution_id: str) -> TaskExecution | None: ...

    def find_executions_by_status(self, status: ExecutionStatus) -> list[TaskExecution]: ...

    def find_execution_for_schedule(self, task_id: str, scheduled_for: datetime) -> TaskExecution | None: ...

    def claim_execution(self, execution_id: str, started_at: datetime) -> TaskExecution: ...

    def transition_execution(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        target: ExecutionStatus,
        **changes: Any,
    ) -> TaskExecution: ...

    def list_executions(self, flt: ExecutionFilter, page: Page) -> PagedExecutions: ...

    def count_executions_by_status(self) -> dict[ExecutionStatus, int]: ...

    # --- Workflows ---------------------------------------------------------

    def create_workflow(self, workflow: Workflow) -> Workflow: ...

    def update_workflow(self, workflow: Workflow) -> Workflow: ...

    def get_workflow(self, workflow_id: str) -> Workflow | None: ...

    def list_workflows(self) -> list[Workflow]: ...

    # --- Workflow executions -----------------------------------------------

    def create_workflow_execution(self, execution: WorkflowExecution) -> WorkflowExecution: ...

    def update_workflow_execution(self, execution: WorkflowExecution) -> WorkflowExecution: ...

    def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None: ...

    def find_workflow_executions_by_status(self, status: WorkflowExecutionStatus) -> list[WorkflowExecution]: ...

    # --- Step executions ---------------------------------------------------

    def create_step_execution(self, step: StepExecution) -> StepExecution: ...

    def update_step_execution(self, step: StepExecution) -> StepExecution: ...

    def get_step_execution(self, step_id: str) -> StepExecution | None: ...

    def list_step_executions(self, workflow_execution_id: str) -> list[StepExecution]: ...


# =============================================================================
# Shared write guards
# =============================================================================


def check_execution_update(stored: ExecutionStatus, new: ExecutionStatus) -> None:
    """Refuse writes to terminal rows and illegal status moves."""
    if stored.is_terminal:
        raise InvalidTransitionError(stored.value, new.value, "ExecutionStatus")
    if stored != new:
        validate_execution_transition(stored, new)


def check_workflow_update(stored: WorkflowExecutionStatus, new: WorkflowExecutionStatus) -> None:
    if stored.is_terminal:
        raise InvalidTransitionError(stored.value, new.value, "WorkflowExecutionStatus")
    if stored != new:
        validate_workflow_transition(stored, new)


def check_step_update(stored: StepStatus, new: StepStatus) -> None:
    if stored.is_terminal:
        raise InvalidTransitionError(stored.value, new.value, "StepStatus")
    if stored != new:
        validate_step_transition(stored, new)


def check_transition_fields(changes: Iterable[str]) -> None:
    unknown = set(changes) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Cannot change {sorted(unknown)} during a status transition")


def queue_order(executions: Iterable[TaskExecution]) -> list[TaskExecution]:
    """Sort executions the way the queue dequeues them."""
    return sorted(executions, key=lambda e: (e.priority, e.queued_at))
