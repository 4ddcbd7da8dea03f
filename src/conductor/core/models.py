"""Task domain models.

Defines the core data structures for single-task execution:

- Task: a reusable, possibly cron-scheduled unit of work definition
- TaskExecution: one concrete run of a Task (or an ad-hoc invocation)
- PriorityBand: coarse urgency classification used by the queue

These models are used by the queue, scheduler, executor, stores and the
:class:`~conductor.engine.Conductor` facade.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conductor.core.errors import InvalidTransitionError, ValidationError
from conductor.core.timestamps import to_iso8601, utc_now


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Priority
# =============================================================================


class PriorityBand(str, Enum):
    """Coarse urgency classification. Lower numeric priority is more urgent."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Value assigned when a caller passes a band name instead of a number.
BAND_PRIORITY: dict[PriorityBand, int] = {
    PriorityBand.HIGH: 1,
    PriorityBand.MEDIUM: 5,
    PriorityBand.LOW: 8,
}

HIGH_MAX_PRIORITY = 2
MEDIUM_MAX_PRIORITY = 6
DEFAULT_PRIORITY = BAND_PRIORITY[PriorityBand.MEDIUM]


def band_for(priority: int) -> PriorityBand:
    """Map a numeric priority onto its band.

    Example:
        >>> band_for(0)
        <PriorityBand.HIGH: 'high'>
        >>> band_for(7)
        <PriorityBand.LOW: 'low'>
    """
    if priority <= HIGH_MAX_PRIORITY:
        return PriorityBand.HIGH
    if priority <= MEDIUM_MAX_PRIORITY:
        return PriorityBand.MEDIUM
    return PriorityBand.LOW


def resolve_priority(value: int | str | PriorityBand | None, default: int = DEFAULT_PRIORITY) -> int:
    """Normalize an int, band name or :class:`PriorityBand` to a numeric priority.

    Raises:
        ValidationError: Unknown band name, negative number or wrong type.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError("priority must be an int or band name", field="priority", value=value)
    if isinstance(value, int):
        if value < 0:
            raise ValidationError("priority must be >= 0", field="priority", value=value, constraint=">=0")
        return value
    if isinstance(value, str):
        try:
            return BAND_PRIORITY[PriorityBand(value.lower())]
        except ValueError:
            raise ValidationError(
                f"Unknown priority band: {value!r}. Expected one of: high, medium, low",
                field="priority",
                value=value,
            ) from None
    raise ValidationError("priority must be an int or band name", field="priority", value=value)


# =============================================================================
# Execution status
# =============================================================================


class ExecutionStatus(str, Enum):
    """Status of a task execution.

    Valid transition graph::

        QUEUED   → RUNNING | FAILED | CANCELLED
        RUNNING  → SUCCEEDED | FAILED | CANCELLED
        SUCCEEDED, FAILED, CANCELLED → (terminal)

    ``QUEUED → FAILED`` is the configuration-rejected path: validation runs
    before an execution may enter RUNNING.
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


EXECUTION_VALID_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.QUEUED: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.SUCCEEDED: frozenset(),  # terminal
    ExecutionStatus.FAILED: frozenset(),  # terminal
    ExecutionStatus.CANCELLED: frozenset(),  # terminal
}

TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.SUCCEEDED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})


def validate_execution_transition(current: ExecutionStatus, target: ExecutionStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_execution_transition(ExecutionStatus.RUNNING, ExecutionStatus.SUCCEEDED)
        >>> validate_execution_transition(ExecutionStatus.SUCCEEDED, ExecutionStatus.RUNNING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid ExecutionStatus transition: succeeded → running
    """
    allowed = EXECUTION_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value, "ExecutionStatus")


# =============================================================================
# Task
# =============================================================================


@dataclass
class Task:
    """A reusable unit of work definition.

    ``configuration`` is opaque here; the handler registered for
    ``task_type`` validates it. Executions snapshot type and configuration,
    so updating a task never affects executions already created.

    Example:
        >>> task = Task.create(
        ...     name="api-health",
        ...     task_type="http_check",
        ...     configuration={"url": "https://api.example.com/health"},
        ...     cron_schedule="*/5 * * * *",
        ... )
    """

    id: str
    name: str
    task_type: str
    configuration: dict[str, Any]
    cron_schedule: str | None = None
    owner: str | None = None
    active: bool = True
    default_priority: int = DEFAULT_PRIORITY
    timeout_seconds: float | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        name: str,
        task_type: str,
        configuration: dict[str, Any] | None = None,
        *,
        cron_schedule: str | None = None,
        owner: str | None = None,
        default_priority: int | str | PriorityBand | None = None,
        timeout_seconds: float | None = None,
    ) -> Task:
        """Create a new active task."""
        if not name:
            raise ValidationError("Task name is required", field="name")
        now = utc_now()
        return cls(
            id=new_id(),
            name=name,
            task_type=task_type,
            configuration=dict(configuration or {}),
            cron_schedule=cron_schedule or None,
            owner=owner,
            default_priority=resolve_priority(default_priority),
            timeout_seconds=timeout_seconds,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_scheduled(self) -> bool:
        return self.active and bool(self.cron_schedule)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "task_type": self.task_type,
            "configuration": self.configuration,
            "cron_schedule": self.cron_schedule,
            "owner": self.owner,
            "active": self.active,
            "default_priority": self.default_priority,
            "timeout_seconds": self.timeout_seconds,
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }


# =============================================================================
# TaskExecution
# =============================================================================


@dataclass
class TaskExecution:
    """One concrete run of a Task or an ad-hoc invocation.

    Mutated only by the executor and the queue's cancel path. Once
    ``status`` is terminal no further mutation is permitted; stores enforce
    this on write.
    """

    id: str
    task_type: str
    config: dict[str, Any]
    priority: int
    status: ExecutionStatus = ExecutionStatus.QUEUED
    task_id: str | None = None
    input_data: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None
    progress: int = 0
    timeout_seconds: float | None = None
    queued_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: float | None = None
    scheduled_for: datetime | None = None
    workflow_execution_id: str | None = None
    step_index: int | None = None

    @classmethod
    def create(
        cls,
        task_type: str,
        config: dict[str, Any] | None = None,
        *,
        priority: int | str | PriorityBand | None = None,
        task_id: str | None = None,
        input_data: dict[str, Any] | None = None,
        timeout_seconds: float | None = None,
        scheduled_for: datetime | None = None,
        workflow_execution_id: str | None = None,
        step_index: int | None = None,
    ) -> TaskExecution:
        """Create a new execution in QUEUED status."""
        return cls(
            id=new_id(),
            task_type=task_type,
            config=copy.deepcopy(config or {}),
            priority=resolve_priority(priority),
            task_id=task_id,
            input_data=copy.deepcopy(input_data or {}),
            timeout_seconds=timeout_seconds,
            queued_at=utc_now(),
            scheduled_for=scheduled_for,
            workflow_execution_id=workflow_execution_id,
            step_index=step_index,
        )

    @classmethod
    def for_task(
        cls,
        task: Task,
        input_overrides: dict[str, Any] | None = None,
        *,
        priority: int | str | PriorityBand | None = None,
        scheduled_for: datetime | None = None,
    ) -> TaskExecution:
        """Snapshot *task* into a new execution.

        Input overrides are layered over the task configuration; the raw
        overrides are kept separately as ``input_data``.
        """
        overrides = dict(input_overrides or {})
        return cls.create(
            task.task_type,
            {**task.configuration, **overrides},
            priority=task.default_priority if priority is None else priority,
            task_id=task.id,
            input_data=overrides,
            timeout_seconds=task.timeout_seconds,
            scheduled_for=scheduled_for,
        )

    @property
    def band(self) -> PriorityBand:
        return band_for(self.priority)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, target: ExecutionStatus) -> None:
        """Validate and apply a status change in memory."""
        validate_execution_transition(self.status, target)
        self.status = target

    def copy(self) -> TaskExecution:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "task_id": self.task_id,
            "task_type": self.task_type,
            "config": self.config,
            "input_data": self.input_data,
            "priority": self.priority,
            "priority_band": self.band.value,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "progress": self.progress,
            "timeout_seconds": self.timeout_seconds,
            "queued_at": to_iso8601(self.queued_at),
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "duration_ms": self.duration_ms,
            "scheduled_for": to_iso8601(self.scheduled_for),
            "workflow_execution_id": self.workflow_execution_id,
            "step_index": self.step_index,
        }
