"""
Workflow models - definitions and runtime records for multi-step runs.

Definitions (:class:`Workflow`, :class:`WorkflowStep`) are plain data with
no execution logic; :mod:`conductor.orchestration.definition` validates
them and :mod:`conductor.orchestration.engine` drives the runtime records
(:class:`WorkflowExecution`, :class:`StepExecution`).

Design Principles:
- Status transitions are table-driven and checked before every write
- Steps reference their dependencies by index into the step list
- Runtime records are persisted after every step so a crash can resume
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conductor.core.errors import InvalidTransitionError
from conductor.core.models import new_id
from conductor.core.timestamps import to_iso8601, utc_now


class WorkflowStatus(str, Enum):
    """Lifecycle of a workflow definition."""

    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class WorkflowExecutionStatus(str, Enum):
    """Status of a workflow run.

    Valid transition graph::

        PENDING → RUNNING | CANCELLED
        RUNNING → SUCCEEDED | FAILED | CANCELLED
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not WORKFLOW_VALID_TRANSITIONS[self]


class StepStatus(str, Enum):
    """Status of one step within a workflow run.

    Valid transition graph::

        PENDING → RUNNING | SKIPPED | CANCELLED
        RUNNING → SUCCEEDED | FAILED | CANCELLED | PENDING (resume after crash)
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not STEP_VALID_TRANSITIONS[self]


WORKFLOW_VALID_TRANSITIONS: dict[WorkflowExecutionStatus, frozenset[WorkflowExecutionStatus]] = {
    WorkflowExecutionStatus.PENDING: frozenset({
        WorkflowExecutionStatus.RUNNING,
        WorkflowExecutionStatus.CANCELLED,
    }),
    WorkflowExecutionStatus.RUNNING: frozenset({
        WorkflowExecutionStatus.SUCCEEDED,
        WorkflowExecutionStatus.FAILED,
        WorkflowExecutionStatus.CANCELLED,
    }),
    WorkflowExecutionStatus.SUCCEEDED: frozenset(),
    WorkflowExecutionStatus.FAILED: frozenset(),
    WorkflowExecutionStatus.CANCELLED: frozenset(),
}

STEP_VALID_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({
        StepStatus.RUNNING,
        StepStatus.SKIPPED,
        StepStatus.CANCELLED,
    }),
    StepStatus.RUNNING: frozenset({
        StepStatus.SUCCEEDED,
        StepStatus.FAILED,
        StepStatus.CANCELLED,
        StepStatus.PENDING,  # interrupted by a crash, re-run on recovery
    }),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
}


def validate_workflow_transition(current: WorkflowExecutionStatus, target: WorkflowExecutionStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal."""
    if target not in WORKFLOW_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "WorkflowExecutionStatus")


def validate_step_transition(current: StepStatus, target: StepStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal."""
    if target not in STEP_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "StepStatus")


# =============================================================================
# Definitions
# =============================================================================


@dataclass(frozen=True)
class WorkflowStep:
    """
    A single step within a workflow definition.

    Attributes:
        name: Unique name within the workflow
        task_type: Registered task type that performs the work
        config: Handler configuration; ``${key}`` placeholders are filled
            from the shared context when the step runs
        depends_on: Indices of steps that must finish first
        optional: When True a failure after retries does not fail the workflow
        max_attempts: Retries after the first failure (0 = no retry)
        retry_delay_seconds: Backoff base delay
        max_retry_delay_seconds: Backoff cap
        timeout_seconds: Per-attempt bound (None = engine default)
    """

    name: str
    task_type: str
    config: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[int, ...] = field(default_factory=tuple)
    optional: bool = False
    max_attempts: int = 0
    retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 30.0
    timeout_seconds: float | None = None

    def __post_init__(self):
        if isinstance(self.depends_on, list):
            object.__setattr__(self, "depends_on", tuple(self.depends_on))

    @property
    def required(self) -> bool:
        return not self.optional

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowStep:
        """Create from dictionary (JSON deserialization)."""
        return cls(
            name=data["name"],
            task_type=data.get("task_type") or data["type"],
            config=dict(data.get("config") or {}),
            depends_on=tuple(data.get("depends_on") or ()),
            optional=bool(data.get("optional", False)),
            max_attempts=int(data.get("max_attempts", 0)),
            retry_delay_seconds=float(data.get("retry_delay_seconds", 1.0)),
            max_retry_delay_seconds=float(data.get("max_retry_delay_seconds", 30.0)),
            timeout_seconds=data.get("timeout_seconds"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "task_type": self.task_type,
            "config": self.config,
            "depends_on": list(self.depends_on),
            "optional": self.optional,
            "max_attempts": self.max_attempts,
            "retry_delay_seconds": self.retry_delay_seconds,
            "max_retry_delay_seconds": self.max_retry_delay_seconds,
            "timeout_seconds": self.timeout_seconds,
        }


@dataclass
class Workflow:
    """An ordered set of step definitions executed as a unit."""

    id: str
    name: str
    steps: list[WorkflowStep]
    owner: str | None = None
    version: int = 1
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    description: str = ""
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        name: str,
        steps: list[WorkflowStep | dict[str, Any]],
        *,
        owner: str | None = None,
        status: WorkflowStatus = WorkflowStatus.ACTIVE,
        description: str = "",
    ) -> Workflow:
        now = utc_now()
        return cls(
            id=new_id(),
            name=name,
            steps=[s if isinstance(s, WorkflowStep) else WorkflowStep.from_dict(s) for s in steps],
            owner=owner,
            status=status,
            description=description,
            created_at=now,
            updated_at=now,
        )

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "steps": [s.to_dict() for s in self.steps],
            "owner": self.owner,
            "version": self.version,
            "status": self.status.value,
            "description": self.description,
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }


# =============================================================================
# Runtime records
# =============================================================================


@dataclass
class WorkflowExecution:
    """A runtime instance of a Workflow.

    ``context`` is the shared key/value map visible to every step; step
    outputs are merged into it (last write wins).
    """

    id: str
    workflow_id: str
    status: WorkflowExecutionStatus = WorkflowExecutionStatus.PENDING
    context: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def create(cls, workflow_id: str, context: dict[str, Any] | None = None) -> WorkflowExecution:
        return cls(
            id=new_id(),
            workflow_id=workflow_id,
            context=copy.deepcopy(context or {}),
            created_at=utc_now(),
        )

    def transition_to(self, target: WorkflowExecutionStatus) -> None:
        validate_workflow_transition(self.status, target)
        self.status = target

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "context": self.context,
            "error": self.error,
            "created_at": to_iso8601(self.created_at),
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
        }


@dataclass
class StepExecution:
    """Runtime record of one step of a WorkflowExecution."""

    id: str
    workflow_execution_id: str
    step_index: int
    step_name: str
    status: StepStatus = StepStatus.PENDING
    output: dict[str, Any] | None = None
    error: str | None = None
    retry_count: int = 0
    task_execution_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def create(cls, workflow_execution_id: str, step_index: int, step_name: str) -> StepExecution:
        return cls(
            id=new_id(),
            workflow_execution_id=workflow_execution_id,
            step_index=step_index,
            step_name=step_name,
        )

    def transition_to(self, target: StepStatus) -> None:
        validate_step_transition(self.status, target)
        self.status = target

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_execution_id": self.workflow_execution_id,
            "step_index": self.step_index,
            "step_name": self.step_name,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "retry_count": self.retry_count,
            "task_execution_id": self.task_execution_id,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
        }
