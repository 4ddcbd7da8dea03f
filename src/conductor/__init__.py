"""
conductor - orchestration engine for tasks and multi-step workflows.

A priority task queue, a cron scheduler that fills it, a task executor that
dispatches by task type, and a workflow engine that sequences steps with
per-step retry. :class:`~conductor.engine.Conductor` wires them together.
"""

from conductor.core.errors import (
    ConcurrencyConflict,
    ConductorError,
    ExecutionCancelled,
    HandlerError,
    HandlerTimeoutError,
    NotFoundError,
    SchedulingError,
    ValidationError,
    WorkflowError,
)
from conductor.core.models import ExecutionStatus, PriorityBand, Task, TaskExecution
from conductor.core.settings import ConductorSettings
from conductor.engine import Conductor
from conductor.execution.context import ExecutionContext
from conductor.orchestration.models import Workflow, WorkflowExecution, WorkflowExecutionStatus, WorkflowStep

__version__ = "0.1.0"

__all__ = [
    "Conductor",
    "ConductorSettings",
    "ExecutionContext",
    "Task",
    "TaskExecution",
    "ExecutionStatus",
    "PriorityBand",
    "Workflow",
    "WorkflowStep",
    "WorkflowExecution",
    "WorkflowExecutionStatus",
    "ConductorError",
    "ValidationError",
    "HandlerError",
    "HandlerTimeoutError",
    "ExecutionCancelled",
    "SchedulingError",
    "ConcurrencyConflict",
    "NotFoundError",
    "WorkflowError",
]
