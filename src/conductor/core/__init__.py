"""Core building blocks: models, errors, settings, logging and timestamps."""

from conductor.core.errors import (
    ConcurrencyConflict,
    ConductorError,
    ErrorCategory,
    ExecutionCancelled,
    HandlerError,
    HandlerTimeoutError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingError,
    StoreError,
    ValidationError,
    WorkflowError,
)
from conductor.core.models import ExecutionStatus, PriorityBand, Task, TaskExecution

__all__ = [
    "ConductorError",
    "ErrorCategory",
    "ValidationError",
    "HandlerError",
    "HandlerTimeoutError",
    "ExecutionCancelled",
    "SchedulingError",
    "ConcurrencyConflict",
    "NotFoundError",
    "StoreError",
    "WorkflowError",
    "InvalidTransitionError",
    "ExecutionStatus",
    "PriorityBand",
    "Task",
    "TaskExecution",
]
