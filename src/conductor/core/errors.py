"""
Structured error types for the conductor engine.

Every failure the engine records or raises is a :class:`ConductorError`
subclass carrying a category, a retryable flag, structured context and an
optional chained cause. Executors store ``error_type`` (the class name) and
``message`` on execution rows, so the hierarchy doubles as the vocabulary of
failure reasons surfaced through the query API.

Manifesto:
    - **Typed Error Hierarchy:** One class per failure mode the engine reacts to
    - **Explicit Retry Semantics:** Each error knows if a workflow may retry it
    - **Rich Context:** Errors carry execution/task/workflow identifiers
    - **Error Chaining:** Original exceptions are preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                      ConductorError                              │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError    HandlerError          SchedulingError        │
        │  (VALIDATION)       (HANDLER, retryable)  (SCHEDULING)           │
        │                          │                                       │
        │                     HandlerTimeoutError                          │
        │                     ExecutionCancelled                           │
        │                                                                  │
        │  ConcurrencyConflict  NotFoundError   StoreError   WorkflowError │
        │  (CONCURRENCY)        (NOT_FOUND)     (STORAGE)    (WORKFLOW)    │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Raise bare Exception from a handler for a bad config
    ✅ DO: Raise ValidationError from ``validate()`` so the run never starts

    ❌ DON'T: Let a handler failure escape the executor loop
    ✅ DO: Record it on the execution row and keep dequeuing

Tags:
    error-handling, exception-hierarchy, retry-logic, conductor

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories used for classification and routing."""

    VALIDATION = "VALIDATION"  # Bad task configuration or arguments
    HANDLER = "HANDLER"  # Handler raised while doing the work
    TIMEOUT = "TIMEOUT"  # Handler exceeded its bound
    CANCELLED = "CANCELLED"  # Cooperative cancellation
    SCHEDULING = "SCHEDULING"  # Cron or scheduler-level persistence
    CONCURRENCY = "CONCURRENCY"  # Lost a compare-and-set race
    NOT_FOUND = "NOT_FOUND"
    STORAGE = "STORAGE"
    WORKFLOW = "WORKFLOW"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are serialized; anything without a dedicated field
    goes into ``metadata``.

    Examples:
        >>> ctx = ErrorContext(execution_id="abc-123", task_type="http_check")
        >>> ctx.to_dict()
        {'execution_id': 'abc-123', 'task_type': 'http_check'}
    """

    execution_id: str | None = None
    task_id: str | None = None
    task_type: str | None = None
    workflow_execution_id: str | None = None
    step: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["execution_id", "task_id", "task_type", "workflow_execution_id", "step"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ConductorError(Exception):
    """
    Base exception for all conductor errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance.

    Examples:
        >>> error = ConductorError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(execution_id="e-1").context.execution_id
        'e-1'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ConductorError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION
# =============================================================================


class ValidationError(ConductorError):
    """
    Invalid task configuration or argument.

    Raised before an execution enters ``running``. Never retried.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.constraint = constraint

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        if self.constraint:
            result["constraint"] = self.constraint
        return result


# =============================================================================
# HANDLER FAILURES
# =============================================================================


class HandlerError(ConductorError):
    """The handler failed while doing its work. Retryable under workflow policy."""

    default_category = ErrorCategory.HANDLER
    default_retryable = True


class HandlerTimeoutError(HandlerError):
    """The handler exceeded its execution bound."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, message: str, *, timeout: float | None = None, elapsed: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        self.elapsed = elapsed


class ExecutionCancelled(HandlerError):
    """Raised by a handler (or the executor) to acknowledge a cancel request."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False


class ExecutionInterrupted(HandlerError):
    """Recorded on a row found running at start with no live handler."""


# =============================================================================
# ENGINE-LEVEL ERRORS
# =============================================================================


class SchedulingError(ConductorError):
    """Malformed cron expression or scheduler-level persistence failure."""

    default_category = ErrorCategory.SCHEDULING
    default_retryable = False

    def __init__(self, message: str, *, task_id: str | None = None, expression: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.task_id = task_id
        self.expression = expression
        if task_id is not None:
            self.context.task_id = task_id


class ConcurrencyConflict(ConductorError):
    """A compare-and-set or unique-key write lost the race."""

    default_category = ErrorCategory.CONCURRENCY
    default_retryable = True


class NotFoundError(ConductorError):
    """Referenced entity does not exist."""

    default_category = ErrorCategory.NOT_FOUND


class StoreError(ConductorError):
    """The execution record store failed to read or write."""

    default_category = ErrorCategory.STORAGE
    default_retryable = True


class WorkflowError(ConductorError):
    """Invalid workflow definition or illegal workflow operation."""

    default_category = ErrorCategory.WORKFLOW


class InvalidTransitionError(ValueError):
    """Raised when an illegal state transition is attempted.

    Transition tables in :mod:`conductor.core.models` and
    :mod:`conductor.orchestration.models` list every legal move; terminal
    states map to an empty set.
    """

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def error_type_name(error: BaseException) -> str:
    """Name recorded in ``error_type`` columns."""
    return error.__class__.__name__


def is_retryable(error: BaseException) -> bool:
    """Whether workflow step policy may retry after *error*."""
    if isinstance(error, ConductorError):
        return error.retryable
    return True


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ConductorError",
    "ValidationError",
    "HandlerError",
    "HandlerTimeoutError",
    "ExecutionCancelled",
    "ExecutionInterrupted",
    "SchedulingError",
    "ConcurrencyConflict",
    "NotFoundError",
    "StoreError",
    "WorkflowError",
    "InvalidTransitionError",
    "error_type_name",
    "is_retryable",
]
