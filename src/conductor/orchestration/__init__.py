"""Workflow orchestration: definitions, validation and context rendering.

The engine itself is in :mod:`conductor.orchestration.engine`; it depends on
the store, which depends on these models.
"""

from conductor.orchestration.context import render
from conductor.orchestration.definition import execution_order, validate_workflow
from conductor.orchestration.models import (
    StepExecution,
    StepStatus,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStatus,
    WorkflowStep,
)

__all__ = [
    "Workflow",
    "WorkflowStep",
    "WorkflowStatus",
    "WorkflowExecution",
    "WorkflowExecutionStatus",
    "StepExecution",
    "StepStatus",
    "validate_workflow",
    "execution_order",
    "render",
]
