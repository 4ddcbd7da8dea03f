"""
Conductor - the engine facade.

One object wires the store, queue, registry, executor, scheduler and
workflow engine together and exposes the operations an API layer calls::

    conductor = Conductor(settings=ConductorSettings(worker_concurrency=8))
    conductor.register_task_type("resize", resize_image)
    conductor.start()

    execution = conductor.submit_ad_hoc_task("http_check", {"url": url}, priority="high")
    conductor.wait_for_execution(execution.id, timeout=10)

    conductor.stop()

Submissions are persisted as ``queued`` before they are enqueued, so the
queue can always be rebuilt from the store. ``start()`` does exactly that:

1. freeze the registry (no registration after start)
2. fail ``running`` rows no handler owns any more (previous process died)
3. rebuild the queue from ``queued`` rows that are not workflow steps
4. start the executor, resume unfinished workflows, start the scheduler

Configuration problems in a task's payload are not raised here; the
executor records them on the execution row as ``ValidationError``.
Argument problems (unknown task id, bad priority) are raised.

Tags:
    conductor, facade, engine, lifecycle

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from conductor.core.errors import (
    ConcurrencyConflict,
    ExecutionInterrupted,
    NotFoundError,
    ValidationError,
)
from conductor.core.logging import get_logger
from conductor.core.models import ExecutionStatus, PriorityBand, Task, TaskExecution, resolve_priority
from conductor.core.settings import ConductorSettings, get_settings
from conductor.core.timestamps import utc_now
from conductor.execution.executor import TaskExecutor
from conductor.execution.queue import QueueStats, TaskQueue
from conductor.execution.registry import TaskHandler, TaskTypeRegistry
from conductor.handlers import build_default_registry
from conductor.orchestration.definition import validate_workflow
from conductor.orchestration.engine import WorkflowEngine
from conductor.orchestration.models import (
    StepExecution,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStatus,
    WorkflowStep,
)
from conductor.scheduling.cron import validate_cron
from conductor.scheduling.service import TaskScheduler
from conductor.store import create_store
from conductor.store.protocol import ExecutionFilter, ExecutionStore, Page, PagedExecutions

logger = get_logger(__name__)

TASK_UPDATABLE_FIELDS = frozenset({
    "name",
    "configuration",
    "cron_schedule",
    "owner",
    "active",
    "default_priority",
    "timeout_seconds",
})


class Conductor:
    """Orchestration engine facade."""

    def __init__(
        self,
        store: ExecutionStore | None = None,
        registry: TaskTypeRegistry | None = None,
        *,
        settings: ConductorSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store if store is not None else create_store(self.settings.database_path)
        self.registry = registry if registry is not None else build_default_registry()
        self.queue = TaskQueue()
        self._clock = clock

        self.executor = TaskExecutor(
            self.store,
            self.queue,
            self.registry,
            worker_concurrency=self.settings.worker_concurrency,
            default_timeout_seconds=self.settings.default_timeout_seconds,
            cancel_grace_seconds=self.settings.cancel_grace_seconds,
            progress_persist_interval=self.settings.progress_persist_interval,
            poll_interval=self.settings.queue_poll_seconds,
            clock=clock,
        )
        self.scheduler = TaskScheduler(
            self.store,
            self.queue,
            interval_seconds=self.settings.scheduler_interval_seconds,
            timezone=self.settings.timezone,
            clock=clock,
        )
        self.workflows = WorkflowEngine(
            self.store,
            self.executor,
            self.registry,
            concurrency=self.settings.workflow_concurrency,
            clock=clock,
        )
        self._lock = threading.Lock()
        self._started = False

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def is_started(self) -> bool:
        return self._started

    def start(self, *, scheduler: bool | None = None) -> None:
        """Recover persisted state and start the background components."""
        with self._lock:
            if self._started:
                return
            self.registry.freeze()
            interrupted = self._settle_interrupted()
            # Workflow step rows are re-run by workflow recovery, not the queue.
            queued = self.queue.rebuild(
                e
                for e in self.store.find_executions_by_status(ExecutionStatus.QUEUED)
                if e.workflow_execution_id is None
            )
            self.executor.start()
            resumed = self.workflows.recover()
            run_scheduler = self.settings.scheduler_enabled if scheduler is None else scheduler
            if run_scheduler:
                self.scheduler.start()
            self._started = True
        logger.info(
            "conductor.started",
            queued=queued,
            interrupted=interrupted,
            workflows_resumed=len(resumed),
            scheduler=run_scheduler,
        )

    def stop(self, *, cancel_running: bool = False, timeout: float | None = 10.0) -> None:
        """Stop scheduling and dispatching. Queued rows stay queued in the store."""
        with self._lock:
            if not self._started:
                return
            self.scheduler.stop()
            self.workflows.shutdown(wait=True, cancel_running=cancel_running)
            self.executor.stop(wait=True, cancel_running=cancel_running, timeout=timeout)
            self._started = False
        logger.info("conductor.stopped")

    def __enter__(self) -> Conductor:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    def _settle_interrupted(self) -> int:
        """Fail ``running`` rows left behind by a previous process."""
        count = 0
        for execution in self.store.find_executions_by_status(ExecutionStatus.RUNNING):
            if self.executor.is_active(execution.id):
                continue
            try:
                self.store.transition_execution(
                    execution.id,
                    ExecutionStatus.RUNNING,
                    ExecutionStatus.FAILED,
                    error="Interrupted: engine restarted while the handler was running",
                    error_type=ExecutionInterrupted.__name__,
                    completed_at=self._clock(),
                )
                count += 1
            except ConcurrencyConflict:
                continue
        if count:
            logger.warning("conductor.interrupted_executions", count=count)
        return count

    # ------------------------------------------------------------------ #
    # Task type registry
    # ------------------------------------------------------------------ #

    def register_task_type(
        self,
        name: str,
        handler: TaskHandler | Callable[..., Any],
        *,
        description: str = "",
        tags: dict[str, str] | None = None,
        replace: bool = False,
    ) -> None:
        """Register a handler. Refused with RegistryFrozenError after :meth:`start`."""
        self.registry.register(name, handler, description=description, tags=tags, replace=replace)

    def list_task_types(self) -> list[dict[str, Any]]:
        return self.registry.list_with_metadata()

    # ------------------------------------------------------------------ #
    # Task definitions
    # ------------------------------------------------------------------ #

    def create_task(
        self,
        name: str,
        task_type: str,
        configuration: dict[str, Any] | None = None,
        *,
        cron_schedule: str | None = None,
        owner: str | None = None,
        default_priority: int | str | PriorityBand | None = None,
        timeout_seconds: float | None = None,
    ) -> Task:
        """Validate and persist a task definition.

        Raises:
            ValidationError: Unknown task type or invalid configuration.
            SchedulingError: Malformed cron expression.
        """
        task = Task.create(
            name,
            task_type,
            configuration,
            cron_schedule=cron_schedule,
            owner=owner,
            default_priority=default_priority,
            timeout_seconds=timeout_seconds,
        )
        self._check_task(task)
        self.store.create_task(task)
        logger.info("task.created", task_id=task.id, task_type=task_type, cron_schedule=task.cron_schedule)
        return task

    def update_task(self, task_id: str, **changes: Any) -> Task:
        """Change a task definition; existing executions keep their snapshot."""
        unknown = set(changes) - TASK_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update task fields: {sorted(unknown)}", field=sorted(unknown)[0])
        task = self._require_task(task_id)
        if changes.get("active") is False and task.active:
            self._refuse_if_busy(task_id)
        for key, value in changes.items():
            if key == "default_priority":
                value = resolve_priority(value)
            elif key == "cron_schedule":
                value = value or None
            setattr(task, key, value)
        task.updated_at = self._clock()
        self._check_task(task)
        self.store.update_task(task)
        logger.info("task.updated", task_id=task_id, fields=sorted(changes))
        return task

    def deactivate_task(self, task_id: str) -> Task:
        return self.update_task(task_id, active=False)

    def get_task(self, task_id: str) -> Task | None:
        return self.store.get_task(task_id)

    def list_tasks(self, *, active_only: bool = False) -> list[Task]:
        return self.store.list_tasks(active_only=active_only)

    def _check_task(self, task: Task) -> None:
        self.registry.validate(task.task_type, task.configuration)
        if task.cron_schedule:
            task.cron_schedule = validate_cron(task.cron_schedule)

    def _refuse_if_busy(self, task_id: str) -> None:
        busy = self.store.list_executions(
            ExecutionFilter(task_id=task_id, statuses=(ExecutionStatus.QUEUED, ExecutionStatus.RUNNING)),
            Page(limit=1),
        )
        if busy.total > 0:
            raise ValidationError(
                f"Task {task_id} has queued or running executions", field="active", value=False
            ).with_context(task_id=task_id)

    def _require_task(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}").with_context(task_id=task_id)
        return task

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #

    def submit_task(
        self,
        task_id: str,
        input_overrides: dict[str, Any] | None = None,
        *,
        priority: int | str | PriorityBand | None = None,
    ) -> TaskExecution:
        """Queue a run of a stored task.

        Raises:
            NotFoundError: Unknown task.
            ValidationError: Task is inactive or *priority* is invalid.
        """
        task = self._require_task(task_id)
        if not task.active:
            raise ValidationError(f"Task {task_id} is inactive", field="task_id", value=task_id)
        return self._submit(TaskExecution.for_task(task, input_overrides, priority=priority))

    def submit_ad_hoc_task(
        self,
        task_type: str,
        config: dict[str, Any] | None = None,
        *,
        priority: int | str | PriorityBand | None = PriorityBand.MEDIUM.value,
        input_data: dict[str, Any] | None = None,
        timeout_seconds: float | None = None,
    ) -> TaskExecution:
        """Queue a one-shot execution that has no stored task."""
        execution = TaskExecution.create(
            task_type,
            config,
            priority=priority,
            input_data=input_data,
            timeout_seconds=timeout_seconds,
        )
        return self._submit(execution)

    def _submit(self, execution: TaskExecution) -> TaskExecution:
        self.store.create_execution(execution)
        self.queue.enqueue(execution)
        logger.info(
            "execution.submitted",
            execution_id=execution.id,
            task_id=execution.task_id,
            task_type=execution.task_type,
            priority=execution.priority,
        )
        return execution.copy()

    def cancel_execution(self, execution_id: str) -> bool:
        return self.executor.cancel(execution_id)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_execution(self, execution_id: str) -> TaskExecution | None:
        return self.store.get_execution(execution_id)

    def list_executions(self, flt: ExecutionFilter | None = None, page: Page | None = None) -> PagedExecutions:
        return self.store.list_executions(flt or ExecutionFilter(), page or Page())

    def get_queue_stats(self) -> QueueStats:
        return self.queue.stats()

    def get_execution_stats(self) -> dict[str, Any]:
        """Counts by status, success rate and average duration of succeeded runs."""
        counts = self.store.count_executions_by_status()
        succeeded = counts.get(ExecutionStatus.SUCCEEDED, 0)
        failed = counts.get(ExecutionStatus.FAILED, 0)
        finished = succeeded + failed
        durations = [
            e.duration_ms
            for e in self.store.find_executions_by_status(ExecutionStatus.SUCCEEDED)
            if e.duration_ms is not None
        ]
        return {
            "by_status": {status.value: counts.get(status, 0) for status in ExecutionStatus},
            "total": sum(counts.values()),
            "success_rate": round(succeeded / finished, 4) if finished else None,
            "average_duration_ms": round(sum(durations) / len(durations), 2) if durations else None,
            "queue": self.queue.stats().to_dict(),
            "executor": self.executor.get_stats().to_dict(),
            "scheduler": self.scheduler.get_stats().to_dict(),
        }

    def wait_for_execution(
        self,
        execution_id: str,
        timeout: float | None = None,
        poll_interval: float = 0.05,
    ) -> TaskExecution | None:
        """Poll until the execution is terminal or *timeout* passes; returns the latest row."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            execution = self.store.get_execution(execution_id)
            if execution is None or execution.is_terminal:
                return execution
            if deadline is not None and time.monotonic() >= deadline:
                return execution
            time.sleep(poll_interval)

    # ------------------------------------------------------------------ #
    # Workflows
    # ------------------------------------------------------------------ #

    def create_workflow(
        self,
        name: str,
        steps: list[WorkflowStep | dict[str, Any]],
        *,
        owner: str | None = None,
        description: str = "",
        status: WorkflowStatus = WorkflowStatus.ACTIVE,
    ) -> Workflow:
        """Validate and persist a workflow definition (raises WorkflowError)."""
        workflow = Workflow.create(name, steps, owner=owner, status=status, description=description)
        validate_workflow(workflow, self.registry)
        self.store.create_workflow(workflow)
        logger.info("workflow.defined", workflow_id=workflow.id, workflow=name, steps=len(workflow.steps))
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        return self.store.get_workflow(workflow_id)

    def list_workflows(self) -> list[Workflow]:
        return self.store.list_workflows()

    def update_workflow(
        self,
        workflow_id: str,
        *,
        steps: list[WorkflowStep | dict[str, Any]] | None = None,
        status: WorkflowStatus | str | None = None,
        description: str | None = None,
        owner: str | None = None,
    ) -> Workflow:
        """Change a workflow definition and bump its version.

        Raises:
            NotFoundError: Unknown workflow.
            WorkflowError: The changed definition is invalid.
            ValidationError: Unknown status.
        """
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}").with_context(workflow_id=workflow_id)
        if steps is not None:
            workflow.steps = [s if isinstance(s, WorkflowStep) else WorkflowStep.from_dict(s) for s in steps]
        if status is not None:
            try:
                workflow.status = WorkflowStatus(status)
            except ValueError as e:
                raise ValidationError(f"Unknown workflow status: {status!r}", field="status", value=status) from e
        if description is not None:
            workflow.description = description
        if owner is not None:
            workflow.owner = owner
        validate_workflow(workflow, self.registry)
        workflow.version += 1
        workflow.updated_at = self._clock()
        self.store.update_workflow(workflow)
        logger.info(
            "workflow.updated",
            workflow_id=workflow_id,
            version=workflow.version,
            status=workflow.status.value,
        )
        return workflow

    def list_workflow_executions(self, workflow_id: str) -> list[WorkflowExecution]:
        """Every run of *workflow_id*, oldest first."""
        runs = [
            execution
            for status in WorkflowExecutionStatus
            for execution in self.store.find_workflow_executions_by_status(status)
            if execution.workflow_id == workflow_id
        ]
        return sorted(runs, key=lambda e: e.created_at)

    def start_workflow(self, workflow_id: str, input_context: dict[str, Any] | None = None) -> WorkflowExecution:
        return self.workflows.start(workflow_id, input_context)

    def cancel_workflow_execution(self, workflow_execution_id: str) -> bool:
        return self.workflows.cancel(workflow_execution_id)

    def get_workflow_execution(self, workflow_execution_id: str) -> WorkflowExecution | None:
        return self.store.get_workflow_execution(workflow_execution_id)

    def list_step_executions(self, workflow_execution_id: str) -> list[StepExecution]:
        return self.store.list_step_executions(workflow_execution_id)

    def wait_for_workflow(self, workflow_execution_id: str, timeout: float | None = None) -> WorkflowExecution | None:
        return self.workflows.wait(workflow_execution_id, timeout=timeout)

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #

    def health(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "executor_running": self.executor.is_running,
            "scheduler": self.scheduler.health().to_dict(),
            "queue_depth": len(self.queue),
        }
