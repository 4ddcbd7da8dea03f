"""
Workflow engine - drives WorkflowExecutions step by step.

Each step runs through the same path as any other task: a
:class:`~conductor.core.models.TaskExecution` is persisted and handed to
:meth:`TaskExecutor.execute <conductor.execution.executor.TaskExecutor.execute>`
in the workflow's own thread, so steps never wait behind the queue.

Step lifecycle::

    pending ──▶ running ──attempt──▶ succeeded ──▶ output merged into context
                   │
                   ├── failed, retries left ──▶ backoff (cancel-aware) ──▶ attempt
                   ├── failed, exhausted, required ──▶ workflow failed, rest skipped
                   ├── failed, exhausted, optional ──▶ continue
                   └── cancelled ──▶ workflow cancelled, rest cancelled

Step rows and the workflow context are written after every step.
:meth:`WorkflowEngine.recover` resumes unfinished runs after a restart:
succeeded steps are kept, an interrupted running step goes back to pending
and runs again with the retries it has left. Its unfinished attempt row is
failed as interrupted first.

Steps run one at a time in :func:`execution_order`; dependencies only
constrain that order.

Tags:
    conductor, orchestration, workflow, retry, recovery

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conductor.core.errors import (
    ConcurrencyConflict,
    ExecutionCancelled,
    ExecutionInterrupted,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from conductor.core.logging import LogContext, get_logger
from conductor.core.models import ExecutionStatus, PriorityBand, TaskExecution
from conductor.core.timestamps import utc_now
from conductor.execution.executor import TaskExecutor
from conductor.execution.registry import TaskTypeRegistry
from conductor.execution.retry import ExponentialBackoff
from conductor.orchestration.context import merge_output, render
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
from conductor.store.protocol import ExecutionStore

logger = get_logger(__name__)

# Failures a step retry cannot fix.
NON_RETRYABLE_ERROR_TYPES = frozenset({ValidationError.__name__, ExecutionCancelled.__name__})

STEP_PRIORITY = PriorityBand.HIGH


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class _WorkflowRun:
    cancel_event: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    current_execution_id: str | None = None


class WorkflowEngine:
    """Runs workflow executions on a small thread pool.

    Example:
        >>> engine = WorkflowEngine(store, executor, registry)
        >>> wf_exec = engine.start(workflow.id, {"env": "prod"})
        >>> engine.wait(wf_exec.id, timeout=30)
    """

    def __init__(
        self,
        store: ExecutionStore,
        executor: TaskExecutor,
        registry: TaskTypeRegistry,
        *,
        concurrency: int = 2,
        retry_jitter: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.executor = executor
        self.registry = registry
        self.concurrency = concurrency
        self.retry_jitter = retry_jitter
        self._clock = clock
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()
        self._runs: dict[str, _WorkflowRun] = {}
        self._runs_lock = threading.Lock()
        self._finished = threading.Condition()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def start(self, workflow_id: str, context: dict[str, Any] | None = None) -> WorkflowExecution:
        """Create a WorkflowExecution with pending steps and run it in the background.

        Raises:
            NotFoundError: Unknown workflow.
            WorkflowError: Workflow is not active or its definition is invalid.
        """
        execution = self.create_execution(workflow_id, context)
        self.submit(execution.id)
        return execution

    def create_execution(self, workflow_id: str, context: dict[str, Any] | None = None) -> WorkflowExecution:
        """Persist a pending WorkflowExecution and its pending steps without running it."""
        workflow = self._require_workflow(workflow_id)
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowError(f"Workflow '{workflow.name}' is {workflow.status.value}, not active").with_context(
                workflow_id=workflow_id
            )
        validate_workflow(workflow, self.registry)

        execution = WorkflowExecution.create(workflow.id, context)
        self.store.create_workflow_execution(execution)
        for index, step in enumerate(workflow.steps):
            self.store.create_step_execution(StepExecution.create(execution.id, index, step.name))
        logger.info(
            "workflow.created",
            workflow_execution_id=execution.id,
            workflow=workflow.name,
            steps=len(workflow.steps),
        )
        return execution

    def submit(self, workflow_execution_id: str) -> None:
        """Run an existing execution on the workflow pool."""
        self._run_for(workflow_execution_id)
        self._get_pool().submit(self._run_safely, workflow_execution_id)

    def run(self, workflow_execution_id: str) -> WorkflowExecution:
        """Run (or resume) a workflow execution to a terminal status in this thread."""
        execution = self.store.get_workflow_execution(workflow_execution_id)
        if execution is None:
            raise NotFoundError(f"Workflow execution not found: {workflow_execution_id}")
        run = self._run_for(execution.id)
        try:
            if execution.status.is_terminal:
                return execution
            workflow = self._require_workflow(execution.workflow_id)
            with LogContext(workflow_execution_id=execution.id, workflow=workflow.name):
                return self._drive(workflow, execution, run)
        finally:
            with self._runs_lock:
                self._runs.pop(execution.id, None)
            with self._finished:
                self._finished.notify_all()

    def cancel(self, workflow_execution_id: str) -> bool:
        """Cancel a pending or running workflow execution.

        The running step's task execution is cancelled and every step that
        has not started is marked cancelled. False if unknown or terminal.
        """
        execution = self.store.get_workflow_execution(workflow_execution_id)
        if execution is None or execution.status.is_terminal:
            return False

        with self._runs_lock:
            run = self._runs.get(workflow_execution_id)
        if run is None:
            # Nothing drives it in this process; settle it here.
            try:
                self._close_remaining_steps(execution.id, StepStatus.CANCELLED)
                self._finish(execution, WorkflowExecutionStatus.CANCELLED, "Cancelled")
            except InvalidTransitionError:
                return False
            return True

        with run.lock:
            run.cancel_event.set()
            current = run.current_execution_id
        if current is not None:
            self.executor.cancel(current)
        logger.info("workflow.cancel_requested", workflow_execution_id=workflow_execution_id)
        return True

    def recover(self) -> list[str]:
        """Resume workflow executions left pending or running by a previous process."""
        resumed: list[str] = []
        for status in (WorkflowExecutionStatus.RUNNING, WorkflowExecutionStatus.PENDING):
            for execution in self.store.find_workflow_executions_by_status(status):
                with self._runs_lock:
                    if execution.id in self._runs:
                        continue
                for step in self.store.list_step_executions(execution.id):
                    if step.status == StepStatus.RUNNING:
                        self._settle_orphan(step.task_execution_id)
                        step.transition_to(StepStatus.PENDING)
                        step.started_at = None
                        self.store.update_step_execution(step)
                logger.info("workflow.recovering", workflow_execution_id=execution.id, status=status.value)
                self.submit(execution.id)
                resumed.append(execution.id)
        return resumed

    def _settle_orphan(self, task_execution_id: str | None) -> None:
        """Fail the step attempt a previous process left unfinished; the step runs again."""
        if task_execution_id is None or self.executor.is_active(task_execution_id):
            return
        orphan = self.store.get_execution(task_execution_id)
        if orphan is None or orphan.is_terminal:
            return
        try:
            self.store.transition_execution(
                orphan.id,
                orphan.status,
                ExecutionStatus.FAILED,
                error="Interrupted: engine restarted before the step finished",
                error_type=ExecutionInterrupted.__name__,
                completed_at=self._clock(),
            )
        except ConcurrencyConflict:
            return
        logger.warning("workflow.step_attempt_interrupted", execution_id=orphan.id, step_index=orphan.step_index)

    def wait(self, workflow_execution_id: str, timeout: float | None = None) -> WorkflowExecution | None:
        """Block until the execution is terminal or *timeout* passes; returns the stored row."""
        with self._finished:
            self._finished.wait_for(lambda: self._is_settled(workflow_execution_id), timeout=timeout)
        return self.store.get_workflow_execution(workflow_execution_id)

    def is_running(self, workflow_execution_id: str) -> bool:
        with self._runs_lock:
            return workflow_execution_id in self._runs

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            with self._runs_lock:
                ids = list(self._runs)
            for workflow_execution_id in ids:
                self.cancel(workflow_execution_id)
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    # ------------------------------------------------------------------ #
    # Driving a run
    # ------------------------------------------------------------------ #

    def _drive(self, workflow: Workflow, execution: WorkflowExecution, run: _WorkflowRun) -> WorkflowExecution:
        if execution.status == WorkflowExecutionStatus.PENDING:
            if run.cancel_event.is_set():
                return self._settle_cancelled(execution)
            execution.transition_to(WorkflowExecutionStatus.RUNNING)
            execution.started_at = self._clock()
            self.store.update_workflow_execution(execution)
            logger.info("workflow.started", steps=len(workflow.steps))

        records = self._step_records(workflow, execution)

        for index in execution_order(workflow.steps):
            step = workflow.steps[index]
            record = records[index]

            if record.status == StepStatus.SUCCEEDED:
                continue
            if record.status == StepStatus.FAILED:
                if step.optional:
                    continue
                return self._settle_failed(execution, step, record.error)
            if record.status.is_terminal:
                # Skipped/cancelled rows only exist once the run is settled.
                continue

            if run.cancel_event.is_set():
                return self._settle_cancelled(execution)

            outcome = self._run_step(execution, step, record, run)
            self.store.update_workflow_execution(execution)

            if outcome == StepOutcome.CANCELLED:
                return self._settle_cancelled(execution)
            if outcome == StepOutcome.FAILED:
                if step.required:
                    return self._settle_failed(execution, step, record.error)
                logger.warning("workflow.optional_step_failed", step=step.name, error=record.error)

        if run.cancel_event.is_set():
            return self._settle_cancelled(execution)
        return self._finish(execution, WorkflowExecutionStatus.SUCCEEDED)

    def _run_step(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        record: StepExecution,
        run: _WorkflowRun,
    ) -> StepOutcome:
        record.transition_to(StepStatus.RUNNING)
        record.started_at = self._clock()
        self.store.update_step_execution(record)
        logger.info("workflow.step_started", step=step.name, index=record.step_index)

        backoff = ExponentialBackoff(
            max_retries=step.max_attempts,
            base_delay=step.retry_delay_seconds,
            max_delay=step.max_retry_delay_seconds,
            jitter=self.retry_jitter,
        )
        attempt = record.retry_count
        while True:
            result = self._attempt(execution, step, record, run)

            if result.status == ExecutionStatus.SUCCEEDED:
                execution.context = merge_output(execution.context, result.output)
                return self._close_step(record, StepStatus.SUCCEEDED, output=result.output)
            if result.status == ExecutionStatus.CANCELLED or run.cancel_event.is_set():
                return self._close_step(record, StepStatus.CANCELLED, error=result.error or "Cancelled")

            retryable = result.error_type not in NON_RETRYABLE_ERROR_TYPES
            if retryable and backoff.should_retry(attempt):
                delay = backoff.next_delay(attempt)
                attempt += 1
                record.retry_count = attempt
                record.error = result.error
                self.store.update_step_execution(record)
                logger.info(
                    "workflow.step_retry",
                    step=step.name,
                    attempt=attempt,
                    max_attempts=step.max_attempts,
                    delay=round(delay, 3),
                    error=result.error,
                )
                if run.cancel_event.wait(delay):
                    return self._close_step(record, StepStatus.CANCELLED, error="Cancelled during retry backoff")
                continue

            return self._close_step(record, StepStatus.FAILED, error=result.error)

    def _attempt(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        record: StepExecution,
        run: _WorkflowRun,
    ) -> TaskExecution:
        """Create and execute one TaskExecution for *step*; returns the stored outcome."""
        try:
            config = render(step.config, execution.context)
        except ValidationError as e:
            config = dict(step.config)
            task_execution = self._new_task_execution(execution, step, record, config)
            return self.store.transition_execution(
                task_execution.id,
                ExecutionStatus.QUEUED,
                ExecutionStatus.FAILED,
                error=e.message,
                error_type=ValidationError.__name__,
                completed_at=self._clock(),
            )

        task_execution = self._new_task_execution(execution, step, record, config)
        with run.lock:
            if run.cancel_event.is_set():
                cancelled = True
            else:
                cancelled = False
                run.current_execution_id = task_execution.id
        if cancelled:
            self.executor.cancel(task_execution.id)
            return self.store.get_execution(task_execution.id) or task_execution
        try:
            return self.executor.execute(task_execution)
        finally:
            with run.lock:
                run.current_execution_id = None

    def _new_task_execution(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        record: StepExecution,
        config: dict[str, Any],
    ) -> TaskExecution:
        task_execution = TaskExecution.create(
            step.task_type,
            config,
            priority=STEP_PRIORITY,
            input_data=execution.context,
            timeout_seconds=step.timeout_seconds,
            workflow_execution_id=execution.id,
            step_index=record.step_index,
        )
        self.store.create_execution(task_execution)
        record.task_execution_id = task_execution.id
        self.store.update_step_execution(record)
        return task_execution

    # ------------------------------------------------------------------ #
    # Settling
    # ------------------------------------------------------------------ #

    def _close_step(
        self,
        record: StepExecution,
        status: StepStatus,
        *,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> StepOutcome:
        record.transition_to(status)
        record.output = output
        record.error = error if status != StepStatus.SUCCEEDED else None
        record.completed_at = self._clock()
        self.store.update_step_execution(record)
        logger.info(
            "workflow.step_finished",
            step=record.step_name,
            status=status.value,
            retries=record.retry_count,
        )
        return StepOutcome(status.value)

    def _settle_failed(self, execution: WorkflowExecution, step: WorkflowStep, error: str | None) -> WorkflowExecution:
        self._close_remaining_steps(execution.id, StepStatus.SKIPPED)
        message = f"Required step '{step.name}' failed: {error}"
        return self._finish(execution, WorkflowExecutionStatus.FAILED, message)

    def _settle_cancelled(self, execution: WorkflowExecution) -> WorkflowExecution:
        self._close_remaining_steps(execution.id, StepStatus.CANCELLED)
        return self._finish(execution, WorkflowExecutionStatus.CANCELLED, "Cancelled")

    def _close_remaining_steps(self, workflow_execution_id: str, status: StepStatus) -> None:
        now = self._clock()
        for record in self.store.list_step_executions(workflow_execution_id):
            if record.status == StepStatus.RUNNING:
                record.transition_to(StepStatus.CANCELLED)
            elif record.status == StepStatus.PENDING:
                record.transition_to(status)
            else:
                continue
            record.completed_at = now
            self.store.update_step_execution(record)

    def _finish(
        self,
        execution: WorkflowExecution,
        status: WorkflowExecutionStatus,
        error: str | None = None,
    ) -> WorkflowExecution:
        execution.transition_to(status)
        execution.error = error
        execution.completed_at = self._clock()
        self.store.update_workflow_execution(execution)
        log = logger.warning if status == WorkflowExecutionStatus.FAILED else logger.info
        log("workflow.finished", status=status.value, error=error)
        return execution

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _step_records(self, workflow: Workflow, execution: WorkflowExecution) -> dict[int, StepExecution]:
        records = {r.step_index: r for r in self.store.list_step_executions(execution.id)}
        for index, step in enumerate(workflow.steps):
            if index not in records:
                records[index] = self.store.create_step_execution(StepExecution.create(execution.id, index, step.name))
        return records

    def _require_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    def _run_for(self, workflow_execution_id: str) -> _WorkflowRun:
        with self._runs_lock:
            return self._runs.setdefault(workflow_execution_id, _WorkflowRun())

    def _run_safely(self, workflow_execution_id: str) -> None:
        try:
            self.run(workflow_execution_id)
        except Exception:
            logger.exception("workflow.unhandled_error", workflow_execution_id=workflow_execution_id)
            with self._runs_lock:
                self._runs.pop(workflow_execution_id, None)
            with self._finished:
                self._finished.notify_all()

    def _is_settled(self, workflow_execution_id: str) -> bool:
        execution = self.store.get_workflow_execution(workflow_execution_id)
        return execution is None or execution.status.is_terminal

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="conductor-workflow")
            return self._pool
