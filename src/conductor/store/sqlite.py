"""SQLite execution record store.

Durable :class:`~conductor.store.protocol.ExecutionStore` backed by the
stdlib ``sqlite3`` driver. Maps and lists are stored as JSON text, instants
through :func:`~conductor.core.timestamps.to_iso8601` so they sort as text.

┌──────────────────────────────────────────────────────────────────────────────┐
│  TABLES                                                                       │
│                                                                               │
│  tasks                 one row per Task definition                           │
│  task_executions       status, priority, snapshots, timings                  │
│                        UNIQUE (task_id, scheduled_for) for cron fires        │
│  workflows             definition with steps as JSON                         │
│  workflow_executions   status + shared context                               │
│  step_executions       one row per (workflow execution, step index)          │
│                                                                               │
│  Claim:  UPDATE task_executions SET status='running' ...                     │
│          WHERE id = ? AND status = 'queued'   -- rowcount 0 = lost the race  │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from conductor.core.errors import ConcurrencyConflict, NotFoundError, StoreError
from conductor.core.logging import get_logger
from conductor.core.models import ExecutionStatus, Task, TaskExecution
from conductor.core.timestamps import from_iso8601, to_iso8601
from conductor.orchestration.models import (
    StepExecution,
    StepStatus,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionStatus,
    WorkflowStatus,
    WorkflowStep,
)
from conductor.store.protocol import (
    ExecutionFilter,
    Page,
    PagedExecutions,
    check_execution_update,
    check_step_update,
    check_transition_fields,
    check_workflow_update,
)

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    task_type TEXT NOT NULL,
    configuration TEXT NOT NULL,
    cron_schedule TEXT,
    owner TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    default_priority INTEGER NOT NULL,
    timeout_seconds REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_executions (
    id TEXT PRIMARY KEY,
    task_id TEXT,
    task_type TEXT NOT NULL,
    config TEXT NOT NULL,
    input_data TEXT NOT NULL,
    priority INTEGER NOT NULL,
    status TEXT NOT NULL,
    output TEXT,
    error TEXT,
    error_type TEXT,
    progress INTEGER NOT NULL DEFAULT 0,
    timeout_seconds REAL,
    queued_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    duration_ms REAL,
    scheduled_for TEXT,
    workflow_execution_id TEXT,
    step_index INTEGER,
    UNIQUE (task_id, scheduled_for)
);

CREATE INDEX IF NOT EXISTS idx_task_executions_status
    ON task_executions (status, priority, queued_at);

CREATE TABLE IF NOT EXISTS workflows (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    steps TEXT NOT NULL,
    owner TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_executions (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    status TEXT NOT NULL,
    context TEXT NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS step_executions (
    id TEXT PRIMARY KEY,
    workflow_execution_id TEXT NOT NULL,
    step_index INTEGER NOT NULL,
    step_name TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT,
    error TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    task_execution_id TEXT,
    started_at TEXT,
    completed_at TEXT,
    UNIQUE (workflow_execution_id, step_index)
);
"""

EXECUTION_COLUMNS = [
    "id",
    "task_id",
    "task_type",
    "config",
    "input_data",
    "priority",
    "status",
    "output",
    "error",
    "error_type",
    "progress",
    "timeout_seconds",
    "queued_at",
    "started_at",
    "completed_at",
    "duration_ms",
    "scheduled_for",
    "workflow_execution_id",
    "step_index",
]


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _encode(value: Any) -> Any:
    """Convert a model attribute to its column value."""
    if isinstance(value, datetime):
        return to_iso8601(value)
    if isinstance(value, dict | list):
        return json.dumps(value)
    if hasattr(value, "value"):
        return value.value
    return value


class SQLiteStore:
    """File (or ``:memory:``) SQLite implementation of the store contract."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        logger.debug("store.opened", path=self.path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise ConcurrencyConflict(f"Write rejected: {e}", cause=e) from e
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(f"SQLite error: {e}", cause=e) from e
            except Exception:
                self._conn.rollback()
                raise

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # === Tasks ===

    def create_task(self, task: Task) -> Task:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    id, name, task_type, configuration, cron_schedule, owner,
                    active, default_priority, timeout_seconds, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._task_params(task),
            )
        return self.get_task(task.id)  # type: ignore[return-value]

    def update_task(self, task: Task) -> Task:
        params = self._task_params(task)
        with self._tx() as conn:
            cursor = conn.execute(
                """
                UPDATE tasks SET
                    name = ?, task_type = ?, configuration = ?, cron_schedule = ?, owner = ?,
                    active = ?, default_priority = ?, timeout_seconds = ?, created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                params[1:] + params[:1],
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Task {task.id} not found")
        return self.get_task(task.id)  # type: ignore[return-value]

    def get_task(self, task_id: str) -> Task | None:
        row = self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    def list_tasks(self, *, active_only: bool = False) -> list[Task]:
        sql = "SELECT * FROM tasks"
        if active_only:
            sql += " WHERE active = 1"
        rows = self._fetchall(sql + " ORDER BY created_at")
        return [self._row_to_task(r) for r in rows]

    @staticmethod
    def _task_params(task: Task) -> tuple:
        return (
            task.id,
            task.name,
            task.task_type,
            json.dumps(task.configuration),
            task.cron_schedule,
            task.owner,
            1 if task.active else 0,
            task.default_priority,
            task.timeout_seconds,
            to_iso8601(task.created_at),
            to_iso8601(task.updated_at),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            name=row["name"],
            task_type=row["task_type"],
            configuration=json.loads(row["configuration"]),
            cron_schedule=row["cron_schedule"],
            owner=row["owner"],
            active=bool(row["active"]),
            default_priority=row["default_priority"],
            timeout_seconds=row["timeout_seconds"],
            created_at=from_iso8601(row["created_at"]),
            updated_at=from_iso8601(row["updated_at"]),
        )

    # === Task executions ===

    def create_execution(self, execution: TaskExecution) -> TaskExecution:
        placeholders = ", ".join("?" for _ in EXECUTION_COLUMNS)
        with self._tx() as conn:
            conn.execute(
                f"INSERT INTO task_executions ({', '.join(EXECUTION_COLUMNS)}) VALUES ({placeholders})",
                self._execution_params(execution),
            )
        return self.get_execution(execution.id)  # type: ignore[return-value]

    def update_execution(self, execution: TaskExecution) -> TaskExecution:
        columns = EXECUTION_COLUMNS[1:]
        params = self._execution_params(execution)
        with self._tx() as conn:
            stored = conn.execute(
                "SELECT status FROM task_executions WHERE id = ?", (execution.id,)
            ).fetchone()
            if stored is None:
                raise NotFoundError(f"Execution {execution.id} not found")
            check_execution_update(ExecutionStatus(stored["status"]), execution.status)
            assignments = ", ".join(f"{c} = ?" for c in columns)
            conn.execute(
                f"UPDATE task_executions SET {assignments} WHERE id = ?",
                params[1:] + params[:1],
            )
        return self.get_execution(execution.id)  # type: ignore[return-value]

    def get_execution(self, execution_id: str) -> TaskExecution | None:
        row = self._fetchone("SELECT * FROM task_executions WHERE id = ?", (execution_id,))
        return self._row_to_execution(row) if row else None

    def find_executions_by_status(self, status: ExecutionStatus) -> list[TaskExecution]:
        rows = self._fetchall(
            "SELECT * FROM task_executions WHERE status = ? ORDER BY priority, queued_at, rowid",
            (status.value,),
        )
        return [self._row_to_execution(r) for r in rows]

    def find_execution_for_schedule(self, task_id: str, scheduled_for: datetime) -> TaskExecution | None:
        row = self._fetchone(
            "SELECT * FROM task_executions WHERE task_id = ? AND scheduled_for = ?",
            (task_id, to_iso8601(scheduled_for)),
        )
        return self._row_to_execution(row) if row else None

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
        check_execution_update(expected, target)
        assignments = ", ".join(["status = ?"] + [f"{name} = ?" for name in changes])
        values = [target.value] + [_encode(v) for v in changes.values()]
        with self._tx() as conn:
            cursor = conn.execute(
                f"UPDATE task_executions SET {assignments} WHERE id = ? AND status = ?",
                (*values, execution_id, expected.value),
            )
            if cursor.rowcount == 0:
                current = conn.execute(
                    "SELECT status FROM task_executions WHERE id = ?", (execution_id,)
                ).fetchone()
                if current is None:
                    raise NotFoundError(f"Execution {execution_id} not found")
                raise ConcurrencyConflict(
                    f"Execution {execution_id} is {current['status']}, expected {expected.value}"
                ).with_context(execution_id=execution_id)
        return self.get_execution(execution_id)  # type: ignore[return-value]

    def list_executions(self, flt: ExecutionFilter, page: Page) -> PagedExecutions:
        clauses: list[str] = []
        params: list[Any] = []
        if flt.statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in flt.statuses)})")
            params.extend(s.value for s in flt.statuses)
        for column in ("task_id", "task_type", "workflow_execution_id"):
            value = getattr(flt, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if flt.queued_after is not None:
            clauses.append("queued_at >= ?")
            params.append(to_iso8601(flt.queued_after))
        if flt.queued_before is not None:
            clauses.append("queued_at < ?")
            params.append(to_iso8601(flt.queued_before))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        total = self._fetchone(f"SELECT COUNT(*) FROM task_executions{where}", tuple(params))[0]
        rows = self._fetchall(
            f"SELECT * FROM task_executions{where} ORDER BY queued_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, page.limit, page.offset),
        )
        return PagedExecutions(
            items=[self._row_to_execution(r) for r in rows],
            total=total,
            limit=page.limit,
            offset=page.offset,
        )

    def count_executions_by_status(self) -> dict[ExecutionStatus, int]:
        counts = {status: 0 for status in ExecutionStatus}
        for row in self._fetchall("SELECT status, COUNT(*) AS n FROM task_executions GROUP BY status"):
            counts[ExecutionStatus(row["status"])] = row["n"]
        return counts

    @staticmethod
    def _execution_params(execution: TaskExecution) -> tuple:
        return tuple(_encode(getattr(execution, column)) for column in EXECUTION_COLUMNS)

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> TaskExecution:
        return TaskExecution(
            id=row["id"],
            task_id=row["task_id"],
            task_type=row["task_type"],
            config=json.loads(row["config"]),
            input_data=json.loads(row["input_data"]),
            priority=row["priority"],
            status=ExecutionStatus(row["status"]),
            output=_loads(row["output"]),
            error=row["error"],
            error_type=row["error_type"],
            progress=row["progress"],
            timeout_seconds=row["timeout_seconds"],
            queued_at=from_iso8601(row["queued_at"]),
            started_at=from_iso8601(row["started_at"]),
            completed_at=from_iso8601(row["completed_at"]),
            duration_ms=row["duration_ms"],
            scheduled_for=from_iso8601(row["scheduled_for"]),
            workflow_execution_id=row["workflow_execution_id"],
            step_index=row["step_index"],
        )

    # === Workflows ===

    def create_workflow(self, workflow: Workflow) -> Workflow:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO workflows (
                    id, name, steps, owner, version, status, description, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._workflow_params(workflow),
            )
        return self.get_workflow(workflow.id)  # type: ignore[return-value]

    def update_workflow(self, workflow: Workflow) -> Workflow:
        params = self._workflow_params(workflow)
        with self._tx() as conn:
            cursor = conn.execute(
                """
                UPDATE workflows SET
                    name = ?, steps = ?, owner = ?, version = ?, status = ?,
                    description = ?, created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                params[1:] + params[:1],
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Workflow {workflow.id} not found")
        return self.get_workflow(workflow.id)  # type: ignore[return-value]

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = self._fetchone("SELECT * FROM workflows WHERE id = ?", (workflow_id,))
        return self._row_to_workflow(row) if row else None

    def list_workflows(self) -> list[Workflow]:
        return [self._row_to_workflow(r) for r in self._fetchall("SELECT * FROM workflows ORDER BY created_at")]

    @staticmethod
    def _workflow_params(workflow: Workflow) -> tuple:
        return (
            workflow.id,
            workflow.name,
            json.dumps([s.to_dict() for s in workflow.steps]),
            workflow.owner,
            workflow.version,
            workflow.status.value,
            workflow.description,
            to_iso8601(workflow.created_at),
            to_iso8601(workflow.updated_at),
        )

    @staticmethod
    def _row_to_workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            name=row["name"],
            steps=[WorkflowStep.from_dict(s) for s in json.loads(row["steps"])],
            owner=row["owner"],
            version=row["version"],
            status=WorkflowStatus(row["status"]),
            description=row["description"],
            created_at=from_iso8601(row["created_at"]),
            updated_at=from_iso8601(row["updated_at"]),
        )

    # === Workflow executions ===

    def create_workflow_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO workflow_executions (
                    id, workflow_id, status, context, error, created_at, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._workflow_execution_params(execution),
            )
        return self.get_workflow_execution(execution.id)  # type: ignore[return-value]

    def update_workflow_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        params = self._workflow_execution_params(execution)
        with self._tx() as conn:
            stored = conn.execute(
                "SELECT status FROM workflow_executions WHERE id = ?", (execution.id,)
            ).fetchone()
            if stored is None:
                raise NotFoundError(f"Workflow execution {execution.id} not found")
            check_workflow_update(WorkflowExecutionStatus(stored["status"]), execution.status)
            conn.execute(
                """
                UPDATE workflow_executions SET
                    workflow_id = ?, status = ?, context = ?, error = ?,
                    created_at = ?, started_at = ?, completed_at = ?
                WHERE id = ?
                """,
                params[1:] + params[:1],
            )
        return self.get_workflow_execution(execution.id)  # type: ignore[return-value]

    def get_workflow_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = self._fetchone("SELECT * FROM workflow_executions WHERE id = ?", (execution_id,))
        return self._row_to_workflow_execution(row) if row else None

    def find_workflow_executions_by_status(self, status: WorkflowExecutionStatus) -> list[WorkflowExecution]:
        rows = self._fetchall(
            "SELECT * FROM workflow_executions WHERE status = ? ORDER BY created_at",
            (status.value,),
        )
        return [self._row_to_workflow_execution(r) for r in rows]

    @staticmethod
    def _workflow_execution_params(execution: WorkflowExecution) -> tuple:
        return (
            execution.id,
            execution.workflow_id,
            execution.status.value,
            json.dumps(execution.context),
            execution.error,
            to_iso8601(execution.created_at),
            to_iso8601(execution.started_at),
            to_iso8601(execution.completed_at),
        )

    @staticmethod
    def _row_to_workflow_execution(row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=WorkflowExecutionStatus(row["status"]),
            context=json.loads(row["context"]),
            error=row["error"],
            created_at=from_iso8601(row["created_at"]),
            started_at=from_iso8601(row["started_at"]),
            completed_at=from_iso8601(row["completed_at"]),
        )

    # === Step executions ===

    def create_step_execution(self, step: StepExecution) -> StepExecution:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO step_executions (
                    id, workflow_execution_id, step_index, step_name, status, output,
                    error, retry_count, task_execution_id, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._step_params(step),
            )
        return self.get_step_execution(step.id)  # type: ignore[return-value]

    def update_step_execution(self, step: StepExecution) -> StepExecution:
        params = self._step_params(step)
        with self._tx() as conn:
            stored = conn.execute("SELECT status FROM step_executions WHERE id = ?", (step.id,)).fetchone()
            if stored is None:
                raise NotFoundError(f"Step execution {step.id} not found")
            check_step_update(StepStatus(stored["status"]), step.status)
            conn.execute(
                """
                UPDATE step_executions SET
                    workflow_execution_id = ?, step_index = ?, step_name = ?, status = ?, output = ?,
                    error = ?, retry_count = ?, task_execution_id = ?, started_at = ?, completed_at = ?
                WHERE id = ?
                """,
                params[1:] + params[:1],
            )
        return self.get_step_execution(step.id)  # type: ignore[return-value]

    def get_step_execution(self, step_id: str) -> StepExecution | None:
        row = self._fetchone("SELECT * FROM step_executions WHERE id = ?", (step_id,))
        return self._row_to_step(row) if row else None

    def list_step_executions(self, workflow_execution_id: str) -> list[StepExecution]:
        rows = self._fetchall(
            "SELECT * FROM step_executions WHERE workflow_execution_id = ? ORDER BY step_index",
            (workflow_execution_id,),
        )
        return [self._row_to_step(r) for r in rows]

    @staticmethod
    def _step_params(step: StepExecution) -> tuple:
        return (
            step.id,
            step.workflow_execution_id,
            step.step_index,
            step.step_name,
            step.status.value,
            _dumps(step.output),
            step.error,
            step.retry_count,
            step.task_execution_id,
            to_iso8601(step.started_at),
            to_iso8601(step.completed_at),
        )

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> StepExecution:
        return StepExecution(
            id=row["id"],
            workflow_execution_id=row["workflow_execution_id"],
            step_index=row["step_index"],
            step_name=row["step_name"],
            status=StepStatus(row["status"]),
            output=_loads(row["output"]),
            error=row["error"],
            retry_count=row["retry_count"],
            task_execution_id=row["task_execution_id"],
            started_at=from_iso8601(row["started_at"]),
            completed_at=from_iso8601(row["completed_at"]),
        )
