"""Execution context handed to task handlers.

A handler receives one :class:`ExecutionContext` per run. It carries the
snapshot of configuration and input, a cancellation signal the handler must
observe at safe points, a progress reporter and the remaining time budget.
Handlers never see the store or the queue.

Example:
    >>> def run(ctx: ExecutionContext) -> dict:
    ...     for i, path in enumerate(ctx.config["paths"]):
    ...         ctx.check_cancelled()
    ...         copy(path)
    ...         ctx.report_progress(100 * (i + 1) // len(ctx.config["paths"]))
    ...     return {"copied": len(ctx.config["paths"])}
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from conductor.core.errors import ExecutionCancelled
from conductor.core.logging import get_logger
from conductor.core.models import TaskExecution


class ExecutionContext:
    """Per-run view of a TaskExecution for its handler."""

    def __init__(
        self,
        execution: TaskExecution,
        *,
        timeout_seconds: float | None = None,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        self.execution_id = execution.id
        self.task_id = execution.task_id
        self.task_type = execution.task_type
        self.config: dict[str, Any] = execution.config
        self.input: dict[str, Any] = execution.input_data
        self.timeout_seconds = timeout_seconds
        self.cancel_event = cancel_event or threading.Event()
        self.logger = get_logger("conductor.handler").bind(
            execution_id=execution.id,
            task_type=execution.task_type,
        )
        self._on_progress = on_progress
        self._progress = execution.progress
        self._started = time.monotonic()
        self._timed_out = False

    # === Cancellation ===

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise :class:`ExecutionCancelled` if a stop was requested."""
        if self.cancel_event.is_set():
            reason = "timed out" if self._timed_out else "cancelled"
            raise ExecutionCancelled(f"Execution {self.execution_id} {reason}")

    def sleep(self, seconds: float) -> None:
        """Sleep that wakes up (and raises) as soon as a stop is requested."""
        if self.cancel_event.wait(max(0.0, seconds)):
            self.check_cancelled()

    def signal_timeout(self) -> None:
        """Ask the handler to stop because its time budget ran out."""
        self._timed_out = True
        self.cancel_event.set()

    # === Progress ===

    @property
    def progress(self) -> int:
        return self._progress

    def report_progress(self, percent: float) -> None:
        """Report 0-100 completion. Values outside the range are clamped."""
        value = int(max(0, min(100, percent)))
        self._progress = value
        if self._on_progress is not None:
            self._on_progress(value)

    # === Time budget ===

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def time_remaining(self) -> float | None:
        """Seconds left before the hard timeout, or None when unbounded."""
        if self.timeout_seconds is None:
            return None
        return max(0.0, self.timeout_seconds - self.elapsed)

    def __repr__(self) -> str:
        return f"ExecutionContext(execution_id={self.execution_id!r}, task_type={self.task_type!r})"
