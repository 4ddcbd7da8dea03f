"""
Shared pytest fixtures for conductor tests.

This module provides:
- Stores (memory and SQLite on a temp file)
- A registry of small fake handlers (echo, fail, slow, flaky)
- A wired executor and a fast-ticking Conductor facade
- ``wait_until`` for polling background threads

Usage:
    def test_something(store, registry, executor):
        ...
"""

import sys
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conductor.core.errors import HandlerError, ValidationError
from conductor.core.settings import ConductorSettings, clear_settings_cache
from conductor.engine import Conductor
from conductor.execution.context import ExecutionContext
from conductor.execution.executor import TaskExecutor
from conductor.execution.queue import TaskQueue
from conductor.execution.registry import FunctionHandler, TaskTypeRegistry
from conductor.store.memory import MemoryStore
from conductor.store.sqlite import SQLiteStore

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll *predicate* until it is truthy or *timeout* passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


# =============================================================================
# Fake handlers
# =============================================================================


def echo(ctx: ExecutionContext) -> dict[str, Any]:
    return {"config": dict(ctx.config), "input": dict(ctx.input)}


def fail(ctx: ExecutionContext) -> None:
    raise HandlerError(ctx.config.get("message", "boom"))


def slow(ctx: ExecutionContext) -> dict[str, Any]:
    """Sleeps cooperatively; ``ignore_cancel`` makes it ignore stop requests."""
    seconds = ctx.config.get("seconds", 5.0)
    if ctx.config.get("ignore_cancel"):
        time.sleep(seconds)
        return {"slept": seconds}
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        ctx.sleep(0.01)
    return {"slept": seconds}


def require_value(config: dict[str, Any]) -> None:
    if "value" not in config:
        raise ValidationError("'value' is required", field="value")


class Flaky:
    """Fails ``failures`` times, then succeeds."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, ctx: ExecutionContext) -> dict[str, Any]:
        with self._lock:
            self.calls += 1
            call = self.calls
        if call <= self.failures:
            raise HandlerError(f"attempt {call} failed")
        return {"attempts": call}


class Recorder:
    """Remembers the order in which executions ran."""

    def __init__(self) -> None:
        self.seen: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, ctx: ExecutionContext) -> dict[str, Any]:
        with self._lock:
            self.seen.append(ctx.config.get("label", ctx.execution_id))
        return {"label": ctx.config.get("label")}


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clean_settings_cache() -> Generator[None, None, None]:
    """Settings are cached process-wide; drop them around every test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def sqlite_store(tmp_path: Path) -> Generator[SQLiteStore, None, None]:
    s = SQLiteStore(tmp_path / "conductor.db")
    yield s
    s.close()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path: Path) -> Generator[Any, None, None]:
    """Runs a test against both store implementations."""
    if request.param == "memory":
        yield MemoryStore()
        return
    s = SQLiteStore(tmp_path / "conductor.db")
    yield s
    s.close()


@pytest.fixture
def registry() -> TaskTypeRegistry:
    r = TaskTypeRegistry()
    r.register("echo", echo, description="Return config and input")
    r.register("fail", fail)
    r.register("slow", slow)
    r.register("strict", FunctionHandler(echo, validator=require_value))
    return r


@pytest.fixture
def queue() -> TaskQueue:
    return TaskQueue()


@pytest.fixture
def executor(store, queue, registry) -> Generator[TaskExecutor, None, None]:
    ex = TaskExecutor(
        store,
        queue,
        registry,
        worker_concurrency=2,
        default_timeout_seconds=5.0,
        cancel_grace_seconds=0.5,
        progress_persist_interval=0.0,
        poll_interval=0.02,
    )
    yield ex
    ex.stop(cancel_running=True, timeout=2.0)


@pytest.fixture
def fast_settings() -> ConductorSettings:
    return ConductorSettings(
        worker_concurrency=2,
        default_timeout_seconds=5.0,
        cancel_grace_seconds=0.5,
        progress_persist_interval=0.0,
        queue_poll_seconds=0.02,
        scheduler_enabled=False,
        scheduler_interval_seconds=0.05,
        workflow_concurrency=2,
        database_path=None,
    )


@pytest.fixture
def conductor(fast_settings, registry) -> Generator[Conductor, None, None]:
    c = Conductor(settings=fast_settings, registry=registry)
    yield c
    c.stop(cancel_running=True, timeout=2.0)
