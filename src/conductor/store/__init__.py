"""Execution record stores.

:class:`ExecutionStore` is the contract; :class:`MemoryStore` and
:class:`SQLiteStore` implement it. :func:`create_store` picks one from
settings.
"""

from __future__ import annotations

from conductor.store.memory import MemoryStore
from conductor.store.protocol import ExecutionFilter, ExecutionStore, Page, PagedExecutions
from conductor.store.sqlite import SQLiteStore


def create_store(database_path: str | None = None) -> ExecutionStore:
    """SQLite store when *database_path* is given, in-memory store otherwise."""
    if database_path:
        return SQLiteStore(database_path)
    return MemoryStore()


__all__ = [
    "ExecutionStore",
    "ExecutionFilter",
    "Page",
    "PagedExecutions",
    "MemoryStore",
    "SQLiteStore",
    "create_store",
]
