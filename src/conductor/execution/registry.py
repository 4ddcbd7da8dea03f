"""Task Type Registry - injectable task-type → handler lookup.

Manifesto:
    The executor needs to resolve ``"http_check"`` to something that can
    validate a configuration and perform the work. The registry is a
    constructed object handed to the executor at startup, never ambient
    global state, so tests substitute fake handlers by building their own.

ARCHITECTURE
────────────
::

    TaskTypeRegistry
      ├── .register(name, handler)   ─ store handler (before freeze)
      ├── .get(name)                 ─ lookup, ValidationError if unknown
      ├── .has(name)                 ─ existence check
      ├── .list_types()              ─ registered names
      └── .freeze()                  ─ closed set once the engine starts

    TaskHandler protocol
      ├── validate(config) -> None   ─ raise ValidationError, never run
      └── run(ctx) -> dict | None    ─ do the work, observe ctx.cancel_event

    FunctionHandler                  ─ adapts a plain callable

Tags:
    conductor, execution, registry, handler-registry, lookup

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from conductor.core.errors import ConductorError, ValidationError
from conductor.execution.context import ExecutionContext


@runtime_checkable
class TaskHandler(Protocol):
    """The registered implementation that performs the work for a task type."""

    def validate(self, config: dict[str, Any]) -> None:
        """Raise :class:`ValidationError` if *config* cannot be run."""
        ...

    def run(self, ctx: ExecutionContext) -> dict[str, Any] | None:
        """Perform the work and return output data."""
        ...


class FunctionHandler:
    """Adapts ``func(ctx) -> dict`` (plus an optional validator) to :class:`TaskHandler`."""

    def __init__(
        self,
        func: Callable[[ExecutionContext], dict[str, Any] | None],
        validator: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.func = func
        self.validator = validator

    def validate(self, config: dict[str, Any]) -> None:
        if self.validator is not None:
            self.validator(config)

    def run(self, ctx: ExecutionContext) -> dict[str, Any] | None:
        return self.func(ctx)

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self.func, '__name__', self.func)!r})"


class RegistryFrozenError(ConductorError):
    """Registration attempted after the engine started."""


class TaskTypeRegistry:
    """Injectable handler registry.

    Example:
        >>> registry = TaskTypeRegistry()
        >>> registry.register("echo", FunctionHandler(lambda ctx: dict(ctx.config)))
        >>> registry.get("echo").run(ctx)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def register(
        self,
        name: str,
        handler: TaskHandler | Callable[[ExecutionContext], dict[str, Any] | None],
        *,
        description: str | None = None,
        tags: dict[str, str] | None = None,
        replace: bool = False,
    ) -> None:
        """Register a handler.

        Args:
            name: Task type identifier
            handler: A :class:`TaskHandler` or a plain ``func(ctx)``
            description: Optional description for documentation
            tags: Optional tags for filtering/categorization
            replace: Allow overriding an existing registration

        Raises:
            RegistryFrozenError: The registry was frozen by engine start
            ValueError: Name already registered and ``replace`` is False
        """
        if not name:
            raise ValueError("Task type name is required")
        if not isinstance(handler, TaskHandler):
            if not callable(handler):
                raise TypeError(f"Handler for {name!r} must be a TaskHandler or callable")
            handler = FunctionHandler(handler)
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"Cannot register {name!r}: task types are fixed once the engine starts")
            if name in self._handlers and not replace:
                raise ValueError(f"Task type {name!r} is already registered")
            self._handlers[name] = handler
            self._metadata[name] = {
                "name": name,
                "description": description or (handler.__doc__ or "").strip().split("\n")[0] or None,
                "tags": tags or {},
                "handler": type(handler).__name__,
            }

    def get(self, name: str) -> TaskHandler:
        """Get a handler.

        Raises:
            ValidationError: If no handler is registered under *name*
        """
        handler = self._handlers.get(name)
        if handler is None:
            available = sorted(self._handlers)
            raise ValidationError(
                f"Unknown task type {name!r}. Available task types: {available or 'none'}",
                field="task_type",
                value=name,
            )
        return handler

    def has(self, name: str) -> bool:
        return name in self._handlers

    def list_types(self) -> list[str]:
        return sorted(self._handlers)

    def get_metadata(self, name: str) -> dict[str, Any] | None:
        metadata = self._metadata.get(name)
        return dict(metadata) if metadata else None

    def list_with_metadata(self) -> list[dict[str, Any]]:
        return [dict(self._metadata[name]) for name in self.list_types()]

    def unregister(self, name: str) -> bool:
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"Cannot unregister {name!r}: registry is frozen")
            if name in self._handlers:
                del self._handlers[name]
                del self._metadata[name]
                return True
            return False

    def validate(self, task_type: str, config: dict[str, Any]) -> TaskHandler:
        """Resolve *task_type* and validate *config* against its handler."""
        handler = self.get(task_type)
        handler.validate(config)
        return handler

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
