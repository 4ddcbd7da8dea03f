"""Shared pieces for the built-in task handlers.

:class:`BaseHandler` implements the ``validate`` half of
:class:`~conductor.execution.registry.TaskHandler` from a declarative list
of required keys plus a per-handler ``check`` hook; subclasses implement
``run``. The ``require_*`` helpers raise
:class:`~conductor.core.errors.ValidationError` with the offending field.
"""

from __future__ import annotations

from typing import Any, ClassVar

from conductor.core.errors import ValidationError
from conductor.execution.context import ExecutionContext


def require_str(config: dict[str, Any], key: str) -> str:
    value = config.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{key}' is required and must be a non-empty string", field=key, value=value)
    return value


def require_number(
    config: dict[str, Any],
    key: str,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    default: float | None = None,
) -> float | None:
    value = config.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValidationError(f"'{key}' must be a number", field=key, value=value)
    if minimum is not None and value < minimum:
        raise ValidationError(f"'{key}' must be >= {minimum}", field=key, value=value, constraint=f">={minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"'{key}' must be <= {maximum}", field=key, value=value, constraint=f"<={maximum}")
    return value


def require_choice(config: dict[str, Any], key: str, choices: frozenset[str], default: str) -> str:
    value = config.get(key, default)
    if not isinstance(value, str) or value.lower() not in choices:
        raise ValidationError(
            f"'{key}' must be one of {sorted(choices)}",
            field=key,
            value=value,
            constraint="choice",
        )
    return value.lower()


def require_mapping(config: dict[str, Any], key: str) -> dict[str, Any]:
    value = config.get(key) or {}
    if not isinstance(value, dict):
        raise ValidationError(f"'{key}' must be a mapping", field=key, value=value)
    return value


class BaseHandler:
    """Validation scaffolding for handlers.

    Subclasses list ``required`` keys and override :meth:`check` for
    anything beyond presence.
    """

    required: ClassVar[tuple[str, ...]] = ()

    def validate(self, config: dict[str, Any]) -> None:
        if not isinstance(config, dict):
            raise ValidationError("Task configuration must be a mapping", field="config", value=config)
        for key in self.required:
            if config.get(key) in (None, ""):
                raise ValidationError(f"'{key}' is required", field=key)
        self.check(config)

    def check(self, config: dict[str, Any]) -> None:
        """Handler-specific validation beyond required keys."""

    def run(self, ctx: ExecutionContext) -> dict[str, Any] | None:
        raise NotImplementedError
