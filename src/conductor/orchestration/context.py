"""``${key}`` placeholder rendering for step configuration.

A string that is exactly one placeholder is replaced by the context value
itself, keeping its type; placeholders embedded in longer strings are
replaced by ``str(value)``. Dotted keys walk nested mappings::

    >>> render({"url": "${base}/health", "limit": "${limit}"}, {"base": "http://a", "limit": 3})
    {'url': 'http://a/health', 'limit': 3}
    >>> render("${check.status_code}", {"check": {"status_code": 200}})
    200

An unknown key raises :class:`~conductor.core.errors.ValidationError`,
which fails the step without retry.
"""

from __future__ import annotations

import re
from typing import Any

from conductor.core.errors import ValidationError

PLACEHOLDER = re.compile(r"\$\{([A-Za-z0-9_.-]+)\}")


def lookup(context: dict[str, Any], key: str) -> Any:
    if key in context:
        return context[key]
    current: Any = context
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            raise ValidationError(f"Unknown context key in placeholder: ${{{key}}}", field=key)
        current = current[part]
    return current


def render(value: Any, context: dict[str, Any]) -> Any:
    """Return a copy of *value* with placeholders filled from *context*."""
    if isinstance(value, str):
        whole = PLACEHOLDER.fullmatch(value)
        if whole:
            return lookup(context, whole.group(1))
        return PLACEHOLDER.sub(lambda m: str(lookup(context, m.group(1))), value)
    if isinstance(value, dict):
        return {k: render(v, context) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [render(v, context) for v in value]
    return value


def merge_output(context: dict[str, Any], output: dict[str, Any] | None) -> dict[str, Any]:
    """Context after a step: output keys overwrite existing ones."""
    return {**context, **(output or {})}
