"""Built-in task handlers.

:func:`build_default_registry` constructs a fresh
:class:`~conductor.execution.registry.TaskTypeRegistry` holding the fixed
set of built-in task types. Callers add their own types before the engine
starts.
"""

from __future__ import annotations

import httpx

from conductor.execution.registry import TaskTypeRegistry
from conductor.handlers.base import BaseHandler
from conductor.handlers.command import CommandHandler
from conductor.handlers.files import BackupHandler, CleanupHandler
from conductor.handlers.http import HttpCheckHandler, WebhookHandler
from conductor.handlers.notification import LoggingNotifier, NotificationHandler, Notifier
from conductor.handlers.system import DelayHandler, DiskCheckHandler


def build_default_registry(
    *,
    http_transport: httpx.BaseTransport | None = None,
    notifier: Notifier | None = None,
) -> TaskTypeRegistry:
    """Registry with every built-in task type registered."""
    registry = TaskTypeRegistry()
    registry.register("http_check", HttpCheckHandler(transport=http_transport), tags={"category": "monitoring"})
    registry.register("webhook", WebhookHandler(transport=http_transport), tags={"category": "notification"})
    registry.register("command", CommandHandler(), tags={"category": "system"})
    registry.register("backup", BackupHandler(), tags={"category": "maintenance"})
    registry.register("cleanup", CleanupHandler(), tags={"category": "maintenance"})
    registry.register("notification", NotificationHandler(notifier), tags={"category": "notification"})
    registry.register("delay", DelayHandler(), tags={"category": "control"})
    registry.register("disk_check", DiskCheckHandler(), tags={"category": "monitoring"})
    return registry


__all__ = [
    "build_default_registry",
    "BaseHandler",
    "BackupHandler",
    "CleanupHandler",
    "CommandHandler",
    "DelayHandler",
    "DiskCheckHandler",
    "HttpCheckHandler",
    "LoggingNotifier",
    "NotificationHandler",
    "Notifier",
    "WebhookHandler",
]
