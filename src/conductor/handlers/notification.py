"""``notification`` handler.

Delivery transport (email, SMS, chat) lives outside the engine. The handler
renders the message and hands it to a :class:`Notifier`; the default
notifier only logs it.

Config::

    channel:     free-form channel name (default "log")
    recipients:  list of addresses; required
    subject:     str
    message:     str; required. ``{key}`` fields are filled from input data
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from conductor.core.errors import HandlerError, ValidationError
from conductor.core.logging import get_logger
from conductor.execution.context import ExecutionContext
from conductor.handlers.base import BaseHandler, require_str

logger = get_logger(__name__)


@runtime_checkable
class Notifier(Protocol):
    def send(self, channel: str, recipients: list[str], subject: str, message: str) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log instead of delivering them."""

    def send(self, channel: str, recipients: list[str], subject: str, message: str) -> None:
        logger.info("notification.sent", channel=channel, recipients=recipients, subject=subject, message=message)


class NotificationHandler(BaseHandler):
    """Render and dispatch a notification through a pluggable notifier."""

    required = ("recipients", "message")

    def __init__(self, notifier: Notifier | None = None) -> None:
        self.notifier = notifier or LoggingNotifier()

    def check(self, config: dict[str, Any]) -> None:
        recipients = config["recipients"]
        if not isinstance(recipients, list) or not all(isinstance(r, str) and r for r in recipients):
            raise ValidationError("'recipients' must be a list of strings", field="recipients", value=recipients)
        require_str(config, "message")

    def run(self, ctx: ExecutionContext) -> dict[str, Any]:
        config = ctx.config
        fields = {**config, **ctx.input}
        try:
            message = config["message"].format_map(fields)
            subject = config.get("subject", "").format_map(fields)
        except (KeyError, IndexError, ValueError) as e:
            raise HandlerError(f"Cannot render notification: {e}", cause=e) from e

        channel = config.get("channel", "log")
        ctx.check_cancelled()
        self.notifier.send(channel, list(config["recipients"]), subject, message)
        return {"channel": channel, "recipients": len(config["recipients"]), "subject": subject}
