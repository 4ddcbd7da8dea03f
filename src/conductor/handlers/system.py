"""Small system handlers: ``delay`` and ``disk_check``."""

from __future__ import annotations

import shutil
from typing import Any

from conductor.core.errors import HandlerError
from conductor.execution.context import ExecutionContext
from conductor.handlers.base import BaseHandler, require_number, require_str

WARNING_PERCENT = 80.0
CRITICAL_PERCENT = 90.0


class DelayHandler(BaseHandler):
    """Wait ``seconds`` (cooperatively), reporting progress as it goes."""

    required = ("seconds",)

    def check(self, config: dict[str, Any]) -> None:
        require_number(config, "seconds", minimum=0)

    def run(self, ctx: ExecutionContext) -> dict[str, Any]:
        seconds = float(ctx.config["seconds"])
        steps = max(1, min(100, int(seconds * 10)))
        for i in range(1, steps + 1):
            ctx.sleep(seconds / steps)
            ctx.report_progress(100 * i / steps)
        return {"waited_seconds": seconds}


class DiskCheckHandler(BaseHandler):
    """Report disk usage for ``path`` against warning/critical thresholds.

    ``fail_on`` ("critical" by default, or "warning") turns a threshold
    breach into a failed execution.
    """

    required = ("path",)

    def check(self, config: dict[str, Any]) -> None:
        require_str(config, "path")
        require_number(config, "warning_percent", minimum=0, maximum=100)
        require_number(config, "critical_percent", minimum=0, maximum=100)

    def run(self, ctx: ExecutionContext) -> dict[str, Any]:
        path = ctx.config["path"]
        warning = ctx.config.get("warning_percent", WARNING_PERCENT)
        critical = ctx.config.get("critical_percent", CRITICAL_PERCENT)
        try:
            usage = shutil.disk_usage(path)
        except OSError as e:
            raise HandlerError(f"Cannot read disk usage for {path}: {e}", cause=e) from e

        used_percent = round(100 * usage.used / usage.total, 2) if usage.total else 0.0
        if used_percent >= critical:
            status = "critical"
        elif used_percent >= warning:
            status = "warning"
        else:
            status = "ok"

        output = {
            "path": path,
            "total_bytes": usage.total,
            "used_bytes": usage.used,
            "free_bytes": usage.free,
            "used_percent": used_percent,
            "status": status,
        }
        fail_on = ctx.config.get("fail_on", "critical")
        if status == "critical" or (status == "warning" and fail_on == "warning"):
            raise HandlerError(f"Disk usage {used_percent}% at {path} is {status}").with_context(**output)
        return output
