"""File-system maintenance handlers: ``backup`` and ``cleanup``.

``backup`` copies a file or directory tree into ``destination``, under a
timestamped subdirectory unless ``timestamped`` is False::

    source:       file or directory; required
    destination:  directory; required
    timestamped:  bool (default True)

``cleanup`` deletes files older than ``max_age_days`` that match
``pattern`` below ``directory``::

    directory:     required
    max_age_days:  default 30
    pattern:       glob (default "*")
    recursive:     bool (default False)
    dry_run:       bool (default False); report without deleting
"""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Any

from conductor.core.errors import HandlerError, ValidationError
from conductor.core.timestamps import utc_now
from conductor.execution.context import ExecutionContext
from conductor.handlers.base import BaseHandler, require_number, require_str


class BackupHandler(BaseHandler):
    """Copy a file or directory tree into a backup location."""

    required = ("source", "destination")

    def check(self, config: dict[str, Any]) -> None:
        source = Path(require_str(config, "source"))
        require_str(config, "destination")
        if not source.exists():
            raise ValidationError(f"Backup source does not exist: {source}", field="source", value=str(source))

    def run(self, ctx: ExecutionContext) -> dict[str, Any]:
        source = Path(ctx.config["source"])
        destination = Path(ctx.config["destination"])
        if ctx.config.get("timestamped", True):
            destination = destination / utc_now().strftime("%Y%m%dT%H%M%S%f")
        destination.mkdir(parents=True, exist_ok=True)
        target = destination / source.name

        files = [source] if source.is_file() else [p for p in source.rglob("*") if p.is_file()]
        total_bytes = 0
        try:
            for i, path in enumerate(files, start=1):
                ctx.check_cancelled()
                relative = path.name if source.is_file() else path.relative_to(source)
                out = target if source.is_file() else target / relative
                out.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, out)
                total_bytes += path.stat().st_size
                ctx.report_progress(100 * i / len(files))
        except OSError as e:
            raise HandlerError(f"Backup of {source} failed: {e}", cause=e) from e

        return {
            "source": str(source),
            "backup_path": str(target),
            "files_copied": len(files),
            "bytes_copied": total_bytes,
        }


class CleanupHandler(BaseHandler):
    """Delete files older than a cutoff."""

    required = ("directory",)

    def check(self, config: dict[str, Any]) -> None:
        directory = Path(require_str(config, "directory"))
        if not directory.is_dir():
            raise ValidationError(f"Not a directory: {directory}", field="directory", value=str(directory))
        require_number(config, "max_age_days", minimum=0, default=30)

    def run(self, ctx: ExecutionContext) -> dict[str, Any]:
        directory = Path(ctx.config["directory"])
        max_age_days = ctx.config.get("max_age_days", 30)
        pattern = ctx.config.get("pattern", "*")
        dry_run = bool(ctx.config.get("dry_run", False))
        cutoff = time.time() - max_age_days * 86400

        candidates = directory.rglob(pattern) if ctx.config.get("recursive") else directory.glob(pattern)
        deleted: list[str] = []
        freed = 0
        for path in candidates:
            ctx.check_cancelled()
            if not path.is_file():
                continue
            stat = path.stat()
            if stat.st_mtime >= cutoff:
                continue
            if not dry_run:
                try:
                    path.unlink()
                except OSError as e:
                    raise HandlerError(f"Could not delete {path}: {e}", cause=e) from e
            deleted.append(str(path))
            freed += stat.st_size

        return {
            "directory": str(directory),
            "files_deleted": len(deleted),
            "bytes_freed": freed,
            "dry_run": dry_run,
            "deleted": deleted,
        }
