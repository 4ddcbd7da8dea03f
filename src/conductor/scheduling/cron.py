"""Cron expression evaluation using croniter.

Two formats are accepted:

- 5 fields: ``minute hour day-of-month month day-of-week``
- 6 fields: ``second minute hour day-of-month month day-of-week``

croniter reads a sixth field as trailing seconds, so 6-field expressions
are rotated before they are handed over. All returned instants are
timezone-aware UTC; *tz* only controls how wall-clock fields are read.

Example:
    >>> from datetime import datetime, UTC
    >>> next_fire_time("0 * * * *", datetime(2025, 1, 1, 10, 30, tzinfo=UTC))
    datetime.datetime(2025, 1, 1, 11, 0, tzinfo=datetime.timezone.utc)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from conductor.core.errors import SchedulingError
from conductor.core.timestamps import ensure_utc


def _to_croniter(expression: str) -> str:
    fields = expression.split()
    if len(fields) == 6:
        return " ".join(fields[1:] + fields[:1])
    return " ".join(fields)


def validate_cron(expression: str | None) -> str:
    """Return the normalized expression or raise :class:`SchedulingError`."""
    if not isinstance(expression, str) or not expression.strip():
        raise SchedulingError("Cron expression is empty", expression=expression)
    fields = expression.split()
    if len(fields) not in (5, 6):
        raise SchedulingError(
            f"Cron expression must have 5 or 6 fields, got {len(fields)}: {expression!r}",
            expression=expression,
        )
    _evaluate(expression, datetime(2000, 1, 1, tzinfo=UTC), forward=True)
    return " ".join(fields)


def _evaluate(expression: str, base: datetime, *, forward: bool) -> datetime:
    """One step from *base* (forward or back); croniter failures become SchedulingError.

    An expression that can never match (``0 0 30 2 *``) parses fine and only
    fails here.
    """
    try:
        itr = croniter(_to_croniter(expression), base)
        return itr.get_next(datetime) if forward else itr.get_prev(datetime)
    except (CroniterError, ValueError, KeyError) as e:
        raise SchedulingError(f"Invalid cron expression {expression!r}: {e}", expression=expression, cause=e) from e


def _zone(tz: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise SchedulingError(f"Unknown timezone: {tz!r}", cause=e) from e


def next_fire_time(expression: str, after: datetime, tz: str = "UTC") -> datetime:
    """First fire instant strictly after *after*."""
    validate_cron(expression)
    local = ensure_utc(after).astimezone(_zone(tz))
    result = _evaluate(expression, local, forward=True)
    return ensure_utc(result)


def latest_fire_time(expression: str, at: datetime, tz: str = "UTC") -> datetime:
    """Most recent fire instant at or before *at* (second resolution)."""
    validate_cron(expression)
    base = ensure_utc(at).replace(microsecond=0) + timedelta(seconds=1)
    local = base.astimezone(_zone(tz))
    result = _evaluate(expression, local, forward=False)
    return ensure_utc(result)