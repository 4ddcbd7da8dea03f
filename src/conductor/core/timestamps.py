"""
UTC timestamp helpers.

All timestamp fields in conductor are timezone-aware UTC ``datetime``
values. Stores persist them as text through :func:`to_iso8601` and read them
back through :func:`from_iso8601`; nothing else converts instants.

The text form always carries microseconds and a ``+00:00`` offset, so two
stored values compare the same way lexicographically as chronologically.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(dt: datetime) -> datetime:
    """Return *dt* as an aware UTC datetime (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to its sortable ISO 8601 storage form."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec="microseconds")


def from_iso8601(s: str | None) -> datetime | None:
    """Parse the ISO 8601 storage form back to an aware UTC datetime."""
    if s is None:
        return None
    return ensure_utc(datetime.fromisoformat(s))
