"""
core/clock.py -- UTC time helpers shared by every store and service.

Timestamps are persisted as fixed-width ISO 8601 strings (always with
microseconds and a +00:00 offset). Fixed width matters: the stores compare
timestamps in SQL (sweep cutoff, audit time filters, returns-today window),
and lexical order only equals chronological order when every value has the
same shape. datetime.isoformat() drops the fractional part when it is zero,
which would break that.

Services take a `clock` callable defaulting to utcnow so tests can move time
without patching the datetime module.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize an aware datetime as fixed-width UTC ISO 8601.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored timestamp back to an aware UTC datetime. None passes through."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
