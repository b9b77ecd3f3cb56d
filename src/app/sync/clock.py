"""Timestamp helpers shared by the queue, cursors and pipelines.

All persisted timestamps are UTC. SQLite hands back naive datetimes, so
every comparison goes through ensure_aware() first.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes; pass aware ones and None through."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def format_remote_datetime(value: datetime) -> str:
    """Render a datetime for remote filters (ISO-8601 with offset, microseconds kept)."""
    return ensure_aware(value).isoformat()
