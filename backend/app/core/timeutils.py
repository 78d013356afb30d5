"""UTC helpers. All persisted timestamps are naive UTC."""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """PostgreSQL hands back aware datetimes, SQLite naive ones; compare on naive UTC."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_timestamp(dt: datetime) -> int:
    return int(as_naive_utc(dt).replace(tzinfo=timezone.utc).timestamp())
