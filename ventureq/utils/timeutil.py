"""Timestamp helpers; the broker stores epoch milliseconds"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Default clock"""
    return datetime.now(timezone.utc)


def to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def from_ms(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == '':
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
