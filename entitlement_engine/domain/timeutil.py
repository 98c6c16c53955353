from __future__ import annotations
from typing import Optional
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes (e.g. read back from SQLite) are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso(v: Optional[str]) -> Optional[datetime]:
    if not v:
        return None
    if isinstance(v, datetime):
        return aware(v)
    return aware(datetime.fromisoformat(v.replace("Z", "+00:00")))


def iso(dt: Optional[datetime]) -> Optional[str]:
    if not dt:
        return None
    return aware(dt).isoformat()
