"""Timestamps are timezone-aware UTC everywhere; naive values read back from storage are assumed UTC."""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def parse_datetime_utc(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 text to an aware datetime; empty values parse to None."""
    return ensure_utc(datetime.fromisoformat(value)) if value else None


def age_hours(dt: datetime, now: Optional[datetime] = None) -> float:
    """Hours elapsed since ``dt``, clamped at zero for timestamps in the future."""
    now = now or utc_now()
    return max(0.0, (now - ensure_utc(dt)).total_seconds() / 3600.0)
