from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Naive datetimes are stored and compared as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_deadline(deadline: Optional[datetime]) -> str:
    """Render a deadline the way the race pages show it, e.g. '14 Jun 2025, 18:00 UTC'."""
    if deadline is None:
        return "TBA"
    return ensure_utc(deadline).strftime("%d %b %Y, %H:%M UTC")


def time_remaining(deadline: Optional[datetime], now: datetime, urgent_window: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
    if deadline is None:
        return {"hours": 0, "minutes": 0, "expired": True}
    diff = ensure_utc(deadline) - ensure_utc(now)
    if diff < timedelta(0):
        return {"hours": 0, "minutes": 0, "expired": True}
    total_minutes = int(diff.total_seconds() // 60)
    return {
        "hours": total_minutes // 60,
        "minutes": total_minutes % 60,
        "expired": False,
        "total_minutes": total_minutes,
        "is_urgent": diff < urgent_window,
    }
