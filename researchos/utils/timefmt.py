# Rev 0.1.0
"""UTC helpers and the short human labels shown next to reminders."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    # Postgres emits "+00:00"; JS clients emit "Z"
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_overdue(reminder: Optional[datetime], now: datetime) -> bool:
    return reminder is not None and reminder < now


def format_reminder(reminder: Optional[datetime], now: datetime) -> Optional[str]:
    if reminder is None:
        return None
    diff = (reminder - now).total_seconds()
    if diff < 0:
        ago = -diff
        days, hours = int(ago // 86400), int(ago // 3600)
        if days >= 1:
            return f"{days}d overdue"
        if hours >= 1:
            return f"{hours}h overdue"
        return "Overdue"

    mins, hours, days = int(diff // 60), int(diff // 3600), int(diff // 86400)
    if mins < 60:
        return f"in {mins}m"
    if hours < 24:
        return f"in {hours}h"
    if days < 7:
        return f"in {days}d"
    return reminder.strftime("%b %d")


def format_relative(when: Optional[datetime], now: datetime) -> Optional[str]:
    if when is None:
        return None
    diff = (now - when).total_seconds()
    mins, hours, days = int(diff // 60), int(diff // 3600), int(diff // 86400)
    if mins < 1:
        return "Just now"
    if mins < 60:
        return f"{mins}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days < 7:
        return f"{days}d ago"
    return when.strftime("%b %d")
