"""Cron expression evaluation in a schedule's timezone."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter


def next_cron_tick(expression: str, tz: str = "UTC", now: datetime | None = None) -> datetime:
    """Next occurrence strictly after ``now``, returned in UTC."""
    if now is None:
        now = datetime.now(timezone.utc)
    try:
        zone = ZoneInfo(tz)
        start = now.astimezone(zone)
        nxt = croniter(expression, start).get_next(datetime)
    except (ValueError, KeyError, ZoneInfoNotFoundError) as exc:
        raise ValueError(f"Invalid cron expression: {expression} ({tz})") from exc
    return nxt.astimezone(timezone.utc)
