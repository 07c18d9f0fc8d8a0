"""Human-relative durations ("3 hours ago") for activity columns."""
from __future__ import annotations

from datetime import datetime, timezone

MINUTE = 60
HOUR = 60 * MINUTE
DAY = 24 * HOUR
MONTH = 30 * DAY
YEAR = 365 * DAY


def as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def distance_in_words(seconds: float) -> str:
    seconds = abs(seconds)
    if seconds < 30:
        return "less than a minute"
    if seconds < 90:
        return "1 minute"
    if seconds < 45 * MINUTE:
        return _plural(round(seconds / MINUTE), "minute")
    if seconds < 90 * MINUTE:
        return "about 1 hour"
    if seconds < DAY:
        return "about " + _plural(round(seconds / HOUR), "hour")
    if seconds < 42 * HOUR:
        return "1 day"
    if seconds < MONTH:
        return _plural(round(seconds / DAY), "day")
    if seconds < 45 * DAY:
        return "about 1 month"
    if seconds < YEAR:
        return _plural(max(2, round(seconds / MONTH)), "month")
    return "about " + _plural(round(seconds / YEAR), "year")


def time_ago(when: datetime | None, now: datetime | None = None, *, empty: str = "No activity") -> str:
    """Relative distance from `when` to `now` with an "ago"/"in" suffix."""
    when = as_utc(when)
    if when is None:
        return empty
    now = as_utc(now) or datetime.now(timezone.utc)
    delta = (now - when).total_seconds()
    words = distance_in_words(delta)
    return f"{words} ago" if delta >= 0 else f"in {words}"
