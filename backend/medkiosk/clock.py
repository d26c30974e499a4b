import re
import time
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class Clock:
    """Local wall clock plus a monotonic source for timers."""

    def now(self) -> datetime:
        return datetime.now()

    def monotonic(self) -> float:
        return time.monotonic()


def weekday_abbr(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def normalize_hhmm(value: str) -> str:
    """Normalize time values into HH:MM."""
    if not value:
        return ""
    value = value.strip()
    match = re.match(r"^(\d{1,2}):(\d{2})$", value)
    if not match:
        return value
    hour = int(match.group(1))
    minute = int(match.group(2))
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        return value
    return f"{hour:02d}:{minute:02d}"


def parse_hhmm(value: str) -> Tuple[int, int]:
    """Split a HH:MM string into (hour, minute); ValueError when malformed."""
    normalized = normalize_hhmm(value or "")
    match = re.match(r"^(\d{2}):(\d{2})$", normalized)
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:MM (24-hour)")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time '{value}', expected HH:MM (24-hour)")
    return hour, minute


def format_hhmm(dt: datetime) -> str:
    return f"{dt.hour:02d}:{dt.minute:02d}"


def scheduled_for_day(time_str: str, day: date) -> datetime:
    """Local midnight of `day` plus the reminder's HH:MM."""
    hour, minute = parse_hhmm(time_str)
    return datetime(day.year, day.month, day.day, hour, minute)


def parse_yyyy_mm_dd(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1) - timedelta(seconds=1)


def to_iso(dt: datetime) -> str:
    return dt.isoformat(timespec="seconds")
