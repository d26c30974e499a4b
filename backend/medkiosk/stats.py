"""Compliance aggregation over a rolling window of days ending today.

Expected occurrences come from each reminder's weekday mask; missed is the
residual. Only completions for occurrences that were actually scheduled are
counted, so completed + skipped never exceeds expected.
"""
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Tuple

from .clock import scheduled_for_day, weekday_abbr
from .models import COMPLETED, SKIPPED
from .schedule import is_expected_on

MAX_WINDOW_DAYS = 365
MISSED = "missed"
PENDING = "pending"


def window_dates(today: date, days: int) -> List[date]:
    """The `days` dates ending with `today`, oldest first."""
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def index_completions(completions: Iterable[dict]) -> Dict[Tuple[str, str], dict]:
    indexed = {}
    for completion in completions:
        scheduled_date = completion.get("scheduledDate") or (completion.get("scheduledFor") or "")[:10]
        indexed.setdefault((completion["reminderId"], scheduled_date), completion)
    return indexed


def completion_rate(completed: int, expected: int) -> int:
    if expected <= 0:
        return 0
    # half-up rounding, capped for safety
    return min(100, int(completed * 100 / expected + 0.5))


def daily_stats(reminders: List[dict], completions: Iterable[dict], today: date, days: int) -> List[dict]:
    by_occurrence = index_completions(completions)
    result = []
    for day in window_dates(today, days):
        day_str = day.isoformat()
        expected = [r for r in reminders if is_expected_on(r, day)]
        completed = skipped = 0
        for reminder in expected:
            completion = by_occurrence.get((reminder["id"], day_str))
            if not completion:
                continue
            if completion.get("status") == COMPLETED:
                completed += 1
            elif completion.get("status") == SKIPPED:
                skipped += 1
        result.append({"date": day_str, "expected": len(expected), "completed": completed, "skipped": skipped})
    return result


def reminder_performance(reminders: List[dict], completions: Iterable[dict], today: date, days: int) -> List[dict]:
    """Per-reminder stats, inactive reminders included, lowest rate first."""
    by_occurrence = index_completions(completions)
    dates = window_dates(today, days)
    rows = []
    for reminder in reminders:
        reminder_days = reminder.get("days") or []
        expected = completed = skipped = 0
        for day in dates:
            if weekday_abbr(day) not in reminder_days:
                continue
            expected += 1
            completion = by_occurrence.get((reminder["id"], day.isoformat()))
            status = completion.get("status") if completion else None
            if status == COMPLETED:
                completed += 1
            elif status == SKIPPED:
                skipped += 1
        rows.append({
            "id": reminder["id"],
            "title": reminder.get("title"),
            "time": reminder.get("time"),
            "type": reminder.get("type"),
            "active": reminder.get("active", True),
            "expected": expected,
            "completed": completed,
            "skipped": skipped,
            "missed": max(0, expected - completed - skipped),
            "completionRate": completion_rate(completed, expected),
        })
    rows.sort(key=lambda row: row["completionRate"])
    return rows


def day_detail(reminders: List[dict], completions: Iterable[dict], target: date, now: datetime) -> dict:
    day_str = target.isoformat()
    abbr = weekday_abbr(target)
    by_occurrence = index_completions(completions)

    rows = []
    for reminder in sorted(reminders, key=lambda r: r.get("time") or ""):
        if abbr not in (reminder.get("days") or []):
            continue
        completion = by_occurrence.get((reminder["id"], day_str))
        # an inactive reminder only shows up where it left a record
        if not reminder.get("active") and not completion:
            continue
        if completion:
            status = completion.get("status")
        elif scheduled_for_day(reminder["time"], target) < now:
            status = MISSED
        else:
            status = PENDING
        rows.append({
            "id": reminder["id"],
            "title": reminder.get("title"),
            "time": reminder.get("time"),
            "type": reminder.get("type"),
            "status": status,
            "completedAt": completion.get("completedAt") if completion else None,
        })

    return {
        "date": day_str,
        "dayOfWeek": abbr,
        "reminders": rows,
        "summary": {
            "total": len(rows),
            "completed": sum(1 for r in rows if r["status"] == COMPLETED),
            "skipped": sum(1 for r in rows if r["status"] == SKIPPED),
            "missed": sum(1 for r in rows if r["status"] == MISSED),
            "pending": sum(1 for r in rows if r["status"] == PENDING),
        },
    }
