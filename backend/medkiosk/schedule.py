"""Resolve today's schedule and the single reminder the kiosk should present.

Pure functions over already-loaded documents; the only notion of time is the
`now` passed in.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .clock import scheduled_for_day, weekday_abbr
from .models import COMPLETED, SKIPPED

LOOKBACK_MINUTES = 30


@dataclass
class Resolution:
    today: List[dict] = field(default_factory=list)
    currently_due: Optional[dict] = None

    def pending(self) -> List[dict]:
        return [r for r in self.today if not r["isCompleted"]]

    def find(self, reminder_id: Optional[str]) -> Optional[dict]:
        return next((r for r in self.today if r["id"] == reminder_id), None)


def is_expected_on(reminder: dict, day: date) -> bool:
    return bool(reminder.get("active")) and weekday_abbr(day) in (reminder.get("days") or [])


def reminders_for_day(reminders: Iterable[dict], day: date) -> List[dict]:
    """Active reminders scheduled on `day`, stable-sorted by time."""
    return sorted((r for r in reminders if is_expected_on(r, day)), key=lambda r: r["time"])


def outcomes_for_day(completions: Iterable[dict], day: date) -> Dict[str, str]:
    """reminderId -> recorded status for occurrences on `day`."""
    day_str = day.isoformat()
    outcomes = {}
    for completion in completions:
        scheduled_date = completion.get("scheduledDate") or (completion.get("scheduledFor") or "")[:10]
        if scheduled_date != day_str:
            continue
        if completion.get("status") in (COMPLETED, SKIPPED):
            outcomes.setdefault(completion["reminderId"], completion["status"])
    return outcomes


def presentation_window(now: datetime, lead_minutes: int):
    return now - timedelta(minutes=LOOKBACK_MINUTES), now + timedelta(minutes=lead_minutes)


def resolve_schedule(
    reminders: Iterable[dict],
    completions: Iterable[dict],
    settings: dict,
    now: datetime,
    showing: Optional[dict] = None,
) -> Resolution:
    """Annotate today's reminders and choose what is currently due.

    From an empty screen the lowest pending time inside
    [now - lookback, now + lead] wins. While `showing` is still a pending
    candidate it stays on screen unless a later-scheduled candidate has
    reached its own time, in which case the earliest such arrival preempts
    it. A reminder that is only inside its lead window never preempts.
    """
    today = now.date()
    outcomes = outcomes_for_day(completions, today)

    entries = []
    for reminder in reminders_for_day(reminders, today):
        status = outcomes.get(reminder["id"])
        entries.append({**reminder, "isCompleted": status is not None, "completionStatus": status})

    lead = int(settings.get("reminderLeadTime") or 0)
    lower, upper = presentation_window(now, lead)
    candidates = [
        entry for entry in entries
        if not entry["isCompleted"] and lower <= scheduled_for_day(entry["time"], today) <= upper
    ]

    due = candidates[0] if candidates else None
    if showing is not None:
        on_screen = next((c for c in candidates if c["id"] == showing.get("id")), None)
        if on_screen is not None:
            newer = [
                c for c in candidates
                if c["time"] > on_screen["time"] and scheduled_for_day(c["time"], today) <= now
            ]
            due = newer[0] if newer else on_screen

    return Resolution(today=entries, currently_due=due)
