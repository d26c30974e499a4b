import logging
from typing import Optional

from .bus import REMINDERS_UPDATED, SyncBus, broadcast_kiosk_state
from .clock import Clock, scheduled_for_day, to_iso
from .errors import AlreadyRecordedError, NotFoundError, ValidationFailed
from .models import RECORDABLE_STATUSES, Completion

logger = logging.getLogger(__name__)


class CompletionRecorder:
    """Appends one Completion per (reminder, local day) occurrence."""

    def __init__(self, store, bus: SyncBus, clock: Clock):
        self.store = store
        self.bus = bus
        self.clock = clock

    async def record(
        self,
        reminder_id: str,
        status: str,
        notes: Optional[str] = None,
        reminder: Optional[dict] = None,
        announce: bool = True,
    ) -> dict:
        if status not in RECORDABLE_STATUSES:
            raise ValidationFailed(f"Status must be one of {', '.join(RECORDABLE_STATUSES)}")
        if reminder is None:
            reminder = await self.store.get_reminder(reminder_id)
        if not reminder:
            raise NotFoundError("Reminder not found")

        now = self.clock.now()
        scheduled_for = scheduled_for_day(reminder["time"], now.date())
        scheduled_date = scheduled_for.date().isoformat()

        existing = await self.store.find_completion(reminder["id"], scheduled_date)
        if existing:
            raise AlreadyRecordedError(
                f"'{reminder['title']}' was already {existing.get('status')} for {scheduled_date}"
            )

        completion = Completion(
            reminder_id=reminder["id"],
            status=status,
            scheduled_for=to_iso(scheduled_for),
            scheduled_date=scheduled_date,
            completed_at=to_iso(now),
            notes=notes or "",
        )
        doc = await self.store.insert_completion(completion.to_doc())
        logger.info(f"Recorded {status} for {reminder['id']} ({reminder['title']}) on {scheduled_date}")

        if announce:
            self.bus.publish(REMINDERS_UPDATED)
            await broadcast_kiosk_state(self.bus, self.store)
        return doc
