import functools
import logging
from datetime import date
from typing import List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from . import DEFAULT_KIOSK_ID, DEFAULT_SETTINGS_ID
from .clock import day_bounds, to_iso, weekday_abbr
from .errors import AlreadyRecordedError, StoreError
from .models import KioskSettings, KioskState

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}
MAX_REMINDERS = 1000
MAX_COMPLETIONS = 20000


def store_call(func):
    """Translate driver failures into StoreError."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PyMongoError as exc:
            logger.error(f"Store failure in {func.__name__}: {exc}")
            raise StoreError(f"Store unavailable: {exc}") from exc

    return wrapper


class MongoStore:
    """Persistence for reminders, completions and the two singleton documents."""

    def __init__(self, database, kiosk_id: str = DEFAULT_KIOSK_ID, settings_id: str = DEFAULT_SETTINGS_ID):
        self.db = database
        self.kiosk_id = kiosk_id
        self.settings_id = settings_id

    @store_call
    async def ensure_indexes(self) -> None:
        await self.db.reminders.create_index([("id", ASCENDING)], unique=True)
        await self.db.completions.create_index([("scheduledFor", DESCENDING)])
        await self.db.completions.create_index([("reminderId", ASCENDING), ("scheduledFor", DESCENDING)])
        await self.db.completions.create_index(
            [("reminderId", ASCENDING), ("scheduledDate", ASCENDING)], unique=True
        )
        await self.db.kiosk_state.create_index([("kioskId", ASCENDING)], unique=True)
        await self.db.settings.create_index([("settingsId", ASCENDING)], unique=True)

    # ==================== REMINDERS ====================

    @store_call
    async def list_reminders(self, active_only: bool = False, day: Optional[date] = None) -> List[dict]:
        query = {}
        if active_only:
            query["active"] = True
        if day is not None:
            query["days"] = weekday_abbr(day)
        return await self.db.reminders.find(query, NO_ID).sort("time", ASCENDING).to_list(MAX_REMINDERS)

    @store_call
    async def get_reminder(self, reminder_id: str) -> Optional[dict]:
        return await self.db.reminders.find_one({"id": reminder_id}, NO_ID)

    @store_call
    async def create_reminder(self, doc: dict) -> dict:
        await self.db.reminders.insert_one(doc)
        doc.pop("_id", None)
        return doc

    @store_call
    async def update_reminder(self, reminder_id: str, fields: dict) -> Optional[dict]:
        return await self.db.reminders.find_one_and_update(
            {"id": reminder_id},
            {"$set": fields},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    @store_call
    async def delete_reminder(self, reminder_id: str) -> bool:
        result = await self.db.reminders.delete_one({"id": reminder_id})
        if result.deleted_count == 0:
            return False
        await self.db.completions.delete_many({"reminderId": reminder_id})
        return True

    # ==================== COMPLETIONS ====================

    async def insert_completion(self, doc: dict) -> dict:
        try:
            await self._insert_completion(doc)
        except DuplicateKeyError as exc:
            raise AlreadyRecordedError(
                f"Reminder {doc.get('reminderId')} already recorded for {doc.get('scheduledDate')}"
            ) from exc
        doc.pop("_id", None)
        return doc

    @store_call
    async def _insert_completion(self, doc: dict) -> None:
        await self.db.completions.insert_one(doc)

    @store_call
    async def find_completion(self, reminder_id: str, scheduled_date: str) -> Optional[dict]:
        return await self.db.completions.find_one(
            {"reminderId": reminder_id, "scheduledDate": scheduled_date}, NO_ID
        )

    @store_call
    async def completions_between(self, start: str, end: str) -> List[dict]:
        """Completions whose scheduledFor lies in [start, end], newest first."""
        return await self.db.completions.find(
            {"scheduledFor": {"$gte": start, "$lte": end}}, NO_ID
        ).sort("scheduledFor", DESCENDING).to_list(MAX_COMPLETIONS)

    @store_call
    async def completions_since(self, start: str) -> List[dict]:
        return await self.db.completions.find(
            {"scheduledFor": {"$gte": start}}, NO_ID
        ).sort("scheduledFor", DESCENDING).to_list(MAX_COMPLETIONS)

    async def completions_for_day(self, day: date) -> List[dict]:
        start, end = day_bounds(day)
        return await self.completions_between(to_iso(start), to_iso(end))

    # ==================== SINGLETONS ====================

    async def get_settings(self) -> dict:
        """Settings singleton, created with defaults on first read."""
        return await self.update_settings({})

    @store_call
    async def update_settings(self, fields: dict) -> dict:
        defaults = KioskSettings(settings_id=self.settings_id).to_doc()
        on_insert = {k: v for k, v in defaults.items() if k not in fields}
        update = {"$setOnInsert": on_insert}
        if fields:
            update["$set"] = fields
        return await self.db.settings.find_one_and_update(
            {"settingsId": self.settings_id},
            update,
            upsert=True,
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def get_kiosk_state(self) -> dict:
        return await self.update_kiosk_state({})

    @store_call
    async def update_kiosk_state(self, fields: dict) -> dict:
        defaults = KioskState(kiosk_id=self.kiosk_id).to_doc()
        on_insert = {k: v for k, v in defaults.items() if k not in fields}
        update = {"$setOnInsert": on_insert}
        if fields:
            update["$set"] = fields
        return await self.db.kiosk_state.find_one_and_update(
            {"kioskId": self.kiosk_id},
            update,
            upsert=True,
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    async def get_kiosk_state_view(self) -> dict:
        """Kiosk state with the current reminder dereferenced."""
        state = await self.get_kiosk_state()
        reminder_id = state.get("currentReminderId")
        state["currentReminder"] = await self.get_reminder(reminder_id) if reminder_id else None
        return state
