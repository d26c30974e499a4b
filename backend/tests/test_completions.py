"""
Completion recording and the persistence rules around it.
"""
from datetime import datetime

import pytest

from medkiosk.bus import CAREGIVER, KIOSK_STATE_UPDATE, REMINDERS_UPDATED
from medkiosk.errors import AlreadyRecordedError, NotFoundError, ValidationFailed


class TestRecorder:
    async def test_record_stamps_occurrence(self, recorder, store, clock, add_reminder):
        reminder = await add_reminder(time="07:30")
        clock.set(datetime(2026, 10, 19, 9, 12, 5))
        doc = await recorder.record(reminder["id"], "completed", notes="with food")
        assert doc["id"].startswith("completion_")
        assert doc["reminderId"] == reminder["id"]
        assert doc["scheduledFor"] == "2026-10-19T07:30:00"
        assert doc["scheduledDate"] == "2026-10-19"
        assert doc["completedAt"] == "2026-10-19T09:12:05"
        assert doc["notes"] == "with food"
        assert "_id" not in doc
        assert await store.find_completion(reminder["id"], "2026-10-19") == doc

    async def test_record_announces(self, recorder, bus, add_reminder):
        reminder = await add_reminder()
        caregiver = bus.subscribe(CAREGIVER)
        await recorder.record(reminder["id"], "skipped")
        assert [m["event"] for m in caregiver.pending()] == [REMINDERS_UPDATED, KIOSK_STATE_UPDATE]

    async def test_record_quietly(self, recorder, bus, add_reminder):
        reminder = await add_reminder()
        caregiver = bus.subscribe(CAREGIVER)
        await recorder.record(reminder["id"], "completed", announce=False)
        assert caregiver.pending() == []

    async def test_one_completion_per_day(self, recorder, clock, add_reminder):
        reminder = await add_reminder()
        await recorder.record(reminder["id"], "completed")
        with pytest.raises(AlreadyRecordedError):
            await recorder.record(reminder["id"], "skipped")
        clock.advance(days=1)
        doc = await recorder.record(reminder["id"], "skipped")
        assert doc["scheduledDate"] == "2026-10-20"

    async def test_unknown_reminder(self, recorder):
        with pytest.raises(NotFoundError):
            await recorder.record("reminder_nope", "completed")

    @pytest.mark.parametrize("status", ["missed", "snoozed", "done"])
    async def test_only_completed_or_skipped(self, recorder, add_reminder, status):
        reminder = await add_reminder()
        with pytest.raises(ValidationFailed):
            await recorder.record(reminder["id"], status)


class TestStore:
    async def test_settings_created_with_defaults(self, store):
        settings = await store.get_settings()
        assert settings == {
            "settingsId": "default",
            "reminderLeadTime": 0,
            "displayOnly": False,
            "autoSkipTimeout": 0,
        }

    async def test_settings_partial_update_keeps_other_fields(self, store):
        await store.update_settings({"autoSkipTimeout": 20})
        settings = await store.update_settings({"displayOnly": True})
        assert settings["autoSkipTimeout"] == 20
        assert settings["displayOnly"] is True
        assert settings["reminderLeadTime"] == 0

    async def test_kiosk_state_singleton(self, store):
        state = await store.get_kiosk_state()
        assert state["kioskId"] == "default"
        assert state["currentView"] == "idle"
        assert state["currentReminderId"] is None
        await store.update_kiosk_state({"currentView": "reminder"})
        await store.update_kiosk_state({"lastActivity": "2026-10-19T08:00:00"})
        state = await store.get_kiosk_state()
        assert state["currentView"] == "reminder"
        assert state["lastActivity"] == "2026-10-19T08:00:00"

    async def test_list_reminders_filters_and_sorts(self, store, add_reminder):
        await add_reminder(title="Evening", time="20:00")
        await add_reminder(title="Tuesday", time="06:00", days=["tue"])
        await add_reminder(title="Paused", time="07:00", active=False)
        await add_reminder(title="Morning", time="08:00")
        everything = await store.list_reminders()
        assert [r["title"] for r in everything] == ["Tuesday", "Paused", "Morning", "Evening"]
        monday = await store.list_reminders(active_only=True, day=datetime(2026, 10, 19).date())
        assert [r["title"] for r in monday] == ["Morning", "Evening"]

    async def test_update_missing_reminder_returns_none(self, store):
        assert await store.update_reminder("reminder_nope", {"title": "x"}) is None

    async def test_delete_cascades_to_completions(self, store, recorder, add_reminder):
        reminder = await add_reminder()
        other = await add_reminder(title="Other")
        await recorder.record(reminder["id"], "completed")
        await recorder.record(other["id"], "completed")
        assert await store.delete_reminder(reminder["id"]) is True
        assert await store.get_reminder(reminder["id"]) is None
        remaining = await store.completions_since("2026-01-01T00:00:00")
        assert [c["reminderId"] for c in remaining] == [other["id"]]
        assert await store.delete_reminder(reminder["id"]) is False

    async def test_completions_newest_first(self, store, recorder, clock, add_reminder):
        reminder = await add_reminder()
        await recorder.record(reminder["id"], "completed")
        clock.advance(days=1)
        await recorder.record(reminder["id"], "skipped")
        completions = await store.completions_since("2026-10-19T00:00:00")
        assert [c["scheduledDate"] for c in completions] == ["2026-10-20", "2026-10-19"]
        only_monday = await store.completions_for_day(datetime(2026, 10, 19).date())
        assert [c["status"] for c in only_monday] == ["completed"]
