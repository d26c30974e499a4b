"""
Shared fixtures: an in-memory Mongo, a controllable clock and the kiosk services.
"""
from datetime import datetime, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from medkiosk.bus import SyncBus
from medkiosk.completions import CompletionRecorder
from medkiosk.machine import KioskStateMachine
from medkiosk.models import Reminder
from medkiosk.store import MongoStore
from medkiosk.ticker import TickScheduler

# 2026-10-19 is a Monday
MONDAY = datetime(2026, 10, 19, 8, 0)


class FakeClock:
    """Wall clock and monotonic source that only move when told to."""

    def __init__(self, start: datetime):
        self.current = start
        self.mono = 1000.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def set(self, when: datetime) -> None:
        self.mono += (when - self.current).total_seconds()
        self.current = when

    def advance(self, **kwargs) -> None:
        self.set(self.current + timedelta(**kwargs))


def make_reminder(**fields) -> dict:
    fields.setdefault("title", "Morning pills")
    fields.setdefault("time", "08:00")
    return Reminder(**fields).to_doc()


@pytest.fixture
def clock():
    return FakeClock(MONDAY)


@pytest.fixture
def database():
    return AsyncMongoMockClient()["medication-kiosk-test"]


@pytest.fixture
async def store(database):
    store = MongoStore(database)
    await store.ensure_indexes()
    return store


@pytest.fixture
def bus():
    return SyncBus()


@pytest.fixture
def recorder(store, bus, clock):
    return CompletionRecorder(store, bus, clock)


@pytest.fixture
def machine(store, bus, recorder, clock):
    return KioskStateMachine(store, bus, recorder, clock)


@pytest.fixture
def ticker(machine, bus, clock):
    return TickScheduler(machine, bus, clock)


@pytest.fixture
def add_reminder(store):
    async def _add(**fields):
        return await store.create_reminder(make_reminder(**fields))
    return _add
