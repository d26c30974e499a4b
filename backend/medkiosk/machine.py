"""Presentation state machine for the single logical kiosk.

States are ``idle``, ``reminder(R)`` and ``completed(R)``. Events are handled
one at a time in arrival order: callers ``submit()`` onto a queue drained by a
single worker task, so a handler may await store writes without any lock and
the next event still waits for it to finish.

Timers (auto-skip and the completed banner) are anchored to the clock's
monotonic source. They are checked on every tick and, while the worker runs,
by an asyncio timer armed with the remaining delay.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .bus import REMINDERS_UPDATED, SyncBus, broadcast_kiosk_state
from .clock import Clock, scheduled_for_day, to_iso
from .completions import CompletionRecorder
from .errors import AlreadyRecordedError, StoreError, ValidationFailed
from .models import COMPLETED, SKIPPED
from .schedule import is_expected_on, resolve_schedule

logger = logging.getLogger(__name__)

VIEW_IDLE = "idle"
VIEW_REMINDER = "reminder"
VIEW_COMPLETED = "completed"

COMPLETED_BANNER_SECONDS = 5

ANNOTATIONS = ("isCompleted", "completionStatus")


# ==================== EVENTS ====================

@dataclass
class Tick:
    pass


@dataclass
class TimerExpired:
    pass


@dataclass
class Activity:
    pass


@dataclass
class SettingsChanged:
    settings: dict


@dataclass
class UserComplete:
    reminder_id: str
    notes: Optional[str] = None


@dataclass
class UserSkip:
    reminder_id: str
    notes: Optional[str] = None


@dataclass
class ClientStateChange:
    current_reminder_id: Optional[str]
    current_view: str


# failures while handling these are logged and the next tick retries
SILENT_EVENTS = (Tick, TimerExpired, SettingsChanged)


@dataclass
class Transition:
    before_view: str
    before_reminder_id: Optional[str]
    view: str
    reminder: Optional[dict] = None
    recorded: List[dict] = field(default_factory=list)

    @property
    def reminder_id(self) -> Optional[str]:
        return self.reminder["id"] if self.reminder else None

    @property
    def changed(self) -> bool:
        return (self.before_view, self.before_reminder_id) != (self.view, self.reminder_id)


def collision_outcome(current: dict, arriving: dict, settings: dict) -> Optional[str]:
    """What to record for `current` when `arriving` takes the screen.

    Display-only kiosks have no buttons, so the next arrival means the last
    one was taken. Interactively, only a same-type arrival marks the earlier
    one as skipped; a different type leaves it unanswered.
    """
    if settings.get("displayOnly"):
        return COMPLETED
    if current.get("type") == arriving.get("type"):
        return SKIPPED
    return None


def strip_annotations(entry: dict) -> dict:
    return {k: v for k, v in entry.items() if k not in ANNOTATIONS}


class KioskStateMachine:
    def __init__(self, store, bus: SyncBus, recorder: CompletionRecorder, clock: Clock):
        self.store = store
        self.bus = bus
        self.recorder = recorder
        self.clock = clock

        self.view = VIEW_IDLE
        self.reminder: Optional[dict] = None
        self.reminder_started: Optional[float] = None
        self.completed_at: Optional[float] = None

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._handlers = {
            Tick: self._on_tick,
            TimerExpired: self._on_timer,
            SettingsChanged: self._on_settings_changed,
            UserComplete: self._on_user_complete,
            UserSkip: self._on_user_skip,
            Activity: self._on_activity,
            ClientStateChange: self._on_client_state,
        }

    @property
    def current_reminder_id(self) -> Optional[str]:
        return self.reminder["id"] if self.reminder else None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ==================== LIFECYCLE ====================

    async def restore(self) -> None:
        """Pick up where the persisted kiosk state left off."""
        state = await self.store.get_kiosk_state()
        reminder_id = state.get("currentReminderId")
        if state.get("currentView") == VIEW_REMINDER and reminder_id:
            reminder = await self.store.get_reminder(reminder_id)
            if reminder:
                self._show(reminder)
                logger.info(f"Restored kiosk showing {reminder_id}")
                return
        self._clear()
        if state.get("currentView") != VIEW_IDLE or reminder_id:
            await self.store.update_kiosk_state({"currentReminderId": None, "currentView": VIEW_IDLE})

    async def start(self) -> None:
        await self.restore()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run())
        self._arm_timer(await self.store.get_settings())

    async def stop(self) -> None:
        self._cancel_timer()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def submit(self, event) -> Transition:
        """Queue `event` behind anything already pending and wait for its result."""
        if not self.running:
            return await self.handle(event)
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((event, future))
        return await future

    def submit_nowait(self, event) -> None:
        if self.running:
            self._queue.put_nowait((event, None))

    async def _run(self) -> None:
        while True:
            event, future = await self._queue.get()
            try:
                result = await self.handle(event)
            except Exception as exc:
                if future is None:
                    logger.exception(f"Kiosk event {type(event).__name__} failed")
                elif not future.done():
                    future.set_exception(exc)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    async def handle(self, event) -> Transition:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported kiosk event: {event!r}")
        snapshot = self._snapshot()
        try:
            return await handler(event)
        except StoreError as e:
            # abort: keep the previous presentation and make surfaces resync
            self._restore(snapshot)
            self.bus.publish(REMINDERS_UPDATED)
            if isinstance(event, SILENT_EVENTS):
                logger.error(f"Kiosk {type(event).__name__} aborted: {e}")
                return self._transition(snapshot, [])
            raise

    # ==================== HANDLERS ====================

    async def _on_tick(self, event: Tick) -> Transition:
        return await self._evaluate(await self.store.get_settings())

    async def _on_settings_changed(self, event: SettingsChanged) -> Transition:
        return await self._evaluate(event.settings)

    async def _on_timer(self, event: TimerExpired) -> Transition:
        return await self._evaluate(await self.store.get_settings(), select=False)

    async def _on_user_complete(self, event: UserComplete) -> Transition:
        before = self._snapshot()
        doc = await self.recorder.record(event.reminder_id, COMPLETED, notes=event.notes, announce=False)
        if self._is_showing(event.reminder_id):
            self.view = VIEW_COMPLETED
            self.reminder_started = None
            self.completed_at = self.clock.monotonic()
        return await self._settle(before, [doc], await self.store.get_settings())

    async def _on_user_skip(self, event: UserSkip) -> Transition:
        before = self._snapshot()
        settings = await self.store.get_settings()
        if settings.get("displayOnly"):
            raise ValidationFailed("Skipping is disabled in display-only mode")
        doc = await self.recorder.record(event.reminder_id, SKIPPED, notes=event.notes, announce=False)
        if self._is_showing(event.reminder_id):
            self._clear()
        return await self._settle(before, [doc], settings)

    async def _on_activity(self, event: Activity) -> Transition:
        before = self._snapshot()
        return await self._settle(before, [], None, touch=True)

    async def _on_client_state(self, event: ClientStateChange) -> Transition:
        before = self._snapshot()
        view = event.current_view
        if view == VIEW_REMINDER:
            reminder = await self.store.get_reminder(event.current_reminder_id) if event.current_reminder_id else None
            if not reminder or not is_expected_on(reminder, self.clock.now().date()):
                raise ValidationFailed("currentReminderId must reference a reminder scheduled today")
            if not self._is_showing(reminder["id"]):
                self._show(reminder)
        elif view == VIEW_COMPLETED:
            reminder = self.reminder
            if event.current_reminder_id:
                reminder = await self.store.get_reminder(event.current_reminder_id)
            self.view = VIEW_COMPLETED
            self.reminder = reminder
            self.reminder_started = None
            self.completed_at = self.clock.monotonic()
        elif view == VIEW_IDLE:
            self._clear()
        else:
            raise ValidationFailed(f"Unknown kiosk view: {view}")
        return await self._settle(before, [], await self.store.get_settings(), touch=True)

    # ==================== TRANSITIONS ====================

    async def _evaluate(self, settings: dict, select: bool = True) -> Transition:
        before = self._snapshot()
        recorded: List[dict] = []
        await self._expire(settings, recorded)
        if select and self.view != VIEW_COMPLETED:
            await self._select(settings, recorded)
        return await self._settle(before, recorded, settings)

    async def _expire(self, settings: dict, recorded: List[dict]) -> None:
        now_mono = self.clock.monotonic()
        if self.view == VIEW_COMPLETED:
            if self.completed_at is None or now_mono - self.completed_at >= COMPLETED_BANNER_SECONDS:
                self._clear()
        elif self.view == VIEW_REMINDER:
            remaining = self._auto_skip_remaining(settings, now_mono)
            if remaining is not None and remaining <= 0:
                logger.info(
                    f"Auto-skipping {self.current_reminder_id} after {settings.get('autoSkipTimeout')} min on screen"
                )
                await self._record_automatic(self.reminder, SKIPPED, recorded)
                self._clear()

    async def _select(self, settings: dict, recorded: List[dict]) -> None:
        now = self.clock.now()
        reminders = await self.store.list_reminders(active_only=True, day=now.date())
        completions = await self.store.completions_for_day(now.date())
        showing = self.reminder if self.view == VIEW_REMINDER else None
        resolution = resolve_schedule(reminders, completions, settings, now, showing=showing)
        due = resolution.currently_due

        if self.view == VIEW_IDLE:
            if due is not None:
                self._show(strip_annotations(due))
            return

        if due is None:
            self._clear()
            return
        if due["id"] == self.current_reminder_id:
            # same occurrence; keep the timer but pick up edits
            self.reminder = strip_annotations(due)
            return

        current = resolution.find(self.current_reminder_id)
        # an occurrence whose time has not come yet cannot have been taken or missed
        if current is not None and scheduled_for_day(current["time"], now.date()) <= now:
            outcome = collision_outcome(current, due, settings)
            if outcome is not None:
                await self._record_automatic(strip_annotations(current), outcome, recorded)
        self._show(strip_annotations(due))

    async def _record_automatic(self, reminder: dict, status: str, recorded: List[dict]) -> None:
        try:
            doc = await self.recorder.record(reminder["id"], status, reminder=reminder, announce=False)
        except AlreadyRecordedError:
            logger.info(f"{reminder['id']} already answered today; nothing to record")
            return
        recorded.append(doc)

    async def _settle(self, before: tuple, recorded: List[dict], settings: Optional[dict], touch: bool = False) -> Transition:
        transition = self._transition(before, recorded)
        fields = {}
        if transition.changed:
            fields["currentReminderId"] = transition.reminder_id
            fields["currentView"] = transition.view
            logger.info(
                f"Kiosk {transition.before_view}({transition.before_reminder_id}) -> "
                f"{transition.view}({transition.reminder_id})"
            )
        if touch:
            fields["lastActivity"] = to_iso(self.clock.now())
        if fields:
            await self.store.update_kiosk_state(fields)
        if recorded:
            self.bus.publish(REMINDERS_UPDATED)
        if fields or recorded:
            await broadcast_kiosk_state(self.bus, self.store)
        if settings is not None:
            self._arm_timer(settings)
        return transition

    # ==================== STATE HELPERS ====================

    def _show(self, reminder: dict) -> None:
        self.view = VIEW_REMINDER
        self.reminder = reminder
        self.reminder_started = self.clock.monotonic()
        self.completed_at = None

    def _clear(self) -> None:
        self.view = VIEW_IDLE
        self.reminder = None
        self.reminder_started = None
        self.completed_at = None

    def _is_showing(self, reminder_id: str) -> bool:
        return self.view == VIEW_REMINDER and self.current_reminder_id == reminder_id

    def _snapshot(self) -> tuple:
        return (self.view, self.reminder, self.reminder_started, self.completed_at)

    def _restore(self, snapshot: tuple) -> None:
        self.view, self.reminder, self.reminder_started, self.completed_at = snapshot

    def _transition(self, before: tuple, recorded: List[dict]) -> Transition:
        before_view, before_reminder = before[0], before[1]
        return Transition(
            before_view=before_view,
            before_reminder_id=before_reminder["id"] if before_reminder else None,
            view=self.view,
            reminder=self.reminder,
            recorded=list(recorded),
        )

    def _auto_skip_remaining(self, settings: dict, now_mono: Optional[float] = None) -> Optional[float]:
        """Seconds until auto-skip fires, or None when it cannot fire."""
        timeout = int(settings.get("autoSkipTimeout") or 0)
        if self.view != VIEW_REMINDER or timeout <= 0 or settings.get("displayOnly"):
            return None
        if self.reminder_started is None:
            return None
        if now_mono is None:
            now_mono = self.clock.monotonic()
        return max(0.0, self.reminder_started + timeout * 60 - now_mono)

    def _arm_timer(self, settings: dict) -> None:
        self._cancel_timer()
        if not self.running:
            return
        now_mono = self.clock.monotonic()
        if self.view == VIEW_COMPLETED:
            delay = COMPLETED_BANNER_SECONDS - (now_mono - (self.completed_at or now_mono))
        else:
            delay = self._auto_skip_remaining(settings, now_mono)
            if delay is None:
                return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(0.0, delay), self.submit_nowait, TimerExpired())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
