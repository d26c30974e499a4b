import asyncio
import logging
from typing import Optional

from .bus import REMINDER_DUE, SyncBus
from .clock import Clock
from .machine import VIEW_REMINDER, KioskStateMachine, Tick, Transition

logger = logging.getLogger(__name__)


class TickScheduler:
    """Drives the kiosk machine once a minute and announces due reminders.

    `reminder-due` goes out only when the machine starts showing a reminder
    other than the one last announced, so repeated ticks within a minute (or
    schedule polls between ticks) never repeat a notification.
    """

    def __init__(self, machine: KioskStateMachine, bus: SyncBus, clock: Clock, interval: float = 60.0):
        self.machine = machine
        self.bus = bus
        self.clock = clock
        self.interval = interval
        self._announced_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> Transition:
        return await self.dispatch(Tick())

    async def dispatch(self, event) -> Transition:
        transition = await self.machine.submit(event)
        self._announce(transition)
        return transition

    def _announce(self, transition: Transition) -> None:
        if transition.view != VIEW_REMINDER or transition.reminder is None:
            self._announced_id = None
            return
        if transition.reminder_id == self._announced_id:
            return
        self._announced_id = transition.reminder_id
        self.bus.publish(REMINDER_DUE, transition.reminder)
        logger.info(f"Reminder due: {transition.reminder_id} ({transition.reminder.get('title')})")

    def seconds_until_next_tick(self) -> float:
        now = self.clock.now()
        elapsed = (now.second + now.microsecond / 1_000_000) % self.interval
        return max(1.0, self.interval - elapsed)

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Reminder tick failed")
            await asyncio.sleep(self.seconds_until_next_tick())

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
