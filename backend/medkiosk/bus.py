import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

REMINDERS_UPDATED = "reminders-updated"
SETTINGS_UPDATED = "settings-updated"
KIOSK_STATE_UPDATE = "kiosk-state-update"
REMINDER_DUE = "reminder-due"
TOPICS = (REMINDERS_UPDATED, SETTINGS_UPDATED, KIOSK_STATE_UPDATE, REMINDER_DUE)

KIOSK = "kiosk"
CAREGIVER = "caregiver"
MIRROR = "mirror"
ROLES = (KIOSK, CAREGIVER, MIRROR)

# topic -> roles allowed to receive it; unlisted topics go to everyone
TOPIC_ROLES = {REMINDER_DUE: {KIOSK}}

DEFAULT_QUEUE_SIZE = 100


class Subscription:
    """One connected surface; messages wait in a bounded queue until sent."""

    def __init__(self, subscription_id: int, role: str, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.id = subscription_id
        self.role = role
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, event: str, data: Any = None) -> bool:
        try:
            self.queue.put_nowait({"event": event, "data": data})
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Dropped {event} for {self.role} subscriber {self.id} (queue full)")
            return False
        return True

    async def next(self) -> dict:
        return await self.queue.get()

    def pending(self) -> list:
        """Drain everything queued so far without waiting."""
        messages = []
        while not self.queue.empty():
            messages.append(self.queue.get_nowait())
        return messages


class SyncBus:
    """In-process topic fan-out to kiosk, caregiver and mirror surfaces.

    Delivery is best-effort: every surface re-reads through the HTTP API on
    any notification, so a dropped message only delays a refresh. Messages
    for one subscriber leave in publish order.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, role: str) -> Subscription:
        if role not in ROLES:
            raise ValueError(f"Unknown surface role: {role}")
        subscription = Subscription(next(self._ids), role, self.queue_size)
        self._subscriptions[subscription.id] = subscription
        logger.info(f"{role} subscribed ({subscription.id})")
        return subscription

    def unsubscribe(self, subscription: Optional[Subscription]) -> None:
        if subscription is None:
            return
        if self._subscriptions.pop(subscription.id, None) is not None:
            logger.info(f"{subscription.role} unsubscribed ({subscription.id})")

    def subscribers(self, role: Optional[str] = None) -> list:
        return [s for s in self._subscriptions.values() if role is None or s.role == role]

    def publish(self, topic: str, payload: Any = None) -> int:
        """Enqueue `topic` for every eligible subscriber; returns deliveries."""
        if topic not in TOPICS:
            raise ValueError(f"Unknown topic: {topic}")
        allowed = TOPIC_ROLES.get(topic)
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if allowed is not None and subscription.role not in allowed:
                continue
            if subscription.deliver(topic, payload):
                delivered += 1
        return delivered


async def broadcast_kiosk_state(bus: SyncBus, store) -> Optional[dict]:
    """Publish the dereferenced kiosk state; failures are logged, not raised."""
    try:
        state = await store.get_kiosk_state_view()
    except Exception as e:
        logger.error(f"Kiosk state broadcast failed: {e}")
        return None
    bus.publish(KIOSK_STATE_UPDATE, state)
    return state
