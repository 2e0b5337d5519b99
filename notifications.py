"""Fan-out of job updates to live server-sent-event subscribers."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class Subscriber:
    """One open event stream, scoped to the owner that opened it."""

    def __init__(self, owner_id: str, max_pending: int = 100) -> None:
        self.id = str(uuid.uuid4())
        self.owner_id = owner_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)

    def send(self, event: dict) -> None:
        self.queue.put_nowait(event)

    async def next_event(self, timeout: Optional[float] = None) -> dict:
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


def format_sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


class SubscriberRegistry:
    """Registry of active subscribers.

    Created once per application and held on ``app.state``. Delivery to each
    subscriber fails independently: a full or broken queue is logged and
    skipped while the remaining subscribers still get the event.
    """

    def __init__(self, max_pending: int = 100) -> None:
        self.max_pending = max_pending
        self._subscribers: Dict[str, Subscriber] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, owner_id: str) -> Subscriber:
        subscriber = Subscriber(owner_id, self.max_pending)
        self._subscribers[subscriber.id] = subscriber
        subscriber.send({"type": "connected", "clientId": subscriber.id})
        logger.info("[Events] Client connected: %s. Total clients: %d", subscriber.id, len(self))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if self._subscribers.pop(subscriber.id, None) is not None:
            logger.info("[Events] Client disconnected: %s. Remaining clients: %d", subscriber.id, len(self))

    def publish(self, owner_id: str, event: dict) -> int:
        """Deliver ``event`` to the owner's subscribers; returns the count reached."""
        delivered = 0
        targets = [s for s in self._subscribers.values() if s.owner_id == owner_id]
        logger.debug("[Events] Notifying %d connected clients", len(targets))
        for subscriber in targets:
            try:
                subscriber.send(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("[Events] Dropping event for slow client %s", subscriber.id)
        return delivered
