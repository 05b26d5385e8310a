"""Publish/subscribe channel for dashboard change events."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100


@dataclass
class Event:
    name: str
    data: Any = None

    def to_sse(self) -> str:
        return f"event: {self.name}\ndata: {json.dumps(self.data)}\n\n"


class Subscription:
    """One subscriber's bounded queue. Iterating yields events until closed."""

    def __init__(self, bus: "EventBus", maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self._bus = bus
        self.queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        if self.closed:
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self):
        self._bus.unsubscribe(self)


class EventBus:
    """Fans events out to subscriber queues.

    A subscriber whose queue is full is dropped rather than waited on.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self.current_status: str | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.queue_size)
        self._subscribers.append(sub)
        logger.debug("Event subscriber added (%d total)", len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription):
        if sub in self._subscribers:
            self._subscribers.remove(sub)
            logger.debug("Event subscriber removed (%d left)", len(self._subscribers))
        if not sub.closed:
            sub.closed = True
            try:
                sub.queue.put_nowait(None)
            except asyncio.QueueFull:
                pass

    def publish(self, name: str, data: Any = None):
        if name == "refresh-status":
            self.current_status = (data or {}).get("status")
        event = Event(name, data)
        for sub in list(self._subscribers):
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.info("Dropping slow event subscriber")
                self.unsubscribe(sub)
