"""In-process event bus.

Components publish ``DomainEvent``s; any number of subscribers receive them
through bounded per-subscriber buffers. Publishing never waits on a
subscriber: one that falls ``maxsize`` events behind is dropped.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of domain events, named after the socket channels they feed."""

    WORKLOAD_STARTED = "workload:started"
    WORKLOAD_STOPPED = "workload:stopped"
    WORKLOAD_RESTARTED = "workload:restarted"
    TASK_EXECUTED = "schedule:executed"
    RULE_CHANGED = "proxy:rule_changed"
    CONFIG_REGENERATED = "proxy:config_regenerated"
    WAKE_PROGRESS = "wakeup:progress"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    """A single published event."""

    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)


class SubscriptionClosed(Exception):
    """Raised by ``Subscription.get`` once the subscription has ended."""


_CLOSED = object()


class Subscription:
    """Handle returned by ``EventBus.subscribe``.

    Iterate it with ``async for`` or call ``get()``. Closing it stops further
    delivery; events already buffered are still handed out.
    """

    def __init__(
        self,
        bus: "EventBus",
        types: Optional[frozenset[EventType]],
        maxsize: int,
    ):
        self._bus = bus
        self.types = types
        self.maxsize = maxsize
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending = 0
        self.closed = False
        self.dropped = False

    def accepts(self, event: DomainEvent) -> bool:
        return self.types is None or event.type in self.types

    def _deliver(self, event: DomainEvent) -> bool:
        """Buffer an event; returns False when the buffer is full."""
        if self._pending >= self.maxsize:
            return False
        self._pending += 1
        self._queue.put_nowait(event)
        return True

    def _end(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> DomainEvent:
        if self.closed and self._pending == 0:
            raise SubscriptionClosed()
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker for any other waiter.
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosed()
        self._pending -= 1
        return item

    def get_nowait(self) -> Optional[DomainEvent]:
        """Return the next buffered event, or None if nothing is waiting."""
        if self._pending == 0:
            return None
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        self._pending -= 1
        return item

    def drain(self) -> list[DomainEvent]:
        events = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[DomainEvent]:
        return self

    async def __anext__(self) -> DomainEvent:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EventBus:
    """Bounded fan-out of domain events to subscribers."""

    def __init__(self, default_maxsize: int = 256):
        self.default_maxsize = default_maxsize
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        types: Optional[Iterable[EventType]] = None,
        maxsize: Optional[int] = None,
    ) -> Subscription:
        """Register a subscriber, optionally limited to some event types."""
        subscription = Subscription(
            self,
            frozenset(types) if types is not None else None,
            maxsize or self.default_maxsize,
        )
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        subscription._end()

    def publish(self, event: DomainEvent) -> None:
        """Deliver an event to every matching subscriber without blocking."""
        for subscription in list(self._subscribers):
            if not subscription.accepts(event):
                continue
            if not subscription._deliver(event):
                logger.warning(
                    f"Dropping slow event subscriber after {subscription.maxsize} "
                    f"undelivered events"
                )
                subscription.dropped = True
                self.unsubscribe(subscription)

    def emit(self, event_type: EventType, **payload: Any) -> DomainEvent:
        """Build and publish an event in one call."""
        event = DomainEvent(type=event_type, payload=payload)
        self.publish(event)
        return event

    def close(self) -> None:
        """End every subscription, e.g. on shutdown."""
        for subscription in list(self._subscribers):
            self.unsubscribe(subscription)
