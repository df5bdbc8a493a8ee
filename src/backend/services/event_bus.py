"""
Publish/subscribe fan-out for sweep events.

Each subscriber owns a bounded asyncio.Queue. ``publish`` walks the current
subscriber tuple in attach order, so ordering is FIFO per subscriber only.
With the default ``block`` overflow policy a full queue makes ``publish``
wait, which stalls the sweep reader and every later subscriber: consumers
must drain promptly or subscribe with ``drop_oldest``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Literal

from src.backend.models.schemas import SweepEvent, SweepEventType

logger = logging.getLogger(__name__)

OverflowPolicy = Literal["block", "drop_oldest"]

_CLOSED = object()


class Subscription:
    """A subscriber's bounded event channel."""

    def __init__(
        self,
        bus: "EventBus",
        maxsize: int,
        overflow: OverflowPolicy,
        topics: frozenset[SweepEventType] | None,
    ):
        self._bus = bus
        # Unbounded underneath; the bound is enforced in _deliver so the
        # close sentinel always fits.
        self._queue: asyncio.Queue = asyncio.Queue()
        self._space = asyncio.Event()
        self._space.set()
        self._maxsize = maxsize
        self.overflow = overflow
        self.topics = topics
        self.dropped = 0
        self.closed = False

    def wants(self, event: SweepEvent) -> bool:
        return self.topics is None or event.type in self.topics

    async def _deliver(self, event: SweepEvent) -> None:
        while not self.closed and self._queue.qsize() >= self._maxsize:
            if self.overflow == "drop_oldest":
                self._queue.get_nowait()
                self.dropped += 1
            else:
                self._space.clear()
                await self._space.wait()
        if self.closed:
            return
        self._queue.put_nowait(event)

    def _take(self, item: object) -> SweepEvent | None:
        self._space.set()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    async def get(self) -> SweepEvent | None:
        """Next event, or None once the subscription is closed and drained."""
        return self._take(await self._queue.get())

    def get_nowait(self) -> SweepEvent | None:
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return self._take(item)

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Detach from the bus and end iteration after queued events."""
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)
        self._space.set()

    def __aiter__(self) -> AsyncIterator[SweepEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SweepEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventBus:
    """Fan-out of sweep events to zero or more subscribers."""

    def __init__(self, default_maxsize: int = 256):
        self.default_maxsize = default_maxsize
        self._subscribers: tuple[Subscription, ...] = ()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self,
        maxsize: int | None = None,
        overflow: OverflowPolicy = "block",
        topics: set[SweepEventType] | None = None,
    ) -> Subscription:
        size = maxsize if maxsize is not None else self.default_maxsize
        if size < 1:
            raise ValueError(f"Subscriber queue size must be positive, got {size}")
        subscription = Subscription(
            self, size, overflow, frozenset(topics) if topics is not None else None
        )
        self._subscribers = self._subscribers + (subscription,)
        logger.debug(f"Subscriber attached, total: {len(self._subscribers)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers = tuple(s for s in self._subscribers if s is not subscription)
        logger.debug(f"Subscriber detached, total: {len(self._subscribers)}")

    async def publish(self, event: SweepEvent) -> int:
        """
        Deliver ``event`` to every current subscriber.

        Returns:
            Number of subscribers the event was queued for
        """
        delivered = 0
        for subscription in self._subscribers:
            if not subscription.wants(event):
                continue
            await subscription._deliver(event)
            delivered += 1
        return delivered

    def close_all(self) -> None:
        for subscription in self._subscribers:
            subscription.close()
        self._subscribers = ()
