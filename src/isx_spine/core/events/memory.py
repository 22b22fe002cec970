"""
In-memory event bus implementation.

Manifesto:
    Producers (step runners) must never wait on consumers, and consumers
    (the broadcaster) must see events in exactly the order they were
    produced. An unbounded asyncio queue drained by one dispatcher task
    gives both.

Events are dispatched to matching handlers one at a time, in subscription
order, by a single dispatcher task. Nothing is persisted.

Tags:
    events, in-memory, asyncio, ordering, single-node

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass

from isx_spine.core.events import Event, EventHandler
from isx_spine.core.logging import get_logger

__all__ = ["InMemoryEventBus"]

logger = get_logger(__name__)


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler


@dataclass
class _Barrier:
    """Queue marker resolved once everything ahead of it was dispatched."""

    future: asyncio.Future


class InMemoryEventBus:
    """In-process, order-preserving event bus.

    ``publish_nowait`` is synchronous so a runner can emit an event in the
    same critical section that mutated the operation; the dispatcher task
    is started lazily on the running loop.

    Example::

        bus = InMemoryEventBus()

        async def log_event(event: Event):
            print(f"Event: {event.event_type}")

        await bus.subscribe("*", log_event)
        bus.publish_nowait(Event(event_type="operation:start", source="runner"))
        await bus.flush()
        # Output: Event: operation:start
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[Event | _Barrier | None] = asyncio.Queue()
        self._dispatcher: asyncio.Task | None = None
        self._closed = False
        self.published = 0
        self.dispatched = 0

    def publish_nowait(self, event: Event) -> None:
        """Enqueue an event; never blocks."""
        if self._closed:
            logger.debug("event_dropped_bus_closed", event_type=event.event_type)
            return
        self._queue.put_nowait(event)
        self.published += 1
        self._ensure_dispatcher()

    async def publish(self, event: Event) -> None:
        """Enqueue an event (async form of :meth:`publish_nowait`)."""
        self.publish_nowait(event)

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        """Subscribe to events matching a pattern.

        Args:
            event_type: Pattern to match (supports ``*`` and ``type:*``)
            handler: Async callback for matching events

        Returns:
            Subscription ID
        """
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        async with self._lock:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=event_type, handler=handler)
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription."""
        async with self._lock:
            self._subscriptions.pop(subscription_id, None)

    async def flush(self) -> None:
        """Wait until every event published before this call has been dispatched."""
        if self._closed:
            return
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Barrier(future))
        self._ensure_dispatcher()
        await future

    async def close(self) -> None:
        """Dispatch what is already queued, then stop and clear subscriptions."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        if self._dispatcher is not None:
            await self._dispatcher
        async with self._lock:
            self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)

    @property
    def pending(self) -> int:
        """Events queued but not yet dispatched."""
        return self._queue.qsize()

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Dispatcher starts on the first publish/flush made from a loop
            return
        self._dispatcher = loop.create_task(self._run(), name="event-bus-dispatcher")

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                break
            if isinstance(item, _Barrier):
                if not item.future.done():
                    item.future.set_result(None)
                continue
            await self._dispatch(item)

    async def _dispatch(self, event: Event) -> None:
        handlers = [sub for sub in list(self._subscriptions.values()) if event.matches(sub.pattern)]
        for sub in handlers:
            try:
                await sub.handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub.id,
                    event_type=event.event_type,
                    error=str(e),
                    exc_info=True,
                )
        self.dispatched += 1
