"""Event system connecting step runners to the status broadcaster.

Why This Package Exists
-----------------------
Runners must report every state change without knowing who is listening,
and without ever blocking on a slow listener. The ``EventBus`` protocol
decouples them: runners call ``publish_nowait`` synchronously right after
mutating an operation, and consumers receive events in exactly that order
from a single dispatcher task.

Usage::

    from isx_spine.core.events import Event
    from isx_spine.core.events.memory import InMemoryEventBus

    bus = InMemoryEventBus()

    async def handler(event: Event):
        print(event.event_type, event.payload["operation_id"])

    await bus.subscribe("step:*", handler)
    bus.publish_nowait(Event(event_type="step:start", source="runner",
                             payload={"operation_id": "op_1"}))
    await bus.flush()

Modules
-------
memory      InMemoryEventBus -- asyncio queue + ordered dispatcher
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
]


# ── Event Model ──────────────────────────────────────────────────────────


@dataclass
class Event:
    """Raw state-change event.

    Attributes:
        event_type: Colon-separated type (e.g. ``step:start``, ``operation:failed``)
        source: Origin component
        payload: Event-specific data; runner events carry ``operation_id``
            and a deep-copied ``snapshot`` of the operation
        timestamp: When the event occurred (UTC)
        correlation_id: Trace id of the originating request
        event_id: Unique event identifier
    """

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Check if event type matches a pattern (supports wildcards).

        Examples:
            - ``step:*`` matches ``step:start``, ``step:complete``
            - ``*`` matches everything
            - ``step:start`` matches exactly ``step:start``
        """
        if pattern == "*":
            return True
        if pattern.endswith(":*") or pattern.endswith(".*"):
            prefix = pattern[:-1]
            return self.event_type.startswith(prefix)
        return self.event_type == pattern


# ── Type Aliases ─────────────────────────────────────────────────────────

EventHandler = Callable[[Event], Awaitable[None]]


# ── EventBus Protocol ────────────────────────────────────────────────────


@runtime_checkable
class EventBus(Protocol):
    """Protocol for event bus implementations.

    Events are delivered to handlers in publish order; ``flush`` returns
    once every event published before the call has been dispatched.
    """

    def publish_nowait(self, event: Event) -> None:
        """Enqueue an event without blocking (safe to call from sync code on the loop)."""
        ...

    async def publish(self, event: Event) -> None:
        """Enqueue an event."""
        ...

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        """Subscribe to events matching a pattern; returns a subscription id."""
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription."""
        ...

    async def flush(self) -> None:
        """Wait until every previously published event has been dispatched."""
        ...

    async def close(self) -> None:
        """Dispatch what is queued, then stop."""
        ...
