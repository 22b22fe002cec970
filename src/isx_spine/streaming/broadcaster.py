"""
StatusBroadcaster - turns bus events into sequenced channel messages.

Manifesto:
    A client that connects late must see exactly what ``get_status`` would
    have told it, then every change after that, with nothing missing in
    between. The broadcaster keeps its own materialized copy of every
    operation (fed only by the event stream) and a sequence counter per
    channel; subscribing flushes the bus, then snapshots and registers in
    one synchronous step, so no delta can slip between the two.

Architecture:
    ::

        EventBus ──▶ _on_event (dispatcher task, in publish order)
                       ├── operation:created / deleted → snapshot store only
                       └── lifecycle events
                             ├── store[op_id] = payload.snapshot
                             ├── stamp + deliver on "operations"
                             ├── stamp + deliver on "operations:<id>"
                             └── terminal + notify_on_complete → "notifications"

        subscribe(conn, channel, filter)
            await bus.flush()                        barrier: store is current
            hub.send(conn, operation:snapshot @ seq) seq = channel's current sequence
            hub.register(conn, channel, filter)      later deltas are seq + 1, ...

Tags:
    streaming, broadcaster, snapshot-then-delta, sequencing

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import copy
import threading
from typing import Any

from isx_spine.core.errors import NotFoundError
from isx_spine.core.events import Event, EventBus
from isx_spine.core.logging import get_logger
from isx_spine.operations.models import EventType
from isx_spine.streaming.hub import Connection, ConnectionHub
from isx_spine.streaming.messages import (
    DELTA_TYPES,
    NOTIFICATIONS_CHANNEL,
    OPERATIONS_CHANNEL,
    TERMINAL_TYPES,
    MessageType,
    SubscriptionFilter,
    WebSocketMessage,
    channel_operation_id,
    operation_channel,
)

logger = get_logger(__name__)


class StatusBroadcaster:
    """Bridges the event bus to the connection hub.

    Args:
        bus: Event bus the manager and runners publish to
        hub: Connection hub receiving stamped messages

    Example::

        broadcaster = StatusBroadcaster(bus, hub)
        await broadcaster.start()
        ...
        await broadcaster.stop()
    """

    def __init__(self, bus: EventBus, hub: ConnectionHub) -> None:
        self.bus = bus
        self.hub = hub
        self._snapshots: dict[str, dict[str, Any]] = {}
        self._sequences: dict[str, int] = {}
        self._lock = threading.Lock()
        self._subscription_id: str | None = None
        hub.attach(self)

    async def start(self) -> None:
        if self._subscription_id is None:
            self._subscription_id = await self.bus.subscribe("*", self._on_event)
            logger.info("broadcaster.start")

    async def stop(self) -> None:
        if self._subscription_id is not None:
            await self.bus.unsubscribe(self._subscription_id)
            self._subscription_id = None
            logger.info("broadcaster.stop", channels=len(self._sequences), operations=len(self._snapshots))

    # =========================================================================
    # Event intake
    # =========================================================================

    async def _on_event(self, event: Event) -> None:
        # No awaits below: store update, stamping and fan-out happen as one step
        self.handle_event(event)

    def handle_event(self, event: Event) -> list[WebSocketMessage]:
        """Apply one bus event. Returns the stamped messages that were delivered."""
        payload = event.payload
        op_id = payload.get("operation_id")
        if not op_id:
            return []

        if event.event_type == EventType.OPERATION_CREATED.value:
            with self._lock:
                self._snapshots[op_id] = payload["snapshot"]
            return []
        if event.event_type == EventType.OPERATION_DELETED.value:
            with self._lock:
                self._snapshots.pop(op_id, None)
            return []
        if event.event_type not in DELTA_TYPES:
            return []

        snapshot = payload.get("snapshot")
        base = WebSocketMessage(
            type=event.event_type,
            data=self._message_data(payload),
            trace_id=event.correlation_id,
            timestamp=event.timestamp,
        )

        channels = [OPERATIONS_CHANNEL, operation_channel(op_id)]
        if event.event_type in TERMINAL_TYPES and payload.get("notify"):
            channels.append(NOTIFICATIONS_CHANNEL)

        stamped: list[WebSocketMessage] = []
        with self._lock:
            current = self._snapshots.get(op_id)
            if snapshot is not None and (current is None or snapshot.get("version", 0) >= current.get("version", 0)):
                self._snapshots[op_id] = snapshot
            for channel in channels:
                stamped.append(base.stamped(channel, self._next_sequence(channel)))

        for message in stamped:
            self.hub.deliver(message)
        return stamped

    @staticmethod
    def _message_data(payload: dict[str, Any]) -> dict[str, Any]:
        data = dict(payload)
        data["operation"] = data.pop("snapshot", None)
        return data

    def _next_sequence(self, channel: str) -> int:
        sequence = self._sequences.get(channel, 0) + 1
        self._sequences[channel] = sequence
        return sequence

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(self, conn: Connection, channel: str, flt: SubscriptionFilter | None = None) -> None:
        """Send the channel's snapshot, then register ``conn`` for deltas.

        Raises:
            NotFoundError: ``operations:<id>`` for an unknown operation.
        """
        flt = flt or SubscriptionFilter()
        await self.bus.flush()

        # Synchronous from here on: no delta can be stamped between snapshot and register
        op_id = channel_operation_id(channel)
        with self._lock:
            sequence = self._sequences.get(channel, 0)
            if op_id is not None:
                snapshot = self._snapshots.get(op_id)
                if snapshot is None:
                    raise NotFoundError("Operation", op_id)
                data = {
                    "operation_id": op_id,
                    "operation_type": snapshot.get("type"),
                    "version": snapshot.get("version"),
                    "operation": copy.deepcopy(snapshot),
                }
            elif channel == OPERATIONS_CHANNEL:
                operations = [copy.deepcopy(s) for s in self._snapshots.values() if flt.matches_snapshot(s)]
                operations.sort(key=lambda s: s.get("created_at") or "", reverse=True)
                data = {"operations": operations, "count": len(operations)}
            else:
                data = None

            if data is not None:
                self.hub.send(
                    conn,
                    WebSocketMessage(type=MessageType.OPERATION_SNAPSHOT.value, data=data).stamped(channel, sequence),
                )
            self.hub.register(conn, channel, flt)

        logger.debug("broadcaster.subscribed", connection_id=conn.id, channel=channel, sequence=sequence)

    # =========================================================================
    # Introspection
    # =========================================================================

    def snapshot(self, operation_id: str) -> dict[str, Any] | None:
        """Materialized copy of an operation as last seen on the bus."""
        with self._lock:
            snapshot = self._snapshots.get(operation_id)
            return copy.deepcopy(snapshot) if snapshot is not None else None

    def sequence(self, channel: str) -> int:
        """Last sequence number issued on ``channel`` (0 if none)."""
        with self._lock:
            return self._sequences.get(channel, 0)

    @property
    def operation_count(self) -> int:
        with self._lock:
            return len(self._snapshots)


__all__ = ["StatusBroadcaster"]
