"""
ConnectionHub - client connections, subscriptions and per-connection delivery.

Manifesto:
    A slow client must never slow down an operation. Producers only ever
    append to a bounded per-connection queue and return; a writer task per
    connection drains it. When the queue is full, progress messages give
    way first, and if a terminal message still does not fit the client is
    disconnected so the loss is visible instead of silent.

Architecture:
    ::

        transport ──receive_text──▶ serve() ──▶ _handle(control frame)
                                                  ├── subscribe   → broadcaster.subscribe (snapshot, then register)
                                                  ├── unsubscribe → unregister
                                                  ├── ack         → record sequence
                                                  └── ping        → pong
        broadcaster ──deliver(msg)──▶ filter per subscriber ──▶ Connection.enqueue (bounded deque)
                                                                  │
                                         writer task ◀────────────┘ send_text (send_timeout)
                                         heartbeat task: ping every interval, close after timeout

    The hub table has its own lock, independent of operation state.

Backpressure (queue full):
    ================  ==============================================
    droppable msg     evict oldest droppable, else drop the new msg
    other msg         evict oldest droppable, else close with 1013
    ================  ==============================================

Tags:
    streaming, websocket, backpressure, heartbeat, fan-out

Doc-Types:
    - API Reference
    - Architecture Documentation
"""

from __future__ import annotations

import asyncio
import json
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import ValidationError as PydanticValidationError

from isx_spine.core.errors import NotFoundError
from isx_spine.core.logging import get_logger
from isx_spine.core.settings import EngineSettings
from isx_spine.observability.metrics import EngineMetrics
from isx_spine.operations.models import utcnow
from isx_spine.streaming.messages import (
    NOTIFICATIONS_CHANNEL,
    OPERATIONS_CHANNEL,
    ClientMessage,
    MessageType,
    SubscriptionFilter,
    WebSocketMessage,
    is_known_channel,
)

if TYPE_CHECKING:
    from isx_spine.streaming.broadcaster import StatusBroadcaster

logger = get_logger(__name__)


class TransportClosed(Exception):
    """Raised by a transport when the peer has gone away."""


@runtime_checkable
class Transport(Protocol):
    """Minimal duplex text transport (a WebSocket, or a fake in tests)."""

    async def send_text(self, data: str) -> None: ...

    async def receive_text(self) -> str: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class CloseCode(IntEnum):
    NORMAL = 1000
    GOING_AWAY = 1001
    POLICY_VIOLATION = 1008
    MESSAGE_TOO_BIG = 1009
    INTERNAL_ERROR = 1011
    TRY_AGAIN_LATER = 1013


class EnqueueResult(str, Enum):
    QUEUED = "queued"
    EVICTED = "evicted"
    DROPPED = "dropped"
    OVERFLOW = "overflow"
    CLOSED = "closed"


@dataclass
class ChannelSubscription:
    channel: str
    filter: SubscriptionFilter = field(default_factory=SubscriptionFilter)
    acked_sequence: int | None = None
    subscribed_at: Any = field(default_factory=utcnow)


class Connection:
    """One client connection and its bounded outbound queue."""

    def __init__(self, transport: Transport, *, capacity: int, trace_id: str | None = None) -> None:
        self.id = f"conn_{uuid.uuid4().hex[:12]}"
        self.transport = transport
        self.capacity = capacity
        self.trace_id = trace_id
        self.subscriptions: dict[str, ChannelSubscription] = {}
        self.connected_at = utcnow()
        self.last_seen = asyncio.get_running_loop().time()
        self.sent = 0
        self.dropped = 0
        self.closing = False
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._queue: deque[WebSocketMessage] = deque()
        self._ready = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._writer: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None

    def touch(self) -> None:
        self.last_seen = asyncio.get_running_loop().time()

    def enqueue(self, message: WebSocketMessage) -> EnqueueResult:
        """Append without blocking, applying the backpressure policy."""
        if self.closing:
            return EnqueueResult.CLOSED

        result = EnqueueResult.QUEUED
        if len(self._queue) >= self.capacity:
            if not self._evict_droppable():
                if message.droppable:
                    self.dropped += 1
                    return EnqueueResult.DROPPED
                return EnqueueResult.OVERFLOW
            self.dropped += 1
            result = EnqueueResult.EVICTED

        self._queue.append(message)
        self._drained.clear()
        self._ready.set()
        return result

    def _evict_droppable(self) -> bool:
        for index, queued in enumerate(self._queue):
            if queued.droppable:
                del self._queue[index]
                return True
        return False

    def pending_messages(self) -> list[WebSocketMessage]:
        """Queued, not yet written messages (oldest first)."""
        return list(self._queue)

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "connected_at": self.connected_at.isoformat(),
            "channels": sorted(self.subscriptions),
            "queue_size": len(self._queue),
            "capacity": self.capacity,
            "sent": self.sent,
            "dropped": self.dropped,
            "closing": self.closing,
        }


class ConnectionHub:
    """Manages client connections and fans messages out to subscribers.

    Args:
        settings: Queue size, timeouts and heartbeat settings
        metrics: Optional engine metrics
        server_version: Announced in the ``connect`` handshake
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        metrics: EngineMetrics | None = None,
        server_version: str = "0.1.0",
    ) -> None:
        self.settings = settings or EngineSettings()
        self.metrics = metrics
        self.server_version = server_version
        self._connections: dict[str, Connection] = {}
        self._lock = threading.RLock()
        self._broadcaster: StatusBroadcaster | None = None

    def attach(self, broadcaster: StatusBroadcaster) -> None:
        """Route ``subscribe`` requests through the broadcaster (snapshot-then-delta)."""
        self._broadcaster = broadcaster

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def open(self, transport: Transport, *, trace_id: str | None = None) -> Connection:
        """Register a connection, queue the handshake and start its writer and heartbeat."""
        conn = Connection(transport, capacity=self.settings.connection_queue_size, trace_id=trace_id)
        with self._lock:
            self._connections[conn.id] = conn

        self._enqueue(conn, WebSocketMessage.control(MessageType.CONNECT, self._handshake(conn)))
        conn._writer = asyncio.ensure_future(self._write_loop(conn))
        conn._heartbeat = asyncio.ensure_future(self._heartbeat_loop(conn))

        if self.metrics:
            self.metrics.connections_active.inc()
        logger.info("connection.open", connection_id=conn.id, trace_id=trace_id)
        return conn

    def _handshake(self, conn: Connection) -> dict[str, Any]:
        return {
            "session_id": conn.id,
            "server_version": self.server_version,
            "capabilities": {
                "channels": [OPERATIONS_CHANNEL, "operations:<id>", NOTIFICATIONS_CHANNEL],
                "filters": ["operation_types", "operation_ids", "symbols", "message_types"],
                "snapshot": True,
                "ack": True,
            },
            "heartbeat": {
                "interval": self.settings.heartbeat_interval,
                "timeout": self.settings.heartbeat_timeout,
            },
            "queue_size": conn.capacity,
            "max_message_size": self.settings.max_message_size,
        }

    async def serve(self, transport: Transport, *, trace_id: str | None = None) -> Connection:
        """Run one connection until the client leaves or the hub closes it."""
        conn = self.open(transport, trace_id=trace_id)
        try:
            while not conn.closing:
                try:
                    text = await transport.receive_text()
                except TransportClosed:
                    break
                conn.touch()
                await self.handle_text(conn, text)
        finally:
            await self.close(conn, CloseCode.NORMAL, "client disconnected", drain=False)
        return conn

    async def close(
        self,
        conn: Connection,
        code: int = CloseCode.NORMAL,
        reason: str = "",
        *,
        drain: bool = True,
    ) -> None:
        """Close a connection, first draining its queue (bounded by ``close_timeout``) when ``drain``."""
        if conn._close_task is None:
            conn.closing = True
            conn._close_task = asyncio.ensure_future(self._close(conn, int(code), reason, drain))
        await asyncio.shield(conn._close_task)

    def _abort(self, conn: Connection, code: int, reason: str, *, drain: bool = False) -> None:
        """Close from synchronous code (fan-out, writer, heartbeat) without waiting."""
        if conn._close_task is None:
            conn.closing = True
            conn._close_task = asyncio.ensure_future(self._close(conn, int(code), reason, drain))

    async def _close(self, conn: Connection, code: int, reason: str, drain: bool) -> None:
        with self._lock:
            self._connections.pop(conn.id, None)

        if drain and conn._writer is not None and not conn._writer.done():
            try:
                await asyncio.wait_for(conn._drained.wait(), timeout=self.settings.close_timeout)
            except asyncio.TimeoutError:
                logger.warning("connection.drain_timeout", connection_id=conn.id, pending=conn.queue_size)

        conn.close_code = code
        conn.close_reason = reason
        for task in (conn._writer, conn._heartbeat):
            if task is not None and not task.done():
                task.cancel()

        try:
            await asyncio.wait_for(conn.transport.close(code, reason), timeout=self.settings.close_timeout)
        except (TransportClosed, asyncio.TimeoutError, RuntimeError, OSError) as exc:
            logger.debug("connection.close_error", connection_id=conn.id, error=str(exc))

        conn.closed = True
        if self.metrics:
            self.metrics.connections_active.dec()
        logger.info(
            "connection.closed",
            connection_id=conn.id,
            code=code,
            reason=reason,
            sent=conn.sent,
            dropped=conn.dropped,
            undelivered=conn.queue_size,
        )

    async def shutdown(self) -> None:
        """Gracefully close every connection."""
        with self._lock:
            connections = list(self._connections.values())
        await asyncio.gather(
            *(self.close(conn, CloseCode.GOING_AWAY, "server shutting down") for conn in connections),
            return_exceptions=True,
        )

    # =========================================================================
    # Writer and heartbeat
    # =========================================================================

    async def _write_loop(self, conn: Connection) -> None:
        while True:
            if not conn._queue:
                conn._drained.set()
                conn._ready.clear()
                await conn._ready.wait()
                continue

            message = conn._queue.popleft()
            try:
                await asyncio.wait_for(conn.transport.send_text(message.to_json()), timeout=self.settings.send_timeout)
            except asyncio.TimeoutError:
                logger.warning("connection.send_timeout", connection_id=conn.id, message_type=message.type)
                self._abort(conn, CloseCode.TRY_AGAIN_LATER, "send timeout")
                return
            except (TransportClosed, RuntimeError, OSError) as exc:
                logger.info("connection.send_failed", connection_id=conn.id, error=str(exc))
                self._abort(conn, CloseCode.GOING_AWAY, "send failed")
                return

            conn.sent += 1
            if self.metrics:
                self.metrics.messages_sent.labels(type=message.type).inc()

    async def _heartbeat_loop(self, conn: Connection) -> None:
        loop = asyncio.get_running_loop()
        while not conn.closing:
            await asyncio.sleep(self.settings.heartbeat_interval)
            silent_for = loop.time() - conn.last_seen
            if silent_for > self.settings.heartbeat_timeout:
                logger.warning("connection.heartbeat_timeout", connection_id=conn.id, silent_seconds=round(silent_for, 3))
                self._abort(conn, CloseCode.GOING_AWAY, "heartbeat timeout")
                return
            self._enqueue(conn, WebSocketMessage.control(MessageType.PING, {"timestamp": utcnow().isoformat()}))

    # =========================================================================
    # Inbound control frames
    # =========================================================================

    async def handle_text(self, conn: Connection, text: str) -> None:
        """Handle one client frame; malformed input is answered with ``error``."""
        if len(text) > self.settings.max_message_size:
            self._reply_error(conn, "MESSAGE_TOO_BIG", f"Frame exceeds {self.settings.max_message_size} bytes")
            self._abort(conn, CloseCode.MESSAGE_TOO_BIG, "message too big", drain=True)
            return
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            self._reply_error(conn, "INVALID_JSON", f"Malformed JSON: {exc.msg}")
            return
        if not isinstance(raw, dict):
            self._reply_error(conn, "INVALID_MESSAGE", "Frame must be a JSON object")
            return
        try:
            message = ClientMessage.model_validate(raw)
        except PydanticValidationError as exc:
            details = [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]
            self._reply_error(conn, "INVALID_MESSAGE", "Unrecognized control message", details=details)
            return

        if message.type == "subscribe":
            await self._handle_subscribe(conn, message)
        elif message.type == "unsubscribe":
            self._handle_unsubscribe(conn, message)
        elif message.type == "ack":
            self._handle_ack(conn, message)
        elif message.type == "ping":
            self._enqueue(conn, WebSocketMessage.control(MessageType.PONG, {"timestamp": utcnow().isoformat()}))

    async def _handle_subscribe(self, conn: Connection, message: ClientMessage) -> None:
        channels = message.target_channels()
        if not channels:
            self._reply_error(conn, "INVALID_SUBSCRIPTION", "subscribe requires at least one channel")
            return
        unknown = [ch for ch in channels if not is_known_channel(ch)]
        if unknown:
            self._reply_error(conn, "UNKNOWN_CHANNEL", f"Unknown channel(s): {', '.join(unknown)}", details=unknown)
            return

        flt = message.filter or SubscriptionFilter()
        subscribed: list[str] = []
        for channel in channels:
            try:
                if self._broadcaster is not None:
                    await self._broadcaster.subscribe(conn, channel, flt)
                else:
                    self.register(conn, channel, flt)
            except NotFoundError as exc:
                self._reply_error(conn, exc.error_code, exc.message, details={"channel": channel})
                continue
            subscribed.append(channel)

        if subscribed:
            self._enqueue(
                conn,
                WebSocketMessage.control(
                    MessageType.SUBSCRIBE,
                    {"status": "subscribed", "channels": subscribed, "filter": flt.model_dump(), "request_id": message.id},
                ),
            )

    def _handle_unsubscribe(self, conn: Connection, message: ClientMessage) -> None:
        channels = message.target_channels() or list(conn.subscriptions)
        removed = [ch for ch in channels if self.unregister(conn, ch)]
        self._enqueue(
            conn,
            WebSocketMessage.control(
                MessageType.UNSUBSCRIBE,
                {"status": "unsubscribed", "channels": removed, "request_id": message.id},
            ),
        )

    def _handle_ack(self, conn: Connection, message: ClientMessage) -> None:
        channel = message.channel or (message.channels[0] if message.channels else None)
        if channel is None or message.sequence is None:
            self._reply_error(conn, "INVALID_ACK", "ack requires channel and sequence")
            return
        sub = conn.subscriptions.get(channel)
        if sub is None:
            self._reply_error(conn, "NOT_SUBSCRIBED", f"Not subscribed to '{channel}'")
            return
        if sub.acked_sequence is None or message.sequence > sub.acked_sequence:
            sub.acked_sequence = message.sequence

    def _reply_error(self, conn: Connection, code: str, message: str, *, details: Any = None) -> None:
        logger.debug("connection.client_error", connection_id=conn.id, code=code, error=message)
        self._enqueue(conn, WebSocketMessage.error(code, message, details=details))

    # =========================================================================
    # Subscriptions and fan-out
    # =========================================================================

    def register(self, conn: Connection, channel: str, flt: SubscriptionFilter | None = None) -> None:
        with self._lock:
            conn.subscriptions[channel] = ChannelSubscription(channel=channel, filter=flt or SubscriptionFilter())
        logger.debug("connection.subscribed", connection_id=conn.id, channel=channel)

    def unregister(self, conn: Connection, channel: str) -> bool:
        with self._lock:
            return conn.subscriptions.pop(channel, None) is not None

    def send(self, conn: Connection, message: WebSocketMessage) -> EnqueueResult:
        """Queue a message for one connection (used for snapshots)."""
        return self._enqueue(conn, message)

    def deliver(self, message: WebSocketMessage) -> int:
        """Fan a channel-stamped message out to matching subscribers. Returns deliveries."""
        with self._lock:
            targets = [
                (conn, conn.subscriptions[message.channel])
                for conn in self._connections.values()
                if message.channel in conn.subscriptions
            ]

        delivered = 0
        for conn, sub in targets:
            if not sub.filter.matches(message):
                continue
            result = self._enqueue(conn, message)
            if result in (EnqueueResult.QUEUED, EnqueueResult.EVICTED):
                delivered += 1
        return delivered

    def _enqueue(self, conn: Connection, message: WebSocketMessage) -> EnqueueResult:
        result = conn.enqueue(message)
        if result in (EnqueueResult.DROPPED, EnqueueResult.EVICTED):
            if self.metrics:
                self.metrics.messages_dropped.inc()
            logger.debug("connection.message_dropped", connection_id=conn.id, message_type=message.type)
        elif result == EnqueueResult.OVERFLOW:
            if self.metrics:
                self.metrics.slow_disconnects.inc()
            logger.warning(
                "connection.slow_consumer",
                connection_id=conn.id,
                message_type=message.type,
                queue_size=conn.queue_size,
            )
            self._abort(conn, CloseCode.TRY_AGAIN_LATER, "slow consumer")
        return result

    # =========================================================================
    # Introspection
    # =========================================================================

    def get(self, connection_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(connection_id)

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            connections = [conn.info() for conn in self._connections.values()]
        return {
            "connections": len(connections),
            "queued": sum(c["queue_size"] for c in connections),
            "dropped": sum(c["dropped"] for c in connections),
            "details": connections,
        }


__all__ = [
    "ChannelSubscription",
    "CloseCode",
    "Connection",
    "ConnectionHub",
    "EnqueueResult",
    "Transport",
    "TransportClosed",
]
