"""
Streaming - live operation status for connected clients.

    bus ──▶ StatusBroadcaster ──▶ ConnectionHub ──▶ clients

Modules:
    messages      wire envelope, channels, client control frames
    broadcaster   sequencing + snapshot-then-delta
    hub           connections, filters, backpressure, heartbeat
"""

from isx_spine.streaming.broadcaster import StatusBroadcaster
from isx_spine.streaming.hub import CloseCode, Connection, ConnectionHub, Transport, TransportClosed
from isx_spine.streaming.messages import (
    NOTIFICATIONS_CHANNEL,
    OPERATIONS_CHANNEL,
    ClientMessage,
    MessageType,
    SubscriptionFilter,
    WebSocketMessage,
    operation_channel,
)

__all__ = [
    "NOTIFICATIONS_CHANNEL",
    "OPERATIONS_CHANNEL",
    "ClientMessage",
    "CloseCode",
    "Connection",
    "ConnectionHub",
    "MessageType",
    "StatusBroadcaster",
    "SubscriptionFilter",
    "Transport",
    "TransportClosed",
    "WebSocketMessage",
    "operation_channel",
]
