"""
Wire messages for the streaming channel.

Every frame sent to a client is a :class:`WebSocketMessage` serialized as::

    {"id": "msg_...", "type": "step:progress", "channel": "operations:op_1a2b3c4d5e6f",
     "timestamp": "2025-01-05T10:00:00+00:00", "sequence": 42,
     "trace_id": "9f0c...", "data": {...}}

``sequence`` is assigned per channel by the broadcaster; control frames
(``connect``, ``error``, ``ping``, ...) carry ``channel`` and ``sequence``
as ``null``.

Channels:
    ``operations``             every operation's events
    ``operations:<id>``        one operation's events
    ``notifications``          terminal events of operations with ``notify_on_complete``

Tags:
    streaming, websocket, wire-format
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

OPERATIONS_CHANNEL = "operations"
NOTIFICATIONS_CHANNEL = "notifications"
_OPERATION_PREFIX = "operations:"


def operation_channel(operation_id: str) -> str:
    return f"{_OPERATION_PREFIX}{operation_id}"


def channel_operation_id(channel: str) -> str | None:
    """``operations:<id>`` -> ``<id>``; None for any other channel."""
    if channel.startswith(_OPERATION_PREFIX) and len(channel) > len(_OPERATION_PREFIX):
        return channel[len(_OPERATION_PREFIX):]
    return None


def is_known_channel(channel: str) -> bool:
    return channel in (OPERATIONS_CHANNEL, NOTIFICATIONS_CHANNEL) or channel_operation_id(channel) is not None


class MessageType(str, Enum):
    """Recognized ``type`` values."""

    OPERATION_START = "operation:start"
    OPERATION_PROGRESS = "operation:progress"
    OPERATION_COMPLETE = "operation:complete"
    OPERATION_FAILED = "operation:failed"
    OPERATION_CANCELLED = "operation:cancelled"
    OPERATION_SNAPSHOT = "operation:snapshot"
    STEP_START = "step:start"
    STEP_PROGRESS = "step:progress"
    STEP_COMPLETE = "step:complete"
    STEP_FAILED = "step:failed"

    # Control
    CONNECT = "connect"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    ACK = "ack"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"


DELTA_TYPES: frozenset[str] = frozenset({
    MessageType.OPERATION_START.value,
    MessageType.OPERATION_PROGRESS.value,
    MessageType.OPERATION_COMPLETE.value,
    MessageType.OPERATION_FAILED.value,
    MessageType.OPERATION_CANCELLED.value,
    MessageType.STEP_START.value,
    MessageType.STEP_PROGRESS.value,
    MessageType.STEP_COMPLETE.value,
    MessageType.STEP_FAILED.value,
})

# May be discarded under backpressure
DROPPABLE_TYPES: frozenset[str] = frozenset({
    MessageType.STEP_PROGRESS.value,
    MessageType.OPERATION_PROGRESS.value,
})

TERMINAL_TYPES: frozenset[str] = frozenset({
    MessageType.OPERATION_COMPLETE.value,
    MessageType.OPERATION_FAILED.value,
    MessageType.OPERATION_CANCELLED.value,
})


def _message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class WebSocketMessage:
    """Envelope for one outbound frame."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    channel: str | None = None
    sequence: int | None = None
    trace_id: str | None = None
    id: str = field(default_factory=_message_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def droppable(self) -> bool:
        return self.type in DROPPABLE_TYPES

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    @property
    def operation_id(self) -> str | None:
        return self.data.get("operation_id")

    def stamped(self, channel: str, sequence: int) -> WebSocketMessage:
        """Copy addressed to ``channel`` with its sequence number (same id)."""
        return replace(self, channel=channel, sequence=sequence)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "channel": self.channel,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }
        if self.trace_id:
            result["trace_id"] = self.trace_id
        result["data"] = self.data
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def control(cls, message_type: MessageType, data: dict[str, Any] | None = None) -> WebSocketMessage:
        return cls(type=message_type.value, data=data or {})

    @classmethod
    def error(
        cls,
        code: str,
        message: str,
        *,
        details: Any = None,
        retry: bool = False,
        fatal: bool = False,
    ) -> WebSocketMessage:
        return cls(
            type=MessageType.ERROR.value,
            data={"code": code, "message": message, "details": details, "retry": retry, "fatal": fatal},
        )


# =============================================================================
# Client → server
# =============================================================================


class SubscriptionFilter(BaseModel):
    """Per-subscription delivery filter. Empty lists do not restrict.

    Snapshots and control frames always pass ``message_types``; messages
    that carry no symbol information always pass ``symbols``.
    """

    model_config = ConfigDict(extra="forbid")

    operation_types: list[str] = Field(default_factory=list)
    operation_ids: list[str] = Field(default_factory=list)
    symbols: list[str] = Field(default_factory=list)
    message_types: list[str] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.operation_types or self.operation_ids or self.symbols or self.message_types)

    def matches(self, message: WebSocketMessage) -> bool:
        if self.empty:
            return True
        if self.message_types and message.type in DELTA_TYPES and message.type not in self.message_types:
            return False

        data = message.data
        if self.operation_types:
            op_type = data.get("operation_type")
            if op_type is not None and op_type not in self.operation_types:
                return False
        if self.operation_ids:
            op_id = data.get("operation_id")
            if op_id is not None and op_id not in self.operation_ids:
                return False
        if self.symbols:
            carried = message_symbols(data)
            if carried and not carried.intersection(s.upper() for s in self.symbols):
                return False
        return True

    def matches_snapshot(self, snapshot: dict[str, Any]) -> bool:
        """Whether an operation snapshot belongs in a filtered global snapshot."""
        if self.operation_types and snapshot.get("type") not in self.operation_types:
            return False
        if self.operation_ids and snapshot.get("id") not in self.operation_ids:
            return False
        return True


def message_symbols(data: dict[str, Any]) -> set[str]:
    """Ticker symbols a message refers to (``symbol``/``symbols``/``ticker`` keys)."""
    found: set[str] = set()
    sources = [data]
    step = data.get("step")
    if isinstance(step, dict):
        sources += [step.get("metadata") or {}, step.get("parameters") or {}]
    for source in sources:
        for key in ("symbol", "ticker"):
            value = source.get(key)
            if isinstance(value, str) and value:
                found.add(value.upper())
        values = source.get("symbols")
        if isinstance(values, (list, tuple, set)):
            found.update(str(v).upper() for v in values if v)
    return found


class ClientMessage(BaseModel):
    """Control frame sent by a client.

    Examples::

        {"type": "subscribe", "channels": ["operations:op_1a2b"], "filter": {"message_types": ["step:complete"]}}
        {"type": "unsubscribe", "channels": ["operations"]}
        {"type": "ack", "channel": "operations", "sequence": 41}
        {"type": "ping"}
    """

    model_config = ConfigDict(extra="ignore")

    type: Literal["subscribe", "unsubscribe", "ack", "ping", "pong"]
    id: str | None = None
    channels: list[str] = Field(default_factory=list)
    channel: str | None = None
    filter: SubscriptionFilter | None = None
    sequence: int | None = Field(default=None, ge=0)

    def target_channels(self) -> list[str]:
        """``channels`` plus the singular ``channel`` shorthand, de-duplicated in order."""
        seen: list[str] = []
        for ch in [*self.channels, *([self.channel] if self.channel else [])]:
            if ch not in seen:
                seen.append(ch)
        return seen


__all__ = [
    "DELTA_TYPES",
    "DROPPABLE_TYPES",
    "NOTIFICATIONS_CHANNEL",
    "OPERATIONS_CHANNEL",
    "TERMINAL_TYPES",
    "ClientMessage",
    "MessageType",
    "SubscriptionFilter",
    "WebSocketMessage",
    "channel_operation_id",
    "is_known_channel",
    "message_symbols",
    "operation_channel",
]
