"""
Streaming router - ``WS /ws`` bridged onto the ConnectionHub.

The hub speaks a minimal text transport; :class:`WebSocketTransport`
adapts Starlette's WebSocket to it and turns disconnects into
:class:`TransportClosed`.

Client flow::

    ← {"type": "connect", "data": {"session_id": "conn_...", "heartbeat": {...}}}
    → {"type": "subscribe", "channels": ["operations:op_1a2b3c4d5e6f"]}
    ← {"type": "operation:snapshot", "channel": "operations:op_1a2b3c4d5e6f", "sequence": 3, ...}
    ← {"type": "subscribe", "data": {"status": "subscribed", ...}}
    ← {"type": "step:progress", "channel": "operations:op_1a2b3c4d5e6f", "sequence": 4, ...}
"""

from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from isx_spine.core.logging import get_logger
from isx_spine.engine import Engine
from isx_spine.streaming.hub import TransportClosed

logger = get_logger(__name__)

router = APIRouter()


class WebSocketTransport:
    """Starlette WebSocket as a hub transport."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send_text(self, data: str) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise TransportClosed("websocket not connected")
        try:
            await self.websocket.send_text(data)
        except WebSocketDisconnect as exc:
            raise TransportClosed(f"client disconnected ({exc.code})") from exc

    async def receive_text(self) -> str:
        try:
            return await self.websocket.receive_text()
        except WebSocketDisconnect as exc:
            raise TransportClosed(f"client disconnected ({exc.code})") from exc
        except RuntimeError as exc:
            # Starlette raises RuntimeError once the socket has been closed
            raise TransportClosed(str(exc)) from exc

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if (
            self.websocket.application_state == WebSocketState.DISCONNECTED
            or self.websocket.client_state == WebSocketState.DISCONNECTED
        ):
            return
        await self.websocket.close(code=code, reason=reason)


@router.websocket("/ws")
async def operation_stream(websocket: WebSocket) -> None:
    """Live operation events. See ``isx_spine.streaming`` for the protocol."""
    engine: Engine = websocket.app.state.engine
    await websocket.accept()
    trace_id = websocket.headers.get("x-request-id") or websocket.query_params.get("trace_id")
    conn = await engine.hub.serve(WebSocketTransport(websocket), trace_id=trace_id)
    logger.debug("stream.finished", connection_id=conn.id, code=conn.close_code, reason=conn.close_reason)
