"""
Tests for ConnectionHub: handshake, control frames, fan-out filtering,
per-connection backpressure and heartbeats.
"""

from __future__ import annotations

import asyncio

import pytest

from isx_spine.observability.metrics import EngineMetrics
from isx_spine.streaming.hub import CloseCode, Connection, ConnectionHub, EnqueueResult
from isx_spine.streaming.messages import SubscriptionFilter, WebSocketMessage
from tests._support.transports import FakeTransport, StalledTransport


def _progress(op_id: str = "op_1", percent: float = 10.0) -> WebSocketMessage:
    return WebSocketMessage(type="step:progress", data={"operation_id": op_id, "progress": percent})


def _complete(op_id: str = "op_1") -> WebSocketMessage:
    return WebSocketMessage(type="operation:complete", data={"operation_id": op_id, "status": "completed"})


def _step_start(op_id: str = "op_1") -> WebSocketMessage:
    return WebSocketMessage(type="step:start", data={"operation_id": op_id})


class TestConnectionQueue:
    @pytest.mark.asyncio
    async def test_evicts_oldest_droppable(self):
        conn = Connection(FakeTransport(), capacity=3)
        first, second = _progress(percent=1), _progress(percent=2)
        conn.enqueue(first)
        conn.enqueue(_step_start())
        conn.enqueue(second)

        assert conn.enqueue(_complete()) == EnqueueResult.EVICTED
        assert [m.type for m in conn.pending_messages()] == ["step:start", "step:progress", "operation:complete"]
        assert conn.pending_messages()[1] is second
        assert conn.dropped == 1

    @pytest.mark.asyncio
    async def test_droppable_dropped_when_nothing_to_evict(self):
        conn = Connection(FakeTransport(), capacity=2)
        conn.enqueue(_step_start())
        conn.enqueue(_step_start())

        assert conn.enqueue(_progress()) == EnqueueResult.DROPPED
        assert conn.queue_size == 2
        assert conn.dropped == 1

    @pytest.mark.asyncio
    async def test_terminal_overflow(self):
        conn = Connection(FakeTransport(), capacity=2)
        conn.enqueue(_step_start())
        conn.enqueue(_step_start())

        assert conn.enqueue(_complete()) == EnqueueResult.OVERFLOW
        assert conn.queue_size == 2

    @pytest.mark.asyncio
    async def test_closing_connection_rejects(self):
        conn = Connection(FakeTransport(), capacity=2)
        conn.closing = True
        assert conn.enqueue(_progress()) == EnqueueResult.CLOSED


class TestHandshakeAndControl:
    @pytest.mark.asyncio
    async def test_connect_handshake(self, settings):
        hub = ConnectionHub(settings, server_version="9.9.9")
        transport = FakeTransport()
        task = asyncio.ensure_future(hub.serve(transport))

        connect = await transport.wait_for("connect")
        assert connect["data"]["server_version"] == "9.9.9"
        assert connect["data"]["queue_size"] == settings.connection_queue_size
        assert connect["data"]["heartbeat"] == {"interval": 30.0, "timeout": 60.0}
        assert connect["channel"] is None and connect["sequence"] is None

        transport.feed(None)
        conn = await asyncio.wait_for(task, 2)
        assert conn.closed
        assert hub.connection_count == 0

    @pytest.mark.asyncio
    async def test_subscribe_unsubscribe_ping(self, settings):
        hub = ConnectionHub(settings)
        transport = FakeTransport()
        task = asyncio.ensure_future(hub.serve(transport))
        await transport.wait_for("connect")

        transport.feed({"type": "subscribe", "id": "req-1", "channels": ["operations", "notifications"]})
        ack = await transport.wait_for("subscribe")
        assert ack["data"]["channels"] == ["operations", "notifications"]
        assert ack["data"]["request_id"] == "req-1"

        transport.feed({"type": "unsubscribe", "channel": "notifications"})
        unsub = await transport.wait_for("unsubscribe")
        assert unsub["data"]["channels"] == ["notifications"]

        transport.feed({"type": "ping"})
        await transport.wait_for("pong")

        conn = hub.get(hub.stats()["details"][0]["id"])
        assert list(conn.subscriptions) == ["operations"]

        transport.feed(None)
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_malformed_frames_answered_with_error(self, settings):
        hub = ConnectionHub(settings)
        transport = FakeTransport()
        task = asyncio.ensure_future(hub.serve(transport))
        await transport.wait_for("connect")

        transport.feed("{not json")
        transport.feed("[1, 2]")
        transport.feed({"type": "explode"})
        transport.feed({"type": "subscribe", "channels": ["prices"]})
        transport.feed({"type": "ack", "channel": "operations", "sequence": 3})
        transport.feed({"type": "ping"})
        await transport.wait_for("pong")

        codes = [m["data"]["code"] for m in transport.of_type("error")]
        assert codes == ["INVALID_JSON", "INVALID_MESSAGE", "INVALID_MESSAGE", "UNKNOWN_CHANNEL", "NOT_SUBSCRIBED"]
        # the connection survives bad input
        assert transport.closed_with is None

        transport.feed(None)
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_oversized_frame_closes(self, settings):
        hub = ConnectionHub(settings.model_copy(update={"max_message_size": 512}))
        transport = FakeTransport()
        task = asyncio.ensure_future(hub.serve(transport))
        await transport.wait_for("connect")

        transport.feed({"type": "ping", "id": "x" * 600})
        conn = await asyncio.wait_for(task, 2)

        assert conn.close_code == CloseCode.MESSAGE_TOO_BIG
        assert transport.of_type("error")[0]["data"]["code"] == "MESSAGE_TOO_BIG"

    @pytest.mark.asyncio
    async def test_ack_records_highest_sequence(self, settings):
        hub = ConnectionHub(settings)
        conn = hub.open(FakeTransport())
        hub.register(conn, "operations")

        await hub.handle_text(conn, '{"type": "ack", "channel": "operations", "sequence": 7}')
        await hub.handle_text(conn, '{"type": "ack", "channel": "operations", "sequence": 5}')

        assert conn.subscriptions["operations"].acked_sequence == 7
        await hub.close(conn, drain=False)


class TestFanOut:
    @pytest.mark.asyncio
    async def test_deliver_respects_channel_and_filter(self, settings):
        hub = ConnectionHub(settings)
        everything, scraping_only, other_channel = FakeTransport(), FakeTransport(), FakeTransport()
        a, b, c = hub.open(everything), hub.open(scraping_only), hub.open(other_channel)
        hub.register(a, "operations")
        hub.register(b, "operations", SubscriptionFilter(operation_types=["scraping"]))
        hub.register(c, "notifications")

        message = WebSocketMessage(
            type="step:complete", data={"operation_id": "op_1", "operation_type": "processing"}
        ).stamped("operations", 1)

        assert hub.deliver(message) == 1
        await everything.wait_for("step:complete")
        assert scraping_only.of_type("step:complete") == []
        assert other_channel.of_type("step:complete") == []

        for conn in (a, b, c):
            await hub.close(conn, drain=False)

    def test_filter_message_types_pass_snapshots(self):
        flt = SubscriptionFilter(message_types=["operation:complete"])
        assert flt.matches(_complete()) is True
        assert flt.matches(_progress()) is False
        assert flt.matches(WebSocketMessage(type="operation:snapshot", data={})) is True

    def test_filter_symbols(self):
        flt = SubscriptionFilter(symbols=["bmns"])
        assert flt.matches(WebSocketMessage(type="step:progress", data={"symbols": ["BMNS", "TASC"]}))
        assert not flt.matches(WebSocketMessage(type="step:progress", data={"symbol": "TASC"}))
        # messages without symbol information always pass
        assert flt.matches(_progress())


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_slow_consumer_disconnected_on_terminal_overflow(self, settings):
        metrics = EngineMetrics()
        hub = ConnectionHub(settings.model_copy(update={"connection_queue_size": 2, "send_timeout": 30.0}), metrics=metrics)
        transport = StalledTransport()
        conn = hub.open(transport)
        hub.register(conn, "operations")
        await asyncio.sleep(0.01)  # writer takes the handshake and stalls

        for i in range(3):
            hub.deliver(_step_start().stamped("operations", i + 1))
        await asyncio.wait_for(conn._close_task, 2)

        assert conn.close_code == CloseCode.TRY_AGAIN_LATER
        assert transport.closed_with == (1013, "slow consumer")
        assert metrics.slow_disconnects.value() == 1
        assert hub.connection_count == 0

    @pytest.mark.asyncio
    async def test_send_timeout_closes(self, settings):
        hub = ConnectionHub(settings.model_copy(update={"send_timeout": 0.05}))
        transport = StalledTransport()
        conn = hub.open(transport)

        await asyncio.sleep(0.2)

        assert conn.closing
        assert conn.close_code == CloseCode.TRY_AGAIN_LATER
        assert conn.close_reason == "send timeout"


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_silent_client_dropped(self, settings):
        hub = ConnectionHub(settings.model_copy(update={"heartbeat_interval": 0.05, "heartbeat_timeout": 0.12}))
        transport = FakeTransport()
        conn = hub.open(transport)

        await asyncio.sleep(0.4)

        assert transport.of_type("ping")
        assert conn.closed
        assert transport.closed_with == (CloseCode.GOING_AWAY, "heartbeat timeout")


class TestShutdown:
    @pytest.mark.asyncio
    async def test_close_drains_queue(self, settings):
        hub = ConnectionHub(settings)
        transport = FakeTransport()
        conn = hub.open(transport)
        hub.register(conn, "operations")
        hub.deliver(_complete().stamped("operations", 1))

        await hub.shutdown()

        assert [m["type"] for m in transport.messages] == ["connect", "operation:complete"]
        assert transport.closed_with == (CloseCode.GOING_AWAY, "server shutting down")
        assert conn.closed
