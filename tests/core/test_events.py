"""Tests for isx_spine.core.events — Event model and InMemoryEventBus ordering."""

import asyncio

import pytest

from isx_spine.core.events import Event, EventBus
from isx_spine.core.events.memory import InMemoryEventBus


class TestEventMatches:
    def test_exact(self):
        event = Event(event_type="step:start", source="test")
        assert event.matches("step:start") is True
        assert event.matches("step:complete") is False

    def test_wildcards(self):
        event = Event(event_type="step:progress", source="test")
        assert event.matches("*") is True
        assert event.matches("step:*") is True
        assert event.matches("operation:*") is False

    def test_unique_ids(self):
        assert Event(event_type="x", source="t").event_id != Event(event_type="x", source="t").event_id


class TestInMemoryEventBus:
    def test_satisfies_protocol(self, bus):
        assert isinstance(bus, EventBus)

    @pytest.mark.asyncio
    async def test_delivers_in_publish_order(self, bus):
        received: list[int] = []

        async def handler(event: Event):
            received.append(event.payload["n"])

        await bus.subscribe("*", handler)
        for n in range(50):
            bus.publish_nowait(Event(event_type="step:progress", source="test", payload={"n": n}))
        await bus.flush()

        assert received == list(range(50))
        await bus.close()

    @pytest.mark.asyncio
    async def test_slow_handler_does_not_block_publisher(self, bus):
        release = asyncio.Event()
        seen: list[str] = []

        async def slow(event: Event):
            await release.wait()
            seen.append(event.event_type)

        await bus.subscribe("*", slow)
        bus.publish_nowait(Event(event_type="a", source="test"))
        bus.publish_nowait(Event(event_type="b", source="test"))
        assert bus.published == 2
        assert seen == []

        release.set()
        await bus.flush()
        assert seen == ["a", "b"]
        await bus.close()

    @pytest.mark.asyncio
    async def test_pattern_filtering(self, bus):
        steps: list[str] = []

        async def handler(event: Event):
            steps.append(event.event_type)

        await bus.subscribe("step:*", handler)
        bus.publish_nowait(Event(event_type="operation:start", source="test"))
        bus.publish_nowait(Event(event_type="step:start", source="test"))
        await bus.flush()

        assert steps == ["step:start"]
        await bus.close()

    @pytest.mark.asyncio
    async def test_handler_error_is_isolated(self, bus):
        good: list[str] = []

        async def broken(event: Event):
            raise RuntimeError("handler bug")

        async def handler(event: Event):
            good.append(event.event_type)

        await bus.subscribe("*", broken)
        await bus.subscribe("*", handler)
        bus.publish_nowait(Event(event_type="step:start", source="test"))
        await bus.flush()

        assert good == ["step:start"]
        await bus.close()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        seen: list[str] = []

        async def handler(event: Event):
            seen.append(event.event_type)

        sub_id = await bus.subscribe("*", handler)
        await bus.unsubscribe(sub_id)
        bus.publish_nowait(Event(event_type="step:start", source="test"))
        await bus.flush()

        assert seen == []
        assert bus.subscription_count == 0
        await bus.close()

    @pytest.mark.asyncio
    async def test_close_drains_then_drops(self, bus):
        seen: list[str] = []

        async def handler(event: Event):
            seen.append(event.event_type)

        await bus.subscribe("*", handler)
        bus.publish_nowait(Event(event_type="before", source="test"))
        await bus.close()
        bus.publish_nowait(Event(event_type="after", source="test"))

        assert seen == ["before"]
