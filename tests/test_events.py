"""Tests for the broker event stream."""

import asyncio

import pytest

from collab_sim.broker import MockBroker
from collab_sim.config import BrokerOptions
from collab_sim.events import (
    CONNECTION_ADDED,
    MESSAGE_DELIVERED,
    MESSAGE_DROPPED,
    TOPICS,
    EventBus,
)
from collab_sim.models import make_message
from collab_sim.runtime import ClientHost


class TestEventBus:
    @pytest.mark.asyncio
    async def test_listeners_run_in_subscription_order(self):
        bus = EventBus()
        seen = []

        async def second(event):
            seen.append(("second", event["n"]))

        bus.subscribe(MESSAGE_DELIVERED, lambda e: seen.append(("first", e["n"])))
        bus.subscribe(MESSAGE_DELIVERED, second)
        await bus.publish(MESSAGE_DELIVERED, {"n": 1})
        assert seen == [("first", 1), ("second", 1)]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(MESSAGE_DROPPED, broken)
        bus.subscribe(MESSAGE_DROPPED, seen.append)
        await bus.publish(MESSAGE_DROPPED, {"n": 1})
        assert seen == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_once_listener(self):
        bus = EventBus()
        seen = []
        bus.subscribe(CONNECTION_ADDED, seen.append, once=True)
        await bus.publish(CONNECTION_ADDED, {"connection_id": "a"})
        await bus.publish(CONNECTION_ADDED, {"connection_id": "b"})
        assert seen == [{"connection_id": "a"}]
        assert bus.subscriber_count(CONNECTION_ADDED) == 0

    def test_unknown_topic(self):
        with pytest.raises(ValueError, match="Unknown topic"):
            EventBus().subscribe("cursor.moved", lambda e: None)

    def test_unsubscribe(self):
        bus = EventBus()
        listener_id = bus.subscribe(MESSAGE_DELIVERED, lambda e: None)
        assert bus.subscriber_count(MESSAGE_DELIVERED) == 1
        assert bus.unsubscribe(listener_id) is True
        assert bus.unsubscribe(listener_id) is False
        assert bus.subscriber_count(MESSAGE_DELIVERED) == 0

    @pytest.mark.asyncio
    async def test_published_counts(self):
        bus = EventBus()
        await bus.publish(MESSAGE_DROPPED, {})
        await bus.publish(MESSAGE_DROPPED, {})
        assert bus.published(MESSAGE_DROPPED) == 2
        assert bus.published(MESSAGE_DELIVERED) == 0
        assert len(TOPICS) == 4


class TestWaitFor:
    @pytest.mark.asyncio
    async def test_waits_for_matching_event(self):
        bus = EventBus()
        waiter = asyncio.ensure_future(
            bus.wait_for(MESSAGE_DELIVERED, lambda e: e["message_id"] == "m2", timeout=1)
        )
        await asyncio.sleep(0)
        await bus.publish(MESSAGE_DELIVERED, {"message_id": "m1"})
        await bus.publish(MESSAGE_DELIVERED, {"message_id": "m2"})
        assert (await waiter)["message_id"] == "m2"
        assert bus.subscriber_count(MESSAGE_DELIVERED) == 0

    @pytest.mark.asyncio
    async def test_timeout_removes_listener(self):
        bus = EventBus()
        with pytest.raises(asyncio.TimeoutError):
            await bus.wait_for(MESSAGE_DROPPED, timeout=0.01)
        assert bus.subscriber_count(MESSAGE_DROPPED) == 0

    @pytest.mark.asyncio
    async def test_wait_for_broker_delivery(self):
        broker = MockBroker(BrokerOptions(delay_ms=20, open_delay_ms=0))
        await broker.start()
        page = await (await ClientHost().new_context()).new_page()
        channel = await broker.add_connection("user-0", page)
        page.open_socket("ws://localhost/ws")
        await channel.wait_until_open(1)

        waiter = asyncio.ensure_future(broker.events.wait_for(MESSAGE_DELIVERED, timeout=1))
        await asyncio.sleep(0)
        await broker.send_to_all(make_message("t", id="w1"))
        event = await waiter
        assert event["connection_id"] == "user-0"
        assert event["message_id"] == "w1"
        await broker.stop()
