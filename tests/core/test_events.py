# tests/core/test_events.py

import pytest

from shopguard.core.events import ChangeBus, ChangeTopic


@pytest.mark.unit
class TestChangeBus:

    async def test_sync_and_async_subscribers_receive_event(self, bus):
        received = []

        def sync_cb(event):
            received.append(("sync", event.reason))

        async def async_cb(event):
            received.append(("async", event.payload["count"]))

        bus.subscribe(ChangeTopic.CART, sync_cb)
        bus.subscribe(ChangeTopic.CART, async_cb)

        event = await bus.publish(ChangeTopic.CART, "item_added", {"count": 2})

        assert received == [("sync", "item_added"), ("async", 2)]
        assert event.topic == ChangeTopic.CART
        assert event.occurred_at is not None

    async def test_topics_are_isolated(self, bus):
        received = []
        bus.subscribe(ChangeTopic.FAVORITES, received.append)

        await bus.publish(ChangeTopic.CART, "loaded")

        assert received == []

    async def test_failing_subscriber_does_not_stop_others(self, bus):
        received = []

        def broken(event):
            raise RuntimeError("observer bug")

        bus.subscribe(ChangeTopic.SESSION, broken)
        bus.subscribe(ChangeTopic.SESSION, received.append)

        await bus.publish(ChangeTopic.SESSION, "signed_in")

        assert len(received) == 1
        assert bus.get_metrics()["subscriber_errors"] == 1

    async def test_unsubscribe(self, bus):
        received = []
        unsubscribe = bus.subscribe(ChangeTopic.CART, received.append)

        unsubscribe()
        unsubscribe()
        await bus.publish(ChangeTopic.CART, "cleared")

        assert received == []
        assert bus.subscriber_count(ChangeTopic.CART) == 0

    def test_subscriber_count(self):
        bus = ChangeBus()
        bus.subscribe(ChangeTopic.CART, lambda e: None)
        bus.subscribe(ChangeTopic.SESSION, lambda e: None)

        assert bus.subscriber_count() == 2
        assert bus.subscriber_count(ChangeTopic.CART) == 1
