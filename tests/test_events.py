"""
Tests for publish/subscribe channels.
"""

import pytest

from tracker_orchestrator.events import EventChannel, OrchestratorEvents


class TestEventChannel:
    """Test EventChannel delivery and subscription handles."""

    def setup_method(self):
        self.channel: EventChannel[int] = EventChannel("test")

    def test_publish_to_all_subscribers(self):
        first, second = [], []
        self.channel.subscribe(first.append)
        self.channel.subscribe(second.append)

        self.channel.publish(1)

        assert first == [1]
        assert second == [1]
        assert self.channel.subscriber_count == 2

    def test_unsubscribe_is_idempotent(self):
        received = []
        subscription = self.channel.subscribe(received.append)

        subscription.unsubscribe()
        subscription.unsubscribe()
        self.channel.publish(1)

        assert received == []
        assert subscription.active is False

    def test_subscription_context_manager(self):
        received = []

        with self.channel.subscribe(received.append):
            self.channel.publish(1)
        self.channel.publish(2)

        assert received == [1]

    def test_failing_handler_does_not_stop_delivery(self):
        received = []

        def broken(payload):
            raise RuntimeError("handler bug")

        self.channel.subscribe(broken)
        self.channel.subscribe(received.append)

        self.channel.publish(7)

        assert received == [7]

    @pytest.mark.asyncio
    async def test_async_handlers_scheduled_and_drained(self):
        received = []

        async def handler(payload):
            received.append(payload)

        async def broken(payload):
            raise RuntimeError("async handler bug")

        self.channel.subscribe(handler)
        self.channel.subscribe(broken)

        self.channel.publish(3)
        await self.channel.drain()

        assert received == [3]


class TestOrchestratorEvents:
    """Test the channel set."""

    def test_channels_and_clear(self):
        events = OrchestratorEvents()
        events.positions.subscribe(lambda payload: None)
        events.notifications.subscribe(lambda payload: None)

        assert [c.name for c in events.channels()] == [
            "positions",
            "vehicles",
            "alerts_triggered",
            "alerts_resolved",
            "notifications",
            "panic",
        ]

        events.clear()

        assert all(c.subscriber_count == 0 for c in events.channels())
