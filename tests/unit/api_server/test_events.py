"""
Unit tests for EventBroker and the SSE stream.
"""

import asyncio
import json
import queue

import pytest
from blobserve.api_server import EventBroker
from blobserve.api_server.events import FILE_CREATED, event_stream


def collect(subscription, **kwargs):
    async def run():
        return [frame async for frame in event_stream(subscription, **kwargs)]
    return asyncio.run(run())


class TestEventBrokerPublish:
    """Tests for EventBroker.publish()"""

    @pytest.mark.p0
    def test_publish_created(self, event_broker):
        """Test the shape of a FileCreated event."""
        event = event_broker.publish_created("abc")

        assert event.seq == 1
        assert event.data == {"event": FILE_CREATED, "id": "abc"}

    @pytest.mark.p0
    def test_live_subscriber_receives_events(self, event_broker):
        """Test that a subscriber receives events published after it joined."""
        subscription = event_broker.subscribe()
        event_broker.publish_created("a")
        event_broker.publish_created("b")

        assert subscription.get(timeout=1).data["id"] == "a"
        assert subscription.get(timeout=1).data["id"] == "b"
        with pytest.raises(queue.Empty):
            subscription.get(timeout=0.05)

    @pytest.mark.p0
    def test_new_subscriber_replays_history(self, event_broker):
        """Test that a late subscriber first receives the buffered history."""
        event_broker.publish_created("a")
        event_broker.publish_created("b")

        subscription = event_broker.subscribe()
        event_broker.publish_created("c")

        ids = [subscription.get(timeout=1).data["id"] for _ in range(3)]
        assert ids == ["a", "b", "c"]

    @pytest.mark.p1
    def test_subscribe_without_replay(self, event_broker):
        event_broker.publish_created("a")
        subscription = event_broker.subscribe(replay=False)

        with pytest.raises(queue.Empty):
            subscription.get_nowait()

    @pytest.mark.p1
    def test_history_is_bounded(self):
        """Test that only the most recent events are kept."""
        broker = EventBroker(history_size=3)
        for i in range(5):
            broker.publish_created(str(i))

        assert [e.data["id"] for e in broker.history()] == ["2", "3", "4"]
        assert [e.seq for e in broker.history()] == [3, 4, 5]


class TestEventBrokerClose:
    """Tests for subscription and broker shutdown."""

    @pytest.mark.p0
    def test_unsubscribe(self, event_broker):
        subscription = event_broker.subscribe()
        assert event_broker.subscriber_count == 1

        subscription.close()

        assert event_broker.subscriber_count == 0
        assert subscription.closed
        # Publishing after close must not reach the closed subscription
        event_broker.publish_created("a")
        assert subscription.get(timeout=1) is None

    @pytest.mark.p0
    def test_close_ends_subscriptions(self, event_broker):
        """Test that closing the broker delivers the end sentinel."""
        subscription = event_broker.subscribe()
        event_broker.publish_created("a")

        event_broker.close()

        assert subscription.get(timeout=1).data["id"] == "a"
        assert subscription.get(timeout=1) is None
        assert event_broker.subscriber_count == 0

    @pytest.mark.p1
    def test_subscribe_after_close(self, event_broker):
        """Test that subscribing to a closed broker yields history then ends."""
        event_broker.publish_created("a")
        event_broker.close()

        subscription = event_broker.subscribe()

        assert subscription.get(timeout=1).data["id"] == "a"
        assert subscription.get(timeout=1) is None

    @pytest.mark.p1
    def test_send_to_closed_subscription(self, event_broker):
        subscription = event_broker.subscribe()
        subscription.close()
        with pytest.raises(RuntimeError):
            subscription.send(event_broker.publish_created("a"))


class TestEventStream:
    """Tests for the SSE frame generator."""

    @pytest.mark.p0
    def test_frames(self, event_broker):
        """Test that events are framed as SSE and the stream ends on close."""
        event_broker.publish_created("a")
        event_broker.publish_created("b")
        subscription = event_broker.subscribe()
        event_broker.close()

        frames = collect(subscription)

        assert len(frames) == 2
        assert frames[0].startswith("id: 1\ndata: ")
        assert frames[0].endswith("\n\n")
        data = json.loads(frames[1].split("data: ", 1)[1])
        assert data == {"event": FILE_CREATED, "id": "b"}

    @pytest.mark.p1
    def test_keepalive(self, event_broker):
        """Test that an idle stream sends comment frames."""
        subscription = event_broker.subscribe()

        async def run():
            frames = []
            async for frame in event_stream(subscription, keepalive=0.05, poll_interval=0.01):
                frames.append(frame)
                if len(frames) == 2:
                    event_broker.close()
            return frames

        frames = asyncio.run(run())

        assert frames[:2] == [": keepalive\n\n", ": keepalive\n\n"]

    @pytest.mark.p1
    def test_stream_closes_subscription(self, event_broker):
        """Test that abandoning the stream unsubscribes."""
        event_broker.publish_created("a")
        subscription = event_broker.subscribe()

        async def run():
            stream = event_stream(subscription)
            first = await stream.__anext__()
            await stream.aclose()
            return first

        first = asyncio.run(run())

        assert first.startswith("id: 1")
        assert subscription.closed
        assert event_broker.subscriber_count == 0
