"""
Event Broker - fan-out of object creation events to SSE subscribers.

Every published event is kept in a bounded history. A new subscriber first
receives that history, then live events, until it unsubscribes or the
broker is closed.
"""

import asyncio
import json
import logging
import queue
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)

FILE_CREATED = "FileCreated"


@dataclass(frozen=True)
class Event:
    """A published event with its sequence number."""
    seq: int
    data: Dict[str, Any]

    def to_sse(self) -> str:
        """Frame the event for a text/event-stream response."""
        return f"id: {self.seq}\ndata: {json.dumps(self.data)}\n\n"


class Subscription:
    """
    One subscriber's queue of pending events.

    get() returns None once the subscription has been closed and drained.
    """

    def __init__(self, broker: "EventBroker", backlog: List[Event]):
        self.id = str(uuid.uuid4())[:12]
        self._broker = broker
        self._queue: "queue.Queue[Optional[Event]]" = queue.Queue()
        self._closed = False
        for event in backlog:
            self._queue.put(event)

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: Event) -> None:
        if self._closed:
            raise RuntimeError("Cannot send to a closed subscription")
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Next event, blocking up to `timeout` seconds.

        Raises:
            queue.Empty: nothing arrived within the timeout
        """
        return self._queue.get(timeout=timeout)

    def get_nowait(self) -> Optional[Event]:
        return self._queue.get_nowait()

    def close(self) -> None:
        """Stop receiving events. Pending events stay readable."""
        if self._closed:
            return
        # Unsubscribe first so no publisher can send after the sentinel
        self._broker.unsubscribe(self)
        self._closed = True
        self._queue.put(None)  # sentinel


class EventBroker:
    """
    Thread-safe publish/subscribe hub with replayable history.

    Publishing happens from request handler threads; subscribers are
    drained by the SSE response generators.
    """

    def __init__(self, history_size: int = 100):
        self._lock = threading.RLock()
        self._history: deque = deque(maxlen=history_size)
        self._subscribers: Dict[str, Subscription] = {}  # subscription id -> Subscription
        self._next_seq = 1
        self._closed = False

    def publish(self, data: Dict[str, Any]) -> Event:
        with self._lock:
            event = Event(seq=self._next_seq, data=data)
            self._next_seq += 1
            self._history.append(event)
            for subscription in self._subscribers.values():
                subscription.send(event)
            return event

    def publish_created(self, object_id: str) -> Event:
        """Announce that an object was created."""
        logger.debug("Publishing %s for %s", FILE_CREATED, object_id)
        return self.publish({"event": FILE_CREATED, "id": object_id})

    def subscribe(self, replay: bool = True) -> Subscription:
        """
        Register a subscriber.

        With replay=True the subscriber first receives the buffered history.
        Subscribing to a closed broker yields the history and then ends.
        """
        with self._lock:
            backlog = list(self._history) if replay else []
            subscription = Subscription(self, backlog)
            if self._closed:
                subscription.close()
            else:
                self._subscribers[subscription.id] = subscription
            return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            return self._subscribers.pop(subscription.id, None) is not None

    def history(self) -> List[Event]:
        with self._lock:
            return list(self._history)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        """End every open subscription."""
        with self._lock:
            self._closed = True
            subscriptions = list(self._subscribers.values())
        for subscription in subscriptions:
            subscription.close()


async def event_stream(
    subscription: Subscription,
    keepalive: float = 15.0,
    poll_interval: float = 0.1,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for a subscription until it is closed. A comment line
    is sent after `keepalive` idle seconds. The subscription is closed when
    the generator finishes or is cancelled by a client disconnect.
    """
    idle = 0.0
    try:
        while True:
            try:
                event = subscription.get_nowait()
            except queue.Empty:
                await asyncio.sleep(poll_interval)
                idle += poll_interval
                if idle >= keepalive:
                    idle = 0.0
                    yield ": keepalive\n\n"
                continue
            if event is None:
                break
            idle = 0.0
            yield event.to_sse()
    finally:
        subscription.close()
