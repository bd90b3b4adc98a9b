"""
In-process event bus for the push channel.

Publishing never blocks: each subscriber holds a bounded queue that
drops its oldest message when full.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Callable

from models.event import BusMessage, Topic

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


class Subscription:
    """A subscriber's bounded mailbox."""

    def __init__(self, topics: set[Topic] | None = None, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.topics = topics
        self._queue: deque[BusMessage] = deque(maxlen=maxsize)
        self._wakeup = asyncio.Event()
        self.dropped = 0
        self.closed = False

    def wants(self, message: BusMessage) -> bool:
        return self.topics is None or message.topic in self.topics

    def push(self, message: BusMessage) -> None:
        if self._queue.maxlen is not None and len(self._queue) == self._queue.maxlen:
            self.dropped += 1
        self._queue.append(message)
        self._wakeup.set()

    def pending(self) -> int:
        return len(self._queue)

    def drain(self) -> list[BusMessage]:
        messages = list(self._queue)
        self._queue.clear()
        self._wakeup.clear()
        return messages

    async def get(self, timeout: float | None = None) -> BusMessage | None:
        """Next message, or None on timeout or close."""
        while not self._queue:
            if self.closed:
                return None
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
        return self._queue.popleft()

    def close(self) -> None:
        self.closed = True
        self._wakeup.set()


class EventBus:
    """Typed pub/sub for renewal events, passphrase prompts and scheduler status."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._listeners: list[Callable[[BusMessage], Any]] = []

    @property
    def client_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, topics: set[Topic] | None = None) -> Subscription:
        subscription = Subscription(topics, self.queue_size)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def add_listener(self, listener: Callable[[BusMessage], Any]) -> None:
        """Register a synchronous callback invoked for every published message."""
        self._listeners.append(listener)

    def publish(self, topic: Topic, payload: dict[str, Any] | None = None) -> BusMessage:
        message = BusMessage(topic=topic, payload=payload or {})
        for subscription in list(self._subscribers):
            if subscription.wants(message):
                subscription.push(message)
        for listener in self._listeners:
            try:
                listener(message)
            except Exception as e:
                logger.error(f"Event listener failed for {topic.value}: {e}")
        logger.debug(f"Published {topic.value} to {len(self._subscribers)} subscriber(s)")
        return message

    def publish_server_status(self, status: str = "running") -> BusMessage:
        return self.publish(Topic.SERVER_STATUS, {"status": status, "clients": self.client_count})
