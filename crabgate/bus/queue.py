"""In-process publish/subscribe bus with bounded, drop-oldest subscriber queues."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator

from loguru import logger

from crabgate.bus.events import Envelope

# Reserved topic carrying agent replies to the channel manager.
OUTBOUND_TOPIC = "outbound"
# Subscribing to this receives every non-reserved (session) topic.
WILDCARD = "*"

_RESERVED_TOPICS = frozenset({OUTBOUND_TOPIC})
_CLOSED = object()


class Subscription:
    """
    A lazy, per-subscriber FIFO sequence of envelopes for one topic.

    Iterate with ``async for envelope in subscription`` or call ``get()``.
    Iteration ends once the subscription is closed.
    """

    def __init__(self, bus: MessageBus, topic: str, capacity: int):
        self.bus = bus
        self.topic = topic
        self.capacity = capacity
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity + 1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Envelopes waiting to be consumed."""
        return self._queue.qsize() - (1 if self._closed else 0)

    def _offer(self, envelope: Envelope) -> bool:
        """Enqueue without blocking; returns False when the oldest had to be dropped."""
        # One slot is kept spare for the close sentinel
        dropped = False
        if self._queue.qsize() >= self.capacity:
            self._queue.get_nowait()
            self.dropped += 1
            dropped = True
        self._queue.put_nowait(envelope)
        return not dropped

    async def get(self) -> Envelope:
        """Wait for the next envelope. Raises StopAsyncIteration once closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the sentinel for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        """Detach from the bus; pending envelopes are still delivered before the end."""
        if self._closed:
            return
        self._closed = True
        self.bus.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[Envelope]:
        return self

    async def __anext__(self) -> Envelope:
        return await self.get()


class MessageBus:
    """
    Async message bus that decouples chat channels from the agent core.

    Channels publish inbound envelopes on their session topic; the agent
    consumes every session via the wildcard subscription and publishes
    replies on the outbound topic for the channel manager to deliver.

    Publishing never blocks: each subscriber has a bounded queue and, when
    it is full, the oldest pending envelope is dropped and counted.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("Bus queue capacity must be at least 1")
        self.capacity = capacity
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._published = 0
        self._dropped = 0
        self._unrouted = 0

    def subscribe(self, topic: str, capacity: int | None = None) -> Subscription:
        """Subscribe to a topic (a session key, OUTBOUND_TOPIC or WILDCARD)."""
        sub = Subscription(self, topic, capacity or self.capacity)
        self._subscribers[topic].append(sub)
        logger.debug("Bus subscription added: {}", topic)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscription. Safe to call twice."""
        subs = self._subscribers.get(subscription.topic)
        if subs and subscription in subs:
            subs.remove(subscription)
            if not subs:
                del self._subscribers[subscription.topic]
        if not subscription.closed:
            subscription.close()

    def publish(self, topic: str, envelope: Envelope) -> None:
        """Fire-and-forget delivery to every subscriber of the topic."""
        self._published += 1
        targets = list(self._subscribers.get(topic, ()))
        if topic not in _RESERVED_TOPICS and topic != WILDCARD:
            targets.extend(self._subscribers.get(WILDCARD, ()))

        if not targets:
            self._unrouted += 1
            logger.debug("No subscriber for topic {}, envelope {} dropped", topic, envelope.id)
            return

        for sub in targets:
            if not sub._offer(envelope):
                self._dropped += 1
                logger.warning(
                    "Bus queue full for topic {} (capacity {}), dropped oldest envelope ({} lost so far)",
                    sub.topic, sub.capacity, sub.dropped,
                )

    async def publish_inbound(self, envelope: Envelope) -> None:
        """Publish a message from a channel to the agent."""
        self.publish(envelope.session_key, envelope)

    async def publish_outbound(self, envelope: Envelope) -> None:
        """Publish a response from the agent to channels."""
        self.publish(OUTBOUND_TOPIC, envelope)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def stats(self) -> dict[str, object]:
        """Delivery counters and subscribers per topic."""
        return {
            "published": self._published,
            "dropped": self._dropped,
            "unrouted": self._unrouted,
            "subscribers": {topic: len(subs) for topic, subs in self._subscribers.items()},
        }

    def close(self) -> None:
        """Close every subscription."""
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
