from typing import Any, Dict, Optional
import asyncio
import itertools

import structlog

logger = structlog.get_logger(__name__)

_CLOSED = object()


class Subscription:
    """One subscriber's ordered view of published items.

    Iterate it with ``async for``; iteration ends when the subscription or
    the broadcaster is closed.
    """

    def __init__(self, broadcaster: "StateBroadcaster", subscription_id: int, topic: Optional[str]):
        self.subscription_id = subscription_id
        self.topic = topic
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _deliver(self, item: Any) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    def close(self) -> None:
        """Stop receiving items and unblock the iterator"""
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        self._broadcaster.unsubscribe(self)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class StateBroadcaster:
    """Fans published items out to every subscriber of a topic, in order"""

    def __init__(self):
        self.subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, topic: Optional[str] = None) -> Subscription:
        """Register a subscriber. ``topic=None`` receives everything."""

        subscription = Subscription(self, next(self._ids), topic)
        self.subscriptions[subscription.subscription_id] = subscription
        logger.debug("Subscriber added", subscription_id=subscription.subscription_id, topic=topic)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self.subscriptions.pop(subscription.subscription_id, None) is not None:
            logger.debug("Subscriber removed", subscription_id=subscription.subscription_id)
        subscription.close()

    def publish(self, item: Any, topic: Optional[str] = None) -> int:
        """Deliver ``item`` to matching subscribers. Returns the delivery count."""

        delivered = 0
        for subscription in list(self.subscriptions.values()):
            if subscription.topic is None or subscription.topic == topic:
                subscription._deliver(item)
                delivered += 1
        return delivered

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is None:
            return len(self.subscriptions)
        return sum(1 for s in self.subscriptions.values() if s.topic == topic)

    def close(self) -> None:
        """End every subscription"""

        for subscription in list(self.subscriptions.values()):
            subscription.close()
