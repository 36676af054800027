"""
In-process change feed: fans row changes out to per-user subscribers.

The remote backend publishes one ``RemoteChange`` per committed insert,
update or delete; the websocket endpoint and ``SqlRemoteStore``
subscriptions each consume their own queue.
"""

import asyncio
import logging

from secretary.core.models import RemoteChange

logger = logging.getLogger(__name__)


class FeedSubscription:
    """One subscriber's queue of changes for a single user."""

    def __init__(self, feed: "ChangeFeed", user_id: str) -> None:
        self._feed = feed
        self.user_id = user_id
        self._queue: asyncio.Queue[RemoteChange | None] = asyncio.Queue()
        self.closed = False

    def _deliver(self, change: RemoteChange | None) -> None:
        self._queue.put_nowait(change)

    async def get(self) -> RemoteChange | None:
        """Wait for the next change; ``None`` means the subscription was closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed._remove(self)
            self._deliver(None)


class ChangeFeed:
    """Per-user publish/subscribe hub."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[FeedSubscription]] = {}

    def subscribe(self, user_id: str) -> FeedSubscription:
        subscription = FeedSubscription(self, user_id)
        self._subscribers.setdefault(user_id, set()).add(subscription)
        logger.debug("Feed subscriber added for %s", user_id)
        return subscription

    def publish(self, user_id: str, change: RemoteChange) -> int:
        """Deliver *change* to every subscriber of *user_id*. Returns the subscriber count."""
        subscribers = self._subscribers.get(user_id, set())
        for subscription in list(subscribers):
            subscription._deliver(change)
        return len(subscribers)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))

    def close_all(self) -> None:
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                subscription.close()

    def _remove(self, subscription: FeedSubscription) -> None:
        subscribers = self._subscribers.get(subscription.user_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.user_id]
