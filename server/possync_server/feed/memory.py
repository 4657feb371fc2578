"""
In-process change feed.

The server applies every operation in one process, so the feed is a set of
bounded asyncio queues keyed by store. It is both the production feed and the
one tests use.

Invariants:
    - All data is lost on process exit (devices recover from change_log)
    - Publishing is synchronous and never blocks on a subscriber
    - A full subscriber queue drops that subscriber with FeedOverflowError

How to change safely:
    - Keep interface compatible with the ChangeFeed protocol
    - Publish from the event loop thread only
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any

from possync_sdk.feed import ChangeRecord

from .base import FeedOverflowError

logger = logging.getLogger(__name__)

_CLOSED = object()


class QueueSubscription:
    """Subscription backed by a bounded asyncio.Queue."""

    def __init__(self, feed: InMemoryChangeFeed, store_id: str, maxsize: int) -> None:
        self.store_id = store_id
        self._feed = feed
        # One slot is reserved for the close/overflow marker
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, record: ChangeRecord) -> bool:
        if self._closed:
            return False
        if self._queue.qsize() >= self._maxsize:
            self._terminate(FeedOverflowError(f"Subscriber for store {self.store_id} overflowed"))
            return False
        self._queue.put_nowait(record)
        return True

    def _terminate(self, marker: Any) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._remove(self)
        self._queue.put_nowait(marker)

    def close(self) -> None:
        self._terminate(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[ChangeRecord]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            if isinstance(item, Exception):
                raise item
            self.delivered += 1
            yield item


class InMemoryChangeFeed:
    """Per-store broadcast of change records.

    Attributes:
        queue_size: Buffer per subscriber

    Example:
        >>> feed = InMemoryChangeFeed(queue_size=100)
        >>> sub = feed.subscribe("A1")
        >>> feed.publish("A1", change)
        1
    """

    def __init__(self, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, list[QueueSubscription]] = defaultdict(list)
        self._published = 0
        self._dropped = 0

    def publish(self, store_id: str, record: ChangeRecord) -> int:
        delivered = 0
        for sub in list(self._subscribers.get(store_id, ())):
            if sub._offer(record):
                delivered += 1
            else:
                self._dropped += 1
                logger.warning(
                    "Dropped slow feed subscriber",
                    extra={"store_id": store_id, "seq": record.seq},
                )
        self._published += 1
        return delivered

    def subscribe(self, store_id: str) -> QueueSubscription:
        sub = QueueSubscription(self, store_id, self.queue_size)
        self._subscribers[store_id].append(sub)
        logger.debug("Feed subscriber added", extra={"store_id": store_id})
        return sub

    def _remove(self, sub: QueueSubscription) -> None:
        subs = self._subscribers.get(sub.store_id)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscribers[sub.store_id]

    def subscriber_count(self, store_id: str | None = None) -> int:
        if store_id is not None:
            return len(self._subscribers.get(store_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
        self._subscribers.clear()

    @property
    def stats(self) -> dict[str, int]:
        return {
            "subscribers": self.subscriber_count(),
            "published": self._published,
            "dropped": self._dropped,
        }
