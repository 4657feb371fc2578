"""
Base protocol and types for the change feed.

Invariants:
    - A Subscription yields records for exactly one store
    - publish() never waits on subscribers
    - Closing a subscription ends its iterator

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from possync_sdk.feed import ChangeRecord


class FeedError(Exception):
    """Base exception for feed operations."""

    pass


class FeedOverflowError(FeedError):
    """Subscriber fell further behind than its buffer allows."""

    pass


@runtime_checkable
class Subscription(Protocol):
    """One live subscriber of a store's changes.

    Iterating yields ChangeRecords in seq order. Iteration raises
    FeedOverflowError if the subscriber was dropped for falling behind.
    """

    store_id: str

    def __aiter__(self) -> AsyncIterator[ChangeRecord]: ...

    @abstractmethod
    def close(self) -> None:
        """Stop receiving records."""
        ...


@runtime_checkable
class ChangeFeed(Protocol):
    """Fan-out of applied changes to live subscribers.

    Example:
        >>> sub = feed.subscribe("A1")
        >>> feed.publish("A1", change)
        >>> async for record in sub:
        ...     print(record.seq)
    """

    @abstractmethod
    def publish(self, store_id: str, record: ChangeRecord) -> int:
        """Deliver a record to the store's subscribers.

        Returns:
            Number of subscribers the record was queued for
        """
        ...

    @abstractmethod
    def subscribe(self, store_id: str) -> Subscription:
        """Register a subscriber for a store."""
        ...

    @abstractmethod
    def subscriber_count(self, store_id: str | None = None) -> int:
        """Live subscribers for one store, or for all stores."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """End every subscription."""
        ...
