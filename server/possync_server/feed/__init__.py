"""
Change feed for possync - pushes applied changes to connected devices.

Every fresh application produces a ChangeRecord. The feed fans records out
to live subscribers of the same store; devices that were offline catch up
from the change_log table instead.

Invariants:
    - Records are published in seq order per store
    - A slow subscriber never blocks publishers; it is dropped and catches up
    - Replays publish nothing

How to change safely:
    - New backends must implement the ChangeFeed protocol
    - Keep ChangeRecord.to_dict() as the wire format
"""

from .base import ChangeFeed, FeedError, FeedOverflowError, Subscription
from .memory import InMemoryChangeFeed

__all__ = [
    "ChangeFeed",
    "Subscription",
    "FeedError",
    "FeedOverflowError",
    "InMemoryChangeFeed",
]
