"""
Apply module for possync - server-side exactly-once application.

This module handles:
- Canonical per-store SQLite store (entities, applied_ops ledger, change_log)
- Idempotent, per-entity ordered application of device envelopes

Invariants:
    - Applying the same opId twice has no additional effect
    - The ledger row and the entity write commit together
    - SQLite uses WAL mode for concurrent reads during writes

How to change safely:
    - Test schema migrations thoroughly before deployment
    - Use transactions for all multi-statement operations
    - Verify idempotency with duplicate envelope injection tests
"""

from .applier import Applier, ApplierError
from .sync_store import (
    AppliedOp,
    LedgerEntry,
    StoredEntity,
    StoreNotFoundError,
    SyncStore,
)

__all__ = [
    "SyncStore",
    "StoreNotFoundError",
    "StoredEntity",
    "AppliedOp",
    "LedgerEntry",
    "Applier",
    "ApplierError",
]
