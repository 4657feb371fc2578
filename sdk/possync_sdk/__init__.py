"""
possync SDK - offline-first sync engine for multi-device retail POS.

Every local change on a device becomes an Envelope, is persisted in a durable
outbox, and is delivered to the server in batches with retry and backoff.
Changes made on other devices arrive through the change feed and are merged
into local state by the reconciler.

- Envelope codec and body payloads (EnvelopeCodec, MutationEvent)
- Durable outbox (OutboxStore)
- Batch dispatcher (BatchDispatcher)
- Realtime reconciler (RealtimeReconciler)
- SyncClient facade tying them together

Example:
    >>> from possync_sdk import ClientConfig, InMemoryLocalStore, SyncClient
    >>>
    >>> store = InMemoryLocalStore()
    >>> async with SyncClient(ClientConfig.from_env(), local_store=store) as sync:
    ...     await sync.emit_mutation("item", "create", "I1", {"name": "Soap", "stock": 10})
    ...     await sync.emit_mutation("item", "adjust", "I1", {"delta": -2})

Invariants:
    - opId is the idempotency key; resending an envelope is always safe
    - Per-entity order is preserved from device to server
    - Transient failures never reach the application; they show up as the
      pending count and the stalled signal

Version: 0.1.0
"""

__version__ = "0.1.0"

from .client import SyncClient
from .config import ClientConfig, DispatcherConfig, ReconcilerConfig, TransportConfig
from .dispatcher import BatchDispatcher, FlushReport, compute_backoff
from .effects import EntityState, apply_effect
from .envelope import (
    Envelope,
    EnvelopeCodec,
    MutationChannel,
    MutationEvent,
    RequestPreview,
    decode_envelope,
    derive_entity_id,
    request_preview,
)
from .errors import (
    DecodeError,
    MissingDependencyError,
    PermanentApplicationError,
    StorageError,
    SyncError,
    TransientNetworkError,
    ValidationError,
)
from .feed import ChangeRecord, FeedClient, HttpFeedClient, InMemoryFeedClient
from .local import InMemoryLocalStore, LocalRecord, LocalStore
from .outbox import OutboxEntry, OutboxState, OutboxStore
from .payloads import EntityType, OpKind
from .reconciler import RealtimeReconciler, ReconcilerState
from .results import ApplyResult
from .state import (
    SyncState,
    SyncStatusView,
    get_sync_state,
    init_sync_state,
    reset_sync_state,
)
from .transport import HttpSyncTransport, SyncTransport

__all__ = [
    # Version
    "__version__",
    # Codec
    "Envelope",
    "EnvelopeCodec",
    "MutationEvent",
    "MutationChannel",
    "RequestPreview",
    "decode_envelope",
    "derive_entity_id",
    "request_preview",
    "EntityType",
    "OpKind",
    "ApplyResult",
    # Effects and local state
    "EntityState",
    "apply_effect",
    "LocalStore",
    "LocalRecord",
    "InMemoryLocalStore",
    # Outbox and dispatch
    "OutboxStore",
    "OutboxEntry",
    "OutboxState",
    "BatchDispatcher",
    "FlushReport",
    "compute_backoff",
    "SyncTransport",
    "HttpSyncTransport",
    # Feed and reconciliation
    "ChangeRecord",
    "FeedClient",
    "HttpFeedClient",
    "InMemoryFeedClient",
    "RealtimeReconciler",
    "ReconcilerState",
    # State
    "SyncState",
    "SyncStatusView",
    "init_sync_state",
    "get_sync_state",
    "reset_sync_state",
    # Client and config
    "SyncClient",
    "ClientConfig",
    "TransportConfig",
    "DispatcherConfig",
    "ReconcilerConfig",
    # Errors
    "SyncError",
    "ValidationError",
    "DecodeError",
    "TransientNetworkError",
    "PermanentApplicationError",
    "MissingDependencyError",
    "StorageError",
]
