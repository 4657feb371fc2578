"""
SyncClient: the device-side facade the application talks to.

The application reports every local change through emit_mutation() (or by
submitting MutationEvents to the mutation channel). The client validates it,
applies it to the local store, persists it in the outbox and nudges the
dispatcher. The reconciler keeps the local store converged with changes made
on other devices.

Example:
    >>> async with SyncClient(ClientConfig.from_env(), local_store=store) as sync:
    ...     await sync.emit_mutation("item", "adjust", "I1", {"delta": -2})
    ...     print(sync.status.pending_outbox_count)

Invariants:
    - A mutation is in the outbox before emit_mutation() returns
    - A mutation that fails validation or local application is not enqueued
    - A mutation the outbox fails to persist is rolled back in the local store
    - start() re-validates entries left IN_FLIGHT by a previous process
    - stop() cancels background tasks, releases in-flight entries and closes
      network resources
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import ClientConfig
from .connectivity import ConnectivityMonitor
from .dispatcher import BatchDispatcher, FlushReport
from .envelope import (
    Envelope,
    EnvelopeCodec,
    MutationChannel,
    MutationEvent,
)
from .errors import SyncError
from .feed import FeedClient, HttpFeedClient
from .local import InMemoryLocalStore, LocalStore
from .outbox import OutboxStore
from .payloads import EntityType, OpKind
from .reconciler import RealtimeReconciler
from .state import SyncState, SyncStatusView, init_sync_state
from .transport import HttpSyncTransport, SyncTransport

logger = logging.getLogger(__name__)


class SyncClient:
    """Device sync engine.

    Collaborators are built from the config unless injected; tests inject
    fakes for transport and feed.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        local_store: LocalStore | None = None,
        outbox: OutboxStore | None = None,
        transport: SyncTransport | None = None,
        feed: FeedClient | None = None,
        state: SyncState | None = None,
        enable_realtime: bool = True,
        enable_connectivity: bool = True,
    ) -> None:
        self.config = config or ClientConfig()
        self.local_store: LocalStore = local_store or InMemoryLocalStore()
        self.outbox = outbox or OutboxStore(self.config.outbox_path)
        self.state = state if state is not None else init_sync_state()
        self.enable_realtime = enable_realtime
        self.enable_connectivity = enable_connectivity

        self._transport = transport
        self._feed = feed
        self._owns_transport = transport is None
        self._owns_feed = feed is None

        self.device_id: str | None = None
        self.codec: EnvelopeCodec | None = None
        self.dispatcher: BatchDispatcher | None = None
        self.reconciler: RealtimeReconciler | None = None
        self.connectivity: ConnectivityMonitor | None = None
        self.channel = MutationChannel()
        self._consumer: asyncio.Task[None] | None = None
        self._started = False

    @property
    def status(self) -> SyncStatusView:
        return self.state.view()

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Open the outbox and start background tasks."""
        if self._started:
            return

        await self.outbox.initialize()
        await self.outbox.recover_in_flight()
        self.device_id = await self.outbox.get_or_create_device_id()
        self.codec = EnvelopeCodec(self.device_id)

        if self._transport is None:
            self._transport = HttpSyncTransport(self.config.transport, self.device_id)
        self.dispatcher = BatchDispatcher(
            self.outbox, self._transport, self.config.dispatcher, state=self.state
        )

        if self.enable_realtime:
            if self._feed is None:
                self._feed = HttpFeedClient(
                    self.config.transport, heartbeat_s=self.config.reconciler.heartbeat_s
                )
            self.reconciler = RealtimeReconciler(
                self._feed,
                self.local_store,
                self.outbox,
                self.device_id,
                self.config.reconciler,
                state=self.state,
            )
            self.reconciler.start()

        if self.enable_connectivity:
            self.connectivity = ConnectivityMonitor(
                self._transport, self.config.connectivity_probe_ms, state=self.state
            )
            self.connectivity.start()

        self.dispatcher.start()
        self.channel = MutationChannel()
        self._consumer = asyncio.create_task(self._consume(), name="possync-mutations")
        self._started = True

        self.state.pending_outbox_count.set(await self.outbox.pending_count())
        logger.info("Sync client started", extra={"device_id": self.device_id})

    async def stop(self) -> None:
        """Stop background tasks and release resources."""
        if not self._started:
            return

        # Drain queued events before tearing down
        self.channel.close()
        if self._consumer is not None:
            await self._consumer
            self._consumer = None

        if self.connectivity is not None:
            await self.connectivity.stop()
        if self.reconciler is not None:
            await self.reconciler.stop()
        if self.dispatcher is not None:
            await self.dispatcher.stop()

        await self.outbox.recover_in_flight()
        await self.outbox.purge_acked(older_than_ms=self.config.acked_retention_ms)

        if self._owns_transport and self._transport is not None:
            await self._transport.close()
        if self._owns_feed and self._feed is not None:
            await self._feed.close()

        self._started = False
        logger.info("Sync client stopped", extra={"device_id": self.device_id})

    async def __aenter__(self) -> SyncClient:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    def _require_started(self) -> EnvelopeCodec:
        if self.codec is None:
            raise RuntimeError("SyncClient is not started")
        return self.codec

    async def emit_mutation(
        self,
        entity_type: EntityType | str,
        op: OpKind | str,
        entity_id: str | None = None,
        body: dict[str, Any] | None = None,
    ) -> Envelope:
        """Record a local change and schedule it for sync.

        Returns:
            The enqueued envelope

        Raises:
            ValidationError: If the body does not match its variant
            MissingDependencyError: If the local store lacks the target
            PermanentApplicationError: If the op conflicts with local state
            StorageError: If the outbox could not persist it
        """
        codec = self._require_started()
        envelope = codec.encode(MutationEvent(entity_type, op, entity_id, body or {}))

        local_id = envelope.entity_key[1]
        previous = await self.local_store.get(envelope.entity_type, local_id)
        await self.local_store.apply_locally(
            envelope.entity_type, envelope.op, local_id, envelope.body
        )
        try:
            await self.outbox.enqueue(envelope)
        except SyncError:
            # Local state must never hold a change the outbox does not
            await self.local_store.restore(envelope.entity_type, local_id, previous)
            logger.error(
                "Outbox rejected mutation, local change rolled back",
                extra={"op_id": envelope.op_id, "entity_type": envelope.entity_type},
            )
            raise

        self.state.pending_outbox_count.set(await self.outbox.pending_count())
        if self.dispatcher is not None:
            self.dispatcher.request_flush()
        return envelope

    async def submit(self, event: MutationEvent) -> None:
        """Queue a mutation event for the channel consumer."""
        await self.channel.submit(event)

    async def _consume(self) -> None:
        async for event in self.channel:
            try:
                await self.emit_mutation(event.entity_type, event.op, event.entity_id, event.body)
            except SyncError as e:
                logger.warning(
                    "Dropped invalid mutation event",
                    extra={
                        "entity_type": str(event.entity_type),
                        "op": str(event.op),
                        "error": e.message,
                    },
                )

    async def flush(self) -> FlushReport:
        """Run one dispatcher pass now."""
        self._require_started()
        assert self.dispatcher is not None
        return await self.dispatcher.flush_once()
