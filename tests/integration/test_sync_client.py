"""
Integration tests for SyncClient devices talking to an in-process server.

Two devices share one Applier, SyncStore and change feed through loopback
adapters, so the whole path (emit -> outbox -> dispatcher -> apply engine ->
feed -> reconciler) runs without sockets.

Tests cover:
- Convergence of concurrent stock adjustments from two devices
- Outbox durability across a client restart
- Mutation channel submission
- Local rollback when the outbox cannot persist a mutation
"""

import asyncio
import os
from contextlib import asynccontextmanager

import pytest

from possync_sdk.client import SyncClient
from possync_sdk.config import ClientConfig, DispatcherConfig, ReconcilerConfig
from possync_sdk.envelope import MutationEvent
from possync_sdk.errors import StorageError, TransientNetworkError, ValidationError
from possync_sdk.outbox import OutboxStore
from possync_sdk.state import SyncState
from possync_server.apply import Applier, SyncStore
from possync_server.feed import InMemoryChangeFeed


class LoopbackTransport:
    """Sends batches straight to an Applier."""

    def __init__(self, applier, store_id):
        self.applier = applier
        self.store_id = store_id
        self.online = True

    async def apply_batch(self, envelopes):
        if not self.online:
            raise TransientNetworkError("Server unreachable")
        return await self.applier.apply_batch(self.store_id, list(envelopes))

    async def probe(self):
        return self.online

    async def close(self):
        pass


class LoopbackFeed:
    """Reads the server's change log and live feed directly."""

    def __init__(self, store, feed, store_id):
        self.store = store
        self.feed = feed
        self.store_id = store_id

    async def fetch_since(self, since, limit):
        return await self.store.fetch_changes(self.store_id, since, limit)

    @asynccontextmanager
    async def subscribe(self):
        subscription = self.feed.subscribe(self.store_id)
        try:
            yield subscription.__aiter__()
        finally:
            subscription.close()

    async def close(self):
        pass


async def _eventually(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await predicate():
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestSyncClientIntegration:
    """End-to-end tests for SyncClient."""

    @pytest.fixture
    def server_store(self, data_dir):
        return SyncStore(os.path.join(data_dir, "server"), wal_mode=False)

    @pytest.fixture
    def server_feed(self):
        return InMemoryChangeFeed(queue_size=100)

    @pytest.fixture
    def applier(self, server_store, server_feed):
        return Applier(server_store, server_feed)

    @pytest.fixture
    def make_client(self, data_dir, applier, server_store, server_feed):
        def _make(name, transport=None, realtime=True):
            path = os.path.join(data_dir, f"{name}.db")
            config = ClientConfig(
                outbox_path=path,
                dispatcher=DispatcherConfig(base_backoff_ms=10, max_backoff_ms=50),
                reconciler=ReconcilerConfig(base_backoff_ms=10, max_backoff_ms=50),
            )
            return SyncClient(
                config,
                outbox=OutboxStore(path, wal_mode=False),
                transport=transport or LoopbackTransport(applier, "A1"),
                feed=LoopbackFeed(server_store, server_feed, "A1"),
                state=SyncState(),
                enable_realtime=realtime,
                enable_connectivity=False,
            )

        return _make

    @pytest.mark.asyncio
    async def test_two_devices_converge(self, make_client, server_store):
        """Concurrent sales on two devices end with the same stock everywhere."""
        till = make_client("till")
        tablet = make_client("tablet")
        await till.start()
        await tablet.start()
        try:
            assert till.device_id != tablet.device_id

            await till.emit_mutation("item", "create", "I1", {"name": "Soap", "stock": 10})

            async def tablet_has_item():
                record = await tablet.local_store.get("item", "I1")
                return record is not None and record.data["stock"] == 10

            await _eventually(tablet_has_item)

            await till.emit_mutation("item", "adjust", "I1", {"delta": -2})
            await tablet.emit_mutation("item", "adjust", "I1", {"delta": -3})

            async def converged():
                stocks = []
                for client in (till, tablet):
                    if await client.outbox.pending_count():
                        return False
                    record = await client.local_store.get("item", "I1")
                    stocks.append(record.data["stock"])
                server = await server_store.get_entity("A1", "item", "I1")
                return stocks == [5, 5] and server.data["stock"] == 5

            await _eventually(converged)

            server = await server_store.get_entity("A1", "item", "I1")
            assert server.version == 3
        finally:
            await till.stop()
            await tablet.stop()

    @pytest.mark.asyncio
    async def test_outbox_survives_restart(self, make_client, applier, server_store):
        """Mutations made offline are delivered by the next process."""
        offline = LoopbackTransport(applier, "A1")
        offline.online = False

        first = make_client("till", transport=offline, realtime=False)
        await first.start()
        envelope = await first.emit_mutation("item", "create", "I1", {"name": "Soap"})
        device_id = first.device_id
        await first.stop()

        assert await server_store.get_entity("A1", "item", "I1") is None

        second = make_client("till", realtime=False)
        await second.start()
        try:
            assert second.device_id == device_id

            async def delivered():
                return await server_store.get_ledger_entry("A1", envelope.op_id) is not None

            await _eventually(delivered)
            entry = await server_store.get_ledger_entry("A1", envelope.op_id)
            assert entry.device_id == device_id
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_invalid_mutation_is_not_enqueued(self, make_client):
        client = make_client("till", realtime=False)
        await client.start()
        try:
            with pytest.raises(ValidationError):
                await client.emit_mutation("item", "adjust", "I1", {"delta": 0})

            assert await client.outbox.count() == 0
        finally:
            await client.stop()

    @pytest.mark.asyncio
    async def test_channel_submissions_are_drained_on_stop(self, make_client):
        client = make_client("till", realtime=False)
        await client.start()
        await client.submit(MutationEvent("item", "create", "I1", {"name": "Soap"}))
        await client.submit(MutationEvent("item", "adjust", "I1", {"delta": 0}))
        await client.stop()

        entries = await client.outbox.list_entries()
        assert [e.envelope.op for e in entries] == ["create"]

    @pytest.mark.asyncio
    async def test_outbox_failure_rolls_back_local_change(self, make_client, monkeypatch):
        """A mutation the outbox cannot persist leaves local state untouched."""
        client = make_client("till", realtime=False)
        await client.start()
        try:
            await client.emit_mutation("item", "create", "I1", {"name": "Soap", "stock": 10})

            async def disk_full(envelope):
                raise StorageError("Outbox storage failure: disk full")

            monkeypatch.setattr(client.outbox, "enqueue", disk_full)

            with pytest.raises(StorageError):
                await client.emit_mutation("item", "adjust", "I1", {"delta": -2})
            with pytest.raises(StorageError):
                await client.emit_mutation("item", "create", "I2", {"name": "Salt"})

            assert (await client.local_store.get("item", "I1")).data["stock"] == 10
            assert await client.local_store.get("item", "I2") is None
        finally:
            await client.stop()
