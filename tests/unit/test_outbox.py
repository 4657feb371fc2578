"""
Unit tests for the durable outbox.

Tests cover:
- FIFO enqueue and duplicate opIds
- Batch reservation with per-entity ordering
- State transitions (ack, retry, permanent failure, release)
- Durability across reopen and in-flight recovery
- Maintenance (retry/clear failed, purge acked) and metadata
"""

import os

import pytest

from possync_sdk.envelope import derive_entity_id
from possync_sdk.errors import DecodeError
from possync_sdk.outbox import OutboxState, OutboxStore


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


class TestOutboxStore:
    """Tests for OutboxStore."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def path(self, data_dir):
        return os.path.join(data_dir, "outbox.db")

    @pytest.fixture
    async def outbox(self, path, clock):
        store = OutboxStore(path, wal_mode=False, clock=clock)
        await store.initialize()
        return store

    @pytest.mark.asyncio
    async def test_enqueue_assigns_increasing_seq(self, outbox, make_envelope):
        """Entries are kept in enqueue order."""
        first = await outbox.enqueue(make_envelope(entity_id="I1"))
        second = await outbox.enqueue(make_envelope(entity_id="I2"))

        assert first.state == OutboxState.PENDING
        assert first.attempts == 0
        assert second.seq > first.seq
        assert await outbox.pending_count() == 2

    @pytest.mark.asyncio
    async def test_enqueue_duplicate_op_id_is_noop(self, outbox, make_envelope):
        """Re-enqueueing an opId keeps the original entry."""
        env = make_envelope(op_id="dup")
        first = await outbox.enqueue(env)
        again = await outbox.enqueue(env)

        assert again.seq == first.seq
        assert await outbox.count() == 1

    @pytest.mark.asyncio
    async def test_enqueue_rejects_malformed_envelope(self, outbox, make_envelope):
        """Malformed envelopes never enter the outbox."""
        with pytest.raises(DecodeError):
            await outbox.enqueue(make_envelope(op="adjust", body={"delta": 0}))

        assert await outbox.count() == 0

    @pytest.mark.asyncio
    async def test_reserve_marks_in_flight(self, outbox, make_envelope):
        await outbox.enqueue(make_envelope(entity_id="I1"))
        await outbox.enqueue(make_envelope(entity_id="I2"))

        batch = await outbox.reserve_batch(10)

        assert [e.envelope.entity_id for e in batch] == ["I1", "I2"]
        assert all(e.state == OutboxState.IN_FLIGHT for e in batch)
        assert await outbox.reserve_batch(10) == []

    @pytest.mark.asyncio
    async def test_reserve_respects_max_count(self, outbox, make_envelope):
        for i in range(5):
            await outbox.enqueue(make_envelope(entity_id=f"I{i}"))

        batch = await outbox.reserve_batch(3)
        assert len(batch) == 3

    @pytest.mark.asyncio
    async def test_retry_later_blocks_same_entity(self, outbox, clock, make_envelope):
        """A later op on an entity waits for the earlier op's retry."""
        first = await outbox.enqueue(make_envelope(entity_id="I1", op="create", body={"name": "Soap"}))
        await outbox.enqueue(make_envelope(entity_id="I1", op="adjust", body={"delta": -1}))
        await outbox.enqueue(make_envelope(entity_id="I2", op="create", body={"name": "Salt"}))

        batch = await outbox.reserve_batch(1)
        assert batch[0].op_id == first.op_id
        await outbox.mark_retry(first.op_id, "dependency", next_retry_at=clock.now + 5000)

        batch = await outbox.reserve_batch(10)
        assert [e.envelope.entity_id for e in batch] == ["I2"]

        clock.now += 5000
        batch = await outbox.reserve_batch(10)
        assert [e.envelope.op for e in batch] == ["create", "adjust"]
        assert batch[0].op_id == first.op_id
        assert batch[0].attempts == 1

    @pytest.mark.asyncio
    async def test_in_flight_blocks_same_entity(self, outbox, make_envelope):
        """Two ops on one entity are never in flight together."""
        await outbox.enqueue(make_envelope(entity_id="I1", op="create", body={"name": "Soap"}))
        await outbox.enqueue(make_envelope(entity_id="I1", op="adjust", body={"delta": -1}))

        first = await outbox.reserve_batch(1)
        second = await outbox.reserve_batch(10)

        assert len(first) == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_derived_id_create_blocks_ops_on_that_id(self, outbox, clock, make_envelope):
        """A create without an id still holds back later ops on its derived id."""
        create = await outbox.enqueue(make_envelope(entity_id=None, op_id="C1"))
        delete = await outbox.enqueue(
            make_envelope(entity_id=derive_entity_id("C1"), op="delete")
        )

        await outbox.reserve_batch(1)
        await outbox.mark_retry(create.op_id, "dependency", next_retry_at=clock.now + 5000)

        assert await outbox.reserve_batch(10) == []
        assert await outbox.pending_for_entity("item", derive_entity_id("C1")) != []

        clock.now += 5000
        batch = await outbox.reserve_batch(10)
        assert [e.op_id for e in batch] == [create.op_id, delete.op_id]
        assert batch[0].envelope.entity_id is None

    @pytest.mark.asyncio
    async def test_mark_acked_records_version(self, outbox, make_envelope):
        entry = await outbox.enqueue(make_envelope())
        await outbox.reserve_batch(1)

        changed = await outbox.mark_acked([entry.op_id], {entry.op_id: 4})
        again = await outbox.mark_acked([entry.op_id])

        stored = await outbox.get(entry.op_id)
        assert changed == 1
        assert again == 0
        assert stored.state == OutboxState.ACKED
        assert stored.server_version == 4
        assert await outbox.pending_count() == 0

    @pytest.mark.asyncio
    async def test_mark_failed_counts_attempt(self, outbox, make_envelope):
        entry = await outbox.enqueue(make_envelope())
        await outbox.reserve_batch(1)

        assert await outbox.mark_failed(entry.op_id, "rejected") is True

        stored = await outbox.get(entry.op_id)
        assert stored.state == OutboxState.FAILED_PERMANENT
        assert stored.attempts == 1
        assert stored.last_error == "rejected"

    @pytest.mark.asyncio
    async def test_failed_entry_does_not_block_entity(self, outbox, make_envelope):
        """A permanently failed op leaves later ops on the entity sendable."""
        first = await outbox.enqueue(make_envelope(entity_id="I1"))
        second = await outbox.enqueue(make_envelope(entity_id="I1", op="adjust", body={"delta": 1}))
        await outbox.reserve_batch(1)
        await outbox.mark_failed(first.op_id, "rejected")

        batch = await outbox.reserve_batch(10)
        assert [e.op_id for e in batch] == [second.op_id]

    @pytest.mark.asyncio
    async def test_release_without_attempt(self, outbox, make_envelope):
        entry = await outbox.enqueue(make_envelope())
        await outbox.reserve_batch(1)

        released = await outbox.release([entry.op_id], reason="cancelled", count_attempt=False)

        stored = await outbox.get(entry.op_id)
        assert released == 1
        assert stored.state == OutboxState.PENDING
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_mark_in_flight_only_moves_pending(self, outbox, make_envelope):
        entry = await outbox.enqueue(make_envelope())

        assert await outbox.mark_in_flight([entry.op_id, "unknown"]) == [entry.op_id]
        assert await outbox.mark_in_flight([entry.op_id]) == []

    @pytest.mark.asyncio
    async def test_survives_reopen_and_recovers_in_flight(self, path, clock, make_envelope):
        """Entries persist across restarts; IN_FLIGHT reverts to PENDING."""
        outbox = OutboxStore(path, wal_mode=False, clock=clock)
        a = await outbox.enqueue(make_envelope(entity_id="I1"))
        b = await outbox.enqueue(make_envelope(entity_id="I2"))
        await outbox.reserve_batch(1)

        reopened = OutboxStore(path, wal_mode=False, clock=clock)
        assert await reopened.recover_in_flight() == 1

        entries = await reopened.list_entries()
        assert [e.op_id for e in entries] == [a.op_id, b.op_id]
        assert all(e.state == OutboxState.PENDING for e in entries)
        assert entries[0].envelope == a.envelope

    @pytest.mark.asyncio
    async def test_retry_and_clear_failed(self, outbox, make_envelope):
        a = await outbox.enqueue(make_envelope(entity_id="I1"))
        b = await outbox.enqueue(make_envelope(entity_id="I2"))
        await outbox.mark_failed(a.op_id, "nope")
        await outbox.mark_failed(b.op_id, "nope")

        assert await outbox.retry_failed(a.op_id) == 1
        assert (await outbox.get(a.op_id)).state == OutboxState.PENDING
        assert await outbox.clear_failed() == 1
        assert await outbox.get(b.op_id) is None

    @pytest.mark.asyncio
    async def test_purge_acked_by_age(self, outbox, clock, make_envelope):
        entry = await outbox.enqueue(make_envelope())
        await outbox.mark_acked([entry.op_id])

        assert await outbox.purge_acked(older_than_ms=1000) == 0
        clock.now += 1000
        assert await outbox.purge_acked(older_than_ms=1000) == 1

    @pytest.mark.asyncio
    async def test_backlog_age_and_next_due(self, outbox, clock, make_envelope):
        assert await outbox.oldest_pending_age_ms() is None

        entry = await outbox.enqueue(make_envelope())
        await outbox.reserve_batch(1)
        await outbox.mark_retry(entry.op_id, "later", next_retry_at=clock.now + 700)
        clock.now += 200

        assert await outbox.oldest_pending_age_ms() == 200
        assert await outbox.next_due_at() == clock.now + 500

    @pytest.mark.asyncio
    async def test_entity_queries(self, outbox, make_envelope):
        a = await outbox.enqueue(make_envelope(entity_id="I1"))
        await outbox.enqueue(make_envelope(entity_id="I2"))
        await outbox.mark_acked([a.op_id])

        assert await outbox.unsynced_entity_ids("item") == ["I2"]
        assert await outbox.pending_for_entity("item", "I1") == []
        assert len(await outbox.entries_for_entity("item", "I1")) == 1

    @pytest.mark.asyncio
    async def test_device_id_is_stable(self, path, outbox):
        device_id = await outbox.get_or_create_device_id()

        reopened = OutboxStore(path, wal_mode=False)
        assert await reopened.get_or_create_device_id() == device_id

    @pytest.mark.asyncio
    async def test_meta_round_trip(self, outbox):
        assert await outbox.get_meta("feed_watermark", "0") == "0"
        await outbox.set_meta("feed_watermark", "12")
        assert await outbox.get_meta("feed_watermark") == "12"
