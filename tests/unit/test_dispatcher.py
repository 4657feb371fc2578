"""
Unit tests for the batch dispatcher.

Tests cover:
- Backoff computation
- Result correlation (ack, retry, permanent failure)
- Transport failures release the batch and flip connectivity
- Pending count and stalled signals
"""

import asyncio
import os
import random

import pytest

from possync_sdk.config import DispatcherConfig
from possync_sdk.dispatcher import BatchDispatcher, compute_backoff
from possync_sdk.errors import TransientNetworkError
from possync_sdk.outbox import OutboxState, OutboxStore
from possync_sdk.results import DEPENDENCY, REJECTED, ApplyResult
from possync_sdk.state import SyncState


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


class ScriptedTransport:
    """Answers each batch with the next scripted reply."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.batches = []

    async def apply_batch(self, envelopes):
        self.batches.append([env.op_id for env in envelopes])
        reply = self.replies.pop(0) if self.replies else None
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(envelopes)
        return [ApplyResult.applied(env.op_id, env.entity_id, 1) for env in envelopes]

    async def probe(self):
        return True

    async def close(self):
        pass


class TestComputeBackoff:
    """Tests for compute_backoff()."""

    def test_first_attempt_within_base(self):
        rng = random.Random(7)
        for _ in range(50):
            delay = compute_backoff(1, 1000, 60_000, rng)
            assert 500 <= delay <= 1000

    def test_doubles_per_attempt(self):
        rng = random.Random(7)
        for _ in range(50):
            delay = compute_backoff(4, 1000, 60_000, rng)
            assert 4000 <= delay <= 8000

    def test_capped(self):
        rng = random.Random(7)
        for attempts in (10, 100, 10_000):
            delay = compute_backoff(attempts, 1000, 60_000, rng)
            assert 30_000 <= delay <= 60_000


class TestBatchDispatcher:
    """Tests for BatchDispatcher.flush_once()."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    async def outbox(self, data_dir, clock):
        store = OutboxStore(os.path.join(data_dir, "outbox.db"), wal_mode=False, clock=clock)
        await store.initialize()
        return store

    @pytest.fixture
    def state(self):
        return SyncState()

    def _dispatcher(self, outbox, transport, state, clock, **overrides):
        config = DispatcherConfig(
            batch_size=overrides.pop("batch_size", 20),
            base_backoff_ms=1000,
            max_backoff_ms=8000,
            stall_threshold_ms=overrides.pop("stall_threshold_ms", 300_000),
        )
        return BatchDispatcher(
            outbox, transport, config, state=state, clock=clock, rng=random.Random(1)
        )

    @pytest.mark.asyncio
    async def test_empty_outbox(self, outbox, state, clock):
        transport = ScriptedTransport()
        dispatcher = self._dispatcher(outbox, transport, state, clock)

        report = await dispatcher.flush_once()

        assert report.reserved == 0
        assert transport.batches == []

    @pytest.mark.asyncio
    async def test_all_acked(self, outbox, state, clock, make_envelope):
        for i in range(3):
            await outbox.enqueue(make_envelope(entity_id=f"I{i}"))
        transport = ScriptedTransport()
        dispatcher = self._dispatcher(outbox, transport, state, clock)

        report = await dispatcher.flush_once()

        assert report.acked == 3
        assert await outbox.count(OutboxState.ACKED) == 3
        assert state.pending_outbox_count.value == 0
        assert state.is_online.value is True
        assert state.last_flush_at.value == clock.now

    @pytest.mark.asyncio
    async def test_batch_size_limits_request(self, outbox, state, clock, make_envelope):
        for i in range(5):
            await outbox.enqueue(make_envelope(entity_id=f"I{i}"))
        transport = ScriptedTransport()
        dispatcher = self._dispatcher(outbox, transport, state, clock, batch_size=2)

        await dispatcher.flush_once()

        assert len(transport.batches[0]) == 2
        assert state.pending_outbox_count.value == 3

    @pytest.mark.asyncio
    async def test_partial_failure_is_classified_per_op(self, outbox, state, clock, make_envelope):
        """Each result only affects its own entry."""
        ok = await outbox.enqueue(make_envelope(entity_id="I1"))
        retry = await outbox.enqueue(make_envelope(entity_id="I2"))
        rejected = await outbox.enqueue(make_envelope(entity_id="I3"))

        def reply(envelopes):
            return [
                ApplyResult.applied(envelopes[0].op_id, "I1", 1),
                ApplyResult(ok=False, op_id=envelopes[1].op_id, retryable=True, error_code=DEPENDENCY),
                ApplyResult(ok=False, op_id=envelopes[2].op_id, retryable=False, error_code=REJECTED,
                            message="already exists"),
            ]

        dispatcher = self._dispatcher(outbox, ScriptedTransport([reply]), state, clock)
        report = await dispatcher.flush_once()

        assert (report.acked, report.retried, report.failed) == (1, 1, 1)
        assert (await outbox.get(ok.op_id)).state == OutboxState.ACKED
        retried = await outbox.get(retry.op_id)
        assert retried.state == OutboxState.PENDING
        assert retried.attempts == 1
        assert clock.now + 500 <= retried.next_retry_at <= clock.now + 1000
        failed = await outbox.get(rejected.op_id)
        assert failed.state == OutboxState.FAILED_PERMANENT
        assert failed.last_error == "already exists"

    @pytest.mark.asyncio
    async def test_blocked_entries_resend_behind_the_deferred_op(
        self, outbox, state, clock, make_envelope
    ):
        """The server holds back later ops on an entity; they are resent in order."""
        first = await outbox.enqueue(make_envelope(entity_id="I1", op="update", body={"name": "A"}))
        second = await outbox.enqueue(make_envelope(entity_id="I1", op="update", body={"name": "B"}))

        def reply(envelopes):
            return [
                ApplyResult(ok=False, op_id=envelopes[0].op_id, retryable=True, error_code=DEPENDENCY),
                ApplyResult.blocked(envelopes[1].op_id, envelopes[0].op_id),
            ]

        transport = ScriptedTransport([reply])
        dispatcher = self._dispatcher(outbox, transport, state, clock)

        report = await dispatcher.flush_once()

        assert report.retried == 2
        assert (await outbox.get(second.op_id)).state == OutboxState.PENDING

        clock.now += 1000
        await dispatcher.flush_once()

        assert transport.batches[1] == [first.op_id, second.op_id]
        assert await outbox.count(OutboxState.ACKED) == 2

    @pytest.mark.asyncio
    async def test_replay_counts_as_ack(self, outbox, state, clock, make_envelope):
        entry = await outbox.enqueue(make_envelope())

        def reply(envelopes):
            return [ApplyResult.replayed(envelopes[0].op_id, "I1", 1)]

        dispatcher = self._dispatcher(outbox, ScriptedTransport([reply]), state, clock)
        report = await dispatcher.flush_once()

        assert report.replayed == 1
        assert (await outbox.get(entry.op_id)).state == OutboxState.ACKED

    @pytest.mark.asyncio
    async def test_transport_error_releases_batch(self, outbox, state, clock, make_envelope):
        """A failed call returns every entry to PENDING with one attempt charged."""
        state.is_online.set(True)
        entry = await outbox.enqueue(make_envelope())
        transport = ScriptedTransport([TransientNetworkError("connection refused")])
        dispatcher = self._dispatcher(outbox, transport, state, clock)

        report = await dispatcher.flush_once()

        stored = await outbox.get(entry.op_id)
        assert report.transport_error == "connection refused"
        assert stored.state == OutboxState.PENDING
        assert stored.attempts == 1
        assert stored.next_retry_at > clock.now
        assert state.is_online.value is False
        assert state.pending_outbox_count.value == 1

    @pytest.mark.asyncio
    async def test_result_count_mismatch_is_transient(self, outbox, state, clock, make_envelope):
        await outbox.enqueue(make_envelope(entity_id="I1"))
        await outbox.enqueue(make_envelope(entity_id="I2"))

        def reply(envelopes):
            return [ApplyResult.applied(envelopes[0].op_id, "I1", 1)]

        dispatcher = self._dispatcher(outbox, ScriptedTransport([reply]), state, clock)
        report = await dispatcher.flush_once()

        assert report.transport_error is not None
        assert await outbox.count(OutboxState.ACKED) == 0
        assert await outbox.pending_count() == 2

    @pytest.mark.asyncio
    async def test_mismatched_op_id_is_transient(self, outbox, state, clock, make_envelope):
        entry = await outbox.enqueue(make_envelope())

        def reply(envelopes):
            return [ApplyResult.applied("someone-else", "I1", 1)]

        dispatcher = self._dispatcher(outbox, ScriptedTransport([reply]), state, clock)
        report = await dispatcher.flush_once()

        assert report.transport_error is not None
        assert (await outbox.get(entry.op_id)).state == OutboxState.PENDING

    @pytest.mark.asyncio
    async def test_stalled_when_backlog_is_old(self, outbox, state, clock, make_envelope):
        await outbox.enqueue(make_envelope())
        transport = ScriptedTransport([TransientNetworkError("down")])
        dispatcher = self._dispatcher(outbox, transport, state, clock, stall_threshold_ms=1000)

        clock.now += 5000
        await dispatcher.flush_once()

        assert state.outbox_stalled.value is True
        assert state.stalled.value is True

    @pytest.mark.asyncio
    async def test_cancelled_send_is_released_without_attempt(
        self, outbox, state, clock, make_envelope
    ):
        entry = await outbox.enqueue(make_envelope())
        started = asyncio.Event()

        class HangingTransport(ScriptedTransport):
            async def apply_batch(self, envelopes):
                started.set()
                await asyncio.sleep(3600)

        dispatcher = self._dispatcher(outbox, HangingTransport(), state, clock)
        task = asyncio.create_task(dispatcher.flush_once())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = await outbox.get(entry.op_id)
        assert stored.state == OutboxState.PENDING
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_worker_flushes_on_request(self, outbox, state, clock, make_envelope):
        """request_flush() wakes the background worker."""
        transport = ScriptedTransport()
        dispatcher = self._dispatcher(outbox, transport, state, clock)
        dispatcher.start()
        try:
            await outbox.enqueue(make_envelope())
            dispatcher.request_flush()
            for _ in range(100):
                if await outbox.count(OutboxState.ACKED) == 1:
                    break
                await asyncio.sleep(0.02)
            assert await outbox.count(OutboxState.ACKED) == 1
        finally:
            await dispatcher.stop()

        assert dispatcher.running is False
