"""
Batch dispatcher: drains the outbox to the server.

The dispatcher runs as one asyncio task per device. Each pass reserves a
batch, sends it, and records one outcome per entry:

    ok                  -> ACKED (server version recorded)
    failed, retryable   -> PENDING, attempts + 1, next_retry_at = now + backoff
    failed, permanent   -> FAILED_PERMANENT

When the call fails as a whole (offline, timeout, malformed response) every
reserved entry goes back to PENDING with one attempt charged, and the worker
backs off before the next pass.

Invariants:
    - Entries are only taken through OutboxStore.reserve_batch()
    - Results are matched to entries by position and checked by opId
    - Cancellation during a send releases the batch without charging an
      attempt and re-raises CancelledError
    - Retryable failures are retried indefinitely with capped backoff; a long
      backlog shows up as the stalled signal, never as an exception

How to change safely:
    - Keep compute_backoff() monotonic up to the cap
    - Test with a fake transport and an injected clock and rng
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass

from .config import DispatcherConfig
from .envelope import now_millis
from .errors import TransientNetworkError
from .outbox import OutboxEntry, OutboxStore
from .results import ApplyResult
from .state import SyncState, init_sync_state
from .transport import SyncTransport

logger = logging.getLogger(__name__)


def compute_backoff(
    attempts: int,
    base_ms: int,
    max_ms: int,
    rng: random.Random | None = None,
) -> int:
    """Delay before the next attempt, with equal jitter.

    The ceiling doubles per attempt from base_ms and is capped at max_ms.
    Half of it is fixed, the other half uniformly random.

    Args:
        attempts: Attempts made so far (>= 1)
        base_ms: Ceiling for the first retry
        max_ms: Ceiling cap
        rng: Random source

    Returns:
        Delay in milliseconds, within [ceiling / 2, ceiling]
    """
    rng = rng or random
    exponent = min(max(attempts - 1, 0), 32)
    ceiling = min(max_ms, base_ms * (2**exponent))
    half = ceiling / 2
    return int(half + rng.uniform(0, half))


@dataclass
class FlushReport:
    """Outcome of one dispatcher pass."""

    reserved: int = 0
    acked: int = 0
    replayed: int = 0
    retried: int = 0
    failed: int = 0
    transport_error: str | None = None


class BatchDispatcher:
    """Sends outbox entries in batches and records their outcomes.

    Example:
        >>> dispatcher = BatchDispatcher(outbox, transport, DispatcherConfig())
        >>> report = await dispatcher.flush_once()
        >>> dispatcher.start()
        >>> dispatcher.request_flush()
        >>> await dispatcher.stop()
    """

    def __init__(
        self,
        outbox: OutboxStore,
        transport: SyncTransport,
        config: DispatcherConfig | None = None,
        state: SyncState | None = None,
        clock: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.outbox = outbox
        self.transport = transport
        self.config = config or DispatcherConfig()
        self.state = state if state is not None else init_sync_state()
        self._clock = clock or now_millis
        self._rng = rng or random.Random()

        self._task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._consecutive_failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _backoff(self, attempts: int) -> int:
        return compute_backoff(
            attempts, self.config.base_backoff_ms, self.config.max_backoff_ms, self._rng
        )

    async def flush_once(self) -> FlushReport:
        """Run one reserve, send, record pass."""
        report = FlushReport()
        entries = await self.outbox.reserve_batch(self.config.batch_size, now=self._clock())
        report.reserved = len(entries)
        if not entries:
            await self._publish()
            return report

        op_ids = [entry.op_id for entry in entries]
        try:
            results = await self.transport.apply_batch([entry.envelope for entry in entries])
            self._check_correlation(entries, results)
        except asyncio.CancelledError:
            await self.outbox.release(op_ids, reason="cancelled", count_attempt=False)
            raise
        except TransientNetworkError as e:
            await self._release_after_failure(entries, e.message)
            report.transport_error = e.message
            self.state.is_online.set(False)
            await self._publish()
            return report
        except Exception as e:
            await self._release_after_failure(entries, str(e))
            raise

        self._consecutive_failures = 0
        self.state.is_online.set(True)
        await self._record_results(entries, results, report)
        self.state.last_flush_at.set(self._clock())
        await self._publish()

        logger.info(
            "Flushed outbox batch",
            extra={
                "reserved": report.reserved,
                "acked": report.acked,
                "replayed": report.replayed,
                "retried": report.retried,
                "failed": report.failed,
            },
        )
        return report

    def _check_correlation(self, entries: list[OutboxEntry], results: list[ApplyResult]) -> None:
        if len(results) != len(entries):
            raise TransientNetworkError(
                f"Got {len(results)} results for {len(entries)} envelopes"
            )
        for entry, result in zip(entries, results):
            if result.op_id is not None and result.op_id != entry.op_id:
                raise TransientNetworkError(
                    f"Result opId={result.op_id} does not match envelope opId={entry.op_id}"
                )

    async def _release_after_failure(self, entries: list[OutboxEntry], reason: str) -> None:
        self._consecutive_failures += 1
        attempts = max(entry.attempts for entry in entries) + 1
        retry_at = self._clock() + self._backoff(attempts)
        released = await self.outbox.release(
            [entry.op_id for entry in entries], reason=reason, next_retry_at=retry_at
        )
        logger.warning(
            "Batch send failed, entries released",
            extra={"released": released, "reason": reason, "retry_at": retry_at},
        )

    async def _record_results(
        self,
        entries: list[OutboxEntry],
        results: list[ApplyResult],
        report: FlushReport,
    ) -> None:
        acked: list[str] = []
        versions: dict[str, int] = {}
        now = self._clock()

        for entry, result in zip(entries, results):
            if result.ok:
                acked.append(entry.op_id)
                if result.version is not None:
                    versions[entry.op_id] = result.version
                if result.replay:
                    report.replayed += 1
                else:
                    report.acked += 1
            elif result.retryable:
                reason = result.message or result.error_code or "retryable failure"
                await self.outbox.mark_retry(
                    entry.op_id, reason, now + self._backoff(entry.attempts + 1)
                )
                report.retried += 1
            else:
                reason = result.message or result.error_code or "rejected"
                await self.outbox.mark_failed(entry.op_id, reason)
                report.failed += 1

        if acked:
            await self.outbox.mark_acked(acked, versions)

    async def _publish(self) -> None:
        pending = await self.outbox.pending_count()
        age = await self.outbox.oldest_pending_age_ms(now=self._clock())
        self.state.pending_outbox_count.set(pending)
        self.state.outbox_stalled.set(age is not None and age > self.config.stall_threshold_ms)

    # Worker

    def start(self) -> None:
        """Start the background worker on the running loop."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        # First pass drains any backlog left by a previous process
        self._wake.set()
        self._unsubscribe = self.state.is_online.subscribe(self._on_connectivity)
        self._task = asyncio.create_task(self._run(), name="possync-dispatcher")
        logger.info("Dispatcher started", extra={"batch_size": self.config.batch_size})

    def request_flush(self) -> None:
        """Ask the worker to run a pass as soon as possible."""
        if self._loop is not None and self._wake is not None:
            self._loop.call_soon_threadsafe(self._wake.set)

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.request_flush()

    async def stop(self) -> None:
        """Stop the worker. A send in progress is cancelled and released."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Dispatcher stopped")

    async def _wait(self, timeout_ms: float) -> None:
        assert self._wake is not None
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=max(timeout_ms, 0) / 1000.0)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _run(self) -> None:
        while True:
            if not self.state.is_online.value and self._consecutive_failures == 0:
                # Offline: wait for the online transition or an explicit request
                await self._wait(self.config.offline_poll_ms)

            try:
                report = await self._drain()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Dispatcher pass failed")
                self._consecutive_failures += 1
                report = None

            if report is None or report.transport_error is not None:
                await self._wait(self._backoff(max(self._consecutive_failures, 1)))
                continue

            await self._wait(await self._idle_timeout())

    async def _drain(self) -> FlushReport:
        """Flush while full batches keep coming."""
        while True:
            report = await self.flush_once()
            if report.transport_error is not None or report.reserved < self.config.batch_size:
                return report

    async def _idle_timeout(self) -> float:
        timeout = float(self.config.idle_interval_ms)
        now = self._clock()
        due = await self.outbox.next_due_at(now=now)
        if due is not None:
            timeout = min(timeout, max(due - now, 0))
        return timeout
