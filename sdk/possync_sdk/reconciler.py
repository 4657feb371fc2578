"""
Realtime reconciler: merges server-side changes into local state.

The reconciler runs as one asyncio task per device. It subscribes to the
change feed, catches up from its durable watermark, then incorporates live
changes as they arrive. On any connection failure it backs off and repeats
the same sequence.

State machine:

    DISCONNECTED -> CONNECTING -> LIVE
                        ^          |  (feed error)
                        |          v
                        +---- RECONNECTING

    stop() -> DISCONNECTED

Incorporating a change is state-based. The server sends full entity state
and a version; the local copy is replaced when the incoming version is newer,
and this device's own unconfirmed operations for the entity are re-applied
on top (rebase). Applying the same change twice yields the same local state.

Invariants:
    - Changes with seq <= watermark are skipped
    - A change this device originated (self-echo) leaves local state alone
    - A change with version <= local version leaves local state alone
    - The reconciler never enqueues to the outbox
    - The watermark only advances after a change is fully incorporated, and
      never past a seq that was not seen (a gap is read from the change log)
    - Feed errors are logged and retried, never raised to the application

How to change safely:
    - Keep the watermark in the outbox meta table so it survives restarts
    - Test with InMemoryFeedClient and InMemoryLocalStore
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from enum import Enum

from .config import ReconcilerConfig
from .dispatcher import compute_backoff
from .envelope import now_millis
from .errors import SyncError
from .feed import ChangeRecord, FeedClient
from .local import LocalStore
from .outbox import OutboxEntry, OutboxState, OutboxStore
from .state import SyncState, init_sync_state

logger = logging.getLogger(__name__)

WATERMARK_KEY = "feed_watermark"


class ReconcilerState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    LIVE = "LIVE"
    RECONNECTING = "RECONNECTING"


class RealtimeReconciler:
    """Keeps local state converged with server state.

    Example:
        >>> reconciler = RealtimeReconciler(feed, local_store, outbox, "D1")
        >>> reconciler.start()
        >>> ...
        >>> await reconciler.stop()
    """

    def __init__(
        self,
        feed: FeedClient,
        local_store: LocalStore,
        outbox: OutboxStore,
        device_id: str,
        config: ReconcilerConfig | None = None,
        state: SyncState | None = None,
        clock: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.feed = feed
        self.local_store = local_store
        self.outbox = outbox
        self.device_id = device_id
        self.config = config or ReconcilerConfig()
        self.state = state if state is not None else init_sync_state()
        self._clock = clock or now_millis
        self._rng = rng or random.Random()

        self._status = ReconcilerState.DISCONNECTED
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._live = asyncio.Event()
        self._disconnected_since: int | None = None

    @property
    def status(self) -> ReconcilerState:
        return self._status

    def _set_status(self, status: ReconcilerState) -> None:
        if status != self._status:
            logger.debug(
                "Reconciler state change",
                extra={"from": self._status.value, "to": status.value},
            )
        self._status = status
        self.state.feed_state.set(status.value)
        if status == ReconcilerState.LIVE:
            self._live.set()
        else:
            self._live.clear()

    async def wait_live(self, timeout: float | None = None) -> None:
        """Wait until the reconciler is LIVE (tests and startup probes)."""
        await asyncio.wait_for(self._live.wait(), timeout)

    async def get_watermark(self) -> int:
        value = await self.outbox.get_meta(WATERMARK_KEY)
        return int(value) if value is not None else 0

    # Lifecycle

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="possync-reconciler")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_status(ReconcilerState.DISCONNECTED)

    async def _run(self) -> None:
        attempt = 0
        self._set_status(ReconcilerState.CONNECTING)

        while True:
            try:
                async with self.feed.subscribe() as changes:
                    await self.catch_up()
                    self._set_status(ReconcilerState.LIVE)
                    attempt = 0
                    self._disconnected_since = None
                    self.state.feed_stalled.set(False)
                    logger.info(
                        "Change feed live",
                        extra={"watermark": await self.get_watermark()},
                    )

                    async for change in changes:
                        await self.handle_change(change)
            except asyncio.CancelledError:
                raise
            except SyncError as e:
                logger.warning(
                    "Change feed interrupted", extra={"error": e.message, "attempt": attempt}
                )
            except Exception:
                logger.exception("Change feed failed", extra={"attempt": attempt})

            self._set_status(ReconcilerState.RECONNECTING)
            now = self._clock()
            if self._disconnected_since is None:
                self._disconnected_since = now
            if now - self._disconnected_since > self.config.stall_threshold_ms:
                self.state.feed_stalled.set(True)

            attempt += 1
            delay_ms = compute_backoff(
                attempt, self.config.base_backoff_ms, self.config.max_backoff_ms, self._rng
            )
            await asyncio.sleep(delay_ms / 1000.0)

    # Incorporation

    async def catch_up(self) -> int:
        """Fetch and incorporate everything after the watermark.

        Returns:
            Number of changes incorporated
        """
        async with self._lock:
            replaced = await self._fetch_missing()

        if replaced:
            logger.info("Caught up with server changes", extra={"count": len(replaced)})
        return len(replaced)

    async def _fetch_missing(self, until: int | None = None) -> list[int]:
        """Page through the server's change log after the watermark.

        Caller holds the lock. Log pages are authoritative, so each record
        advances the watermark. Stops at a short page, or once the
        watermark reaches until.

        Returns:
            Seqs of the changes that replaced local state
        """
        replaced: list[int] = []
        limit = self.config.catch_up_limit
        while True:
            page = await self.feed.fetch_since(await self.get_watermark(), limit)
            for change in page:
                if change.seq <= await self.get_watermark():
                    continue
                if await self._incorporate(change):
                    replaced.append(change.seq)
                await self.outbox.set_meta(WATERMARK_KEY, str(change.seq))
            if len(page) < limit:
                break
            if until is not None and await self.get_watermark() >= until:
                break
        return replaced

    async def handle_change(self, change: ChangeRecord) -> bool:
        """Incorporate one change.

        A change that skips ahead of the watermark means earlier changes
        were missed or are still in transit. The gap is read from the
        change log first, so the watermark never passes an unseen seq.

        Returns:
            True if local state was replaced
        """
        async with self._lock:
            watermark = await self.get_watermark()
            if change.seq <= watermark:
                return False

            if change.seq > watermark + 1:
                logger.debug(
                    "Gap in change feed, reading change log",
                    extra={"watermark": watermark, "seq": change.seq},
                )
                replaced = await self._fetch_missing(until=change.seq)
                watermark = await self.get_watermark()
                if change.seq <= watermark:
                    return change.seq in replaced
                if change.seq > watermark + 1:
                    # Not in the log yet: apply, but leave the gap to the next catch-up
                    return await self._incorporate(change)

            replaced_now = await self._incorporate(change)
            await self.outbox.set_meta(WATERMARK_KEY, str(change.seq))
            return replaced_now

    async def _incorporate(self, change: ChangeRecord) -> bool:
        if change.device_id == self.device_id:
            own = await self.outbox.get(change.op_id)
            if own is not None:
                # Echo of our own op: local state already reflects it
                await self.outbox.mark_acked([change.op_id], {change.op_id: change.version})
                logger.debug("Skipped self-echo", extra={"op_id": change.op_id})
                return False

        local_version = await self.local_store.get_version(change.entity_type, change.entity_id)
        if local_version is not None and change.version <= local_version:
            return False

        await self.local_store.put_state(
            change.entity_type,
            change.entity_id,
            change.data,
            change.version,
            deleted=change.deleted,
        )
        await self._rebase(change)
        return True

    async def _rebase(self, change: ChangeRecord) -> None:
        """Re-apply this device's unconfirmed ops for the entity."""
        entries = await self.outbox.entries_for_entity(change.entity_type, change.entity_id)
        for entry in entries:
            if not self._needs_rebase(entry, change):
                continue
            envelope = entry.envelope
            try:
                await self.local_store.apply_locally(
                    envelope.entity_type, envelope.op, change.entity_id, envelope.body
                )
            except SyncError as e:
                logger.info(
                    "Local op no longer applies on server state",
                    extra={"op_id": entry.op_id, "error": e.message},
                )

    def _needs_rebase(self, entry: OutboxEntry, change: ChangeRecord) -> bool:
        if entry.envelope.device_id != self.device_id or entry.op_id == change.op_id:
            return False
        if entry.state in (OutboxState.PENDING, OutboxState.IN_FLIGHT):
            return True
        if entry.state == OutboxState.ACKED:
            return entry.server_version is not None and entry.server_version > change.version
        return False
