"""
Idempotent apply engine for possync.

The Applier receives envelopes from devices (one at a time or in batches)
and applies them to the canonical SyncStore. It ensures:
- Exactly-once application per opId (replays are reported, never re-applied)
- Per-entity order within a batch
- One terminal classification per envelope

Invariants:
    - Every submitted envelope yields exactly one ApplyResult, in order
    - One envelope's failure never aborts its siblings
    - Only fresh applications are published to the change feed
    - Decode failures are VALIDATION and never retryable
    - A retryable failure blocks later ops on the same entity in the batch

How to change safely:
    - New error types must map to an ApplyResult code in _classify()
    - Test idempotency with duplicate envelopes in one batch and across batches
    - Keep ordering tests for ops that share an entity key
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Union

from possync_sdk.envelope import Envelope, decode_envelope, group_by_entity
from possync_sdk.errors import DecodeError, StorageError, SyncError
from possync_sdk.results import ApplyResult

from ..config import ApplierConfig
from ..feed.base import ChangeFeed
from .sync_store import SyncStore

logger = logging.getLogger(__name__)

RawEnvelope = Union[bytes, str, Mapping[str, Any], Envelope]


class ApplierError(Exception):
    """Error during envelope application."""

    pass


class Applier:
    """Applies device envelopes to the canonical store exactly once.

    The Applier is the server half of the sync protocol:
    1. Decodes and validates each envelope
    2. Runs the atomic ledger check-and-apply in the SyncStore
    3. Publishes the resulting change record to live subscribers
    4. Classifies failures as permanent or retryable

    Thread safety:
        apply() and apply_batch() may be called concurrently from many
        request handlers. Ops on the same entity within one batch run
        sequentially; the store serializes writes.

    Example:
        >>> applier = Applier(store, feed)
        >>> result = await applier.apply("A1", envelope_json)
        >>> result.ok, result.replay
        (True, False)
    """

    def __init__(
        self,
        store: SyncStore,
        feed: ChangeFeed | None = None,
        config: ApplierConfig | None = None,
    ) -> None:
        """Initialize the applier.

        Args:
            store: Canonical store
            feed: Change feed to publish fresh applications to
            config: Apply engine configuration
        """
        self.store = store
        self.feed = feed
        self.config = config or ApplierConfig()

        self._applied_count = 0
        self._replayed_count = 0
        self._failed_count = 0
        self._batch_count = 0

    async def apply(self, store_id: str, raw: RawEnvelope) -> ApplyResult:
        """Apply a single envelope.

        Args:
            store_id: Operator store the envelope belongs to
            raw: Envelope as bytes, JSON text, mapping or decoded Envelope

        Returns:
            ApplyResult; never raises for per-op failures
        """
        if isinstance(raw, Envelope):
            envelope = raw
        else:
            try:
                envelope = decode_envelope(raw)
            except DecodeError as e:
                self._failed_count += 1
                op_id = raw.get("opId") if isinstance(raw, Mapping) else None
                logger.info(
                    "Rejected undecodable envelope",
                    extra={"store_id": store_id, "op_id": op_id, "error": e.message},
                )
                return ApplyResult.from_error(op_id if isinstance(op_id, str) else None, e)

        return await self.apply_envelope(store_id, envelope)

    async def apply_envelope(self, store_id: str, envelope: Envelope) -> ApplyResult:
        """Apply a decoded envelope.

        This is the core application logic, separate from decoding for
        testability.
        """
        try:
            applied = await self.store.apply_envelope(store_id, envelope)
        except SyncError as e:
            return self._classify(store_id, envelope, e)
        except ValueError as e:
            # Invalid store id
            return self._classify(store_id, envelope, DecodeError(str(e), field_name="storeId"))

        if applied.replay:
            self._replayed_count += 1
            logger.debug(
                "Skipped duplicate envelope",
                extra={"store_id": store_id, "op_id": envelope.op_id},
            )
            return ApplyResult.replayed(envelope.op_id, applied.entity_id, applied.version)

        self._applied_count += 1
        logger.debug(
            "Applied envelope",
            extra={
                "store_id": store_id,
                "op_id": envelope.op_id,
                "device_id": envelope.device_id,
                "entity_type": envelope.entity_type,
                "entity_id": applied.entity_id,
                "version": applied.version,
            },
        )
        if self.feed is not None and applied.change is not None:
            self.feed.publish(store_id, applied.change)

        return ApplyResult.applied(envelope.op_id, applied.entity_id, applied.version or 0)

    def _classify(self, store_id: str, envelope: Envelope, error: SyncError) -> ApplyResult:
        self._failed_count += 1
        extra = {
            "store_id": store_id,
            "op_id": envelope.op_id,
            "device_id": envelope.device_id,
            "entity_type": envelope.entity_type,
            "entity_id": envelope.entity_id,
            "error_code": error.code,
            "error": error.message,
        }
        if isinstance(error, StorageError):
            logger.error("Storage failure applying envelope", extra=extra)
        elif error.retryable:
            logger.info("Deferred envelope with missing dependency", extra=extra)
        else:
            logger.info("Rejected envelope", extra=extra)
        return ApplyResult.from_error(envelope.op_id, error)

    async def apply_batch(self, store_id: str, raws: Sequence[RawEnvelope]) -> list[ApplyResult]:
        """Apply a batch of envelopes.

        Envelopes are grouped by entity key. Each group is applied
        sequentially in submission order; groups run concurrently, bounded
        by max_parallel_groups. Once an op in a group fails retryably, the
        rest of the group is answered BLOCKED without being applied, so a
        later op never lands before an earlier one. Undecodable envelopes
        are answered without touching the store.

        Returns:
            One ApplyResult per input, in submission order
        """
        self._batch_count += 1
        results: list[ApplyResult | None] = [None] * len(raws)

        decoded: list[Envelope] = []
        positions: list[int] = []
        for index, raw in enumerate(raws):
            if isinstance(raw, Envelope):
                envelope = raw
            else:
                try:
                    envelope = decode_envelope(raw)
                except DecodeError:
                    results[index] = await self.apply(store_id, raw)
                    continue
            decoded.append(envelope)
            positions.append(index)

        semaphore = asyncio.Semaphore(self.config.max_parallel_groups)

        async def run_group(group: list[int]) -> None:
            async with semaphore:
                blocked_by: str | None = None
                for local in group:
                    envelope = decoded[local]
                    if blocked_by is not None:
                        # Must not overtake the earlier op when it is retried
                        results[positions[local]] = ApplyResult.blocked(
                            envelope.op_id, blocked_by
                        )
                        continue
                    result = await self.apply_envelope(store_id, envelope)
                    if not result.ok and result.retryable:
                        blocked_by = envelope.op_id
                    results[positions[local]] = result

        await asyncio.gather(*(run_group(group) for group in group_by_entity(decoded)))

        missing = [i for i, result in enumerate(results) if result is None]
        if missing:
            raise ApplierError(f"Batch produced no result for positions {missing}")

        logger.debug(
            "Applied batch",
            extra={"store_id": store_id, "count": len(raws)},
        )
        return [result for result in results if result is not None]

    @property
    def stats(self) -> dict[str, Any]:
        """Get applier statistics."""
        return {
            "applied_count": self._applied_count,
            "replayed_count": self._replayed_count,
            "failed_count": self._failed_count,
            "batch_count": self._batch_count,
        }
