"""
HTTP transport between the device and the apply engine.

HttpSyncTransport sends a batch of envelopes to POST /v1/sync/apply-batch
and returns one ApplyResult per envelope, in order. When the server does not
accept the batch request as a whole, it falls back to POST /v1/sync/apply
per envelope: entity groups run concurrently (bounded), envelopes of the
same entity run one after another, and once one of them fails retryably
the rest of that entity is answered BLOCKED without being sent.

Invariants:
    - apply_batch() returns exactly len(envelopes) results, or raises
      TransientNetworkError when the outcome of the call as a whole is unknown
    - Every request carries Idempotency-Key (single) or the opIds in the body
      (batch); resending is always safe
    - The API key is never logged

How to change safely:
    - Keep status-code classification in step with the server's HTTP API
    - Test with httpx.MockTransport; never hit the network in unit tests
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from .config import TransportConfig
from .envelope import Envelope, group_by_entity, request_preview
from .errors import TransientNetworkError
from .results import REJECTED, TRANSPORT, ApplyResult

logger = logging.getLogger(__name__)

APPLY_PATH = "/v1/sync/apply"
APPLY_BATCH_PATH = "/v1/sync/apply-batch"
HEALTH_PATH = "/v1/health"

# Statuses where the server did not evaluate the batch as a whole
_BATCH_FALLBACK_STATUSES = frozenset({400, 404, 405, 413, 501})
_RETRYABLE_STATUSES = frozenset({408, 409, 425, 429})


class SyncTransport(Protocol):
    """What the dispatcher needs from the network."""

    async def apply_batch(self, envelopes: Sequence[Envelope]) -> list[ApplyResult]:
        """Send envelopes, return one result per envelope in order.

        Raises:
            TransientNetworkError: If the call failed as a whole
        """
        ...

    async def probe(self) -> bool:
        """Return True if the server is reachable."""
        ...

    async def close(self) -> None: ...


def _is_retryable_status(status: int) -> bool:
    return status >= 500 or status in _RETRYABLE_STATUSES


class HttpSyncTransport:
    """httpx-based transport.

    Example:
        >>> transport = HttpSyncTransport(TransportConfig(base_url="http://pos:8080"), "D1")
        >>> results = await transport.apply_batch(envelopes)
        >>> await transport.close()
    """

    def __init__(
        self,
        config: TransportConfig,
        device_id: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Transport configuration
            device_id: Sent as X-Device-Id
            client: Preconfigured client (tests inject one with MockTransport)
        """
        self.config = config
        self.device_id = device_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.request_timeout_s, connect=config.connect_timeout_s),
        )
        self._batch_supported = config.use_batch_endpoint

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Device-Id": self.device_id,
            "X-Store-ID": self.config.store_id,
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
            headers["apikey"] = self.config.api_key
        return headers

    async def apply_batch(self, envelopes: Sequence[Envelope]) -> list[ApplyResult]:
        if not envelopes:
            return []

        if self._batch_supported:
            results = await self._send_batch(envelopes)
            if results is not None:
                return results

        return await self._send_singles(envelopes)

    async def _send_batch(self, envelopes: Sequence[Envelope]) -> list[ApplyResult] | None:
        """POST the batch. Returns None when the server wants single requests."""
        payload = {
            "ops": [
                {"envelope": env.to_dict(), "preview": request_preview(env).to_dict()}
                for env in envelopes
            ]
        }
        headers = self._headers()
        headers["X-Batch-Count"] = str(len(envelopes))

        try:
            response = await self._client.post(APPLY_BATCH_PATH, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise TransientNetworkError(
                f"Batch request failed: {e}", url=APPLY_BATCH_PATH
            ) from e

        if response.status_code in (404, 405, 501):
            logger.info(
                "Batch endpoint unavailable, switching to single requests",
                extra={"status": response.status_code},
            )
            self._batch_supported = False
            return None
        if response.status_code in _BATCH_FALLBACK_STATUSES:
            logger.warning(
                "Batch request rejected, retrying as single requests",
                extra={"status": response.status_code, "count": len(envelopes)},
            )
            return None
        if response.status_code != 200:
            raise TransientNetworkError(
                f"Batch request returned HTTP {response.status_code}",
                status=response.status_code,
                url=APPLY_BATCH_PATH,
            )

        try:
            raw_results = response.json()["results"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransientNetworkError(
                f"Malformed batch response: {e}", status=response.status_code, url=APPLY_BATCH_PATH
            ) from e

        if not isinstance(raw_results, list) or len(raw_results) != len(envelopes):
            count = len(raw_results) if isinstance(raw_results, list) else None
            raise TransientNetworkError(
                f"Batch response has {count} results for {len(envelopes)} envelopes",
                status=response.status_code,
                url=APPLY_BATCH_PATH,
            )

        results = []
        for raw in raw_results:
            if not isinstance(raw, dict):
                raise TransientNetworkError(
                    "Malformed batch result entry", status=200, url=APPLY_BATCH_PATH
                )
            results.append(ApplyResult.from_dict(raw))
        return results

    async def _send_singles(self, envelopes: Sequence[Envelope]) -> list[ApplyResult]:
        results: list[ApplyResult | None] = [None] * len(envelopes)
        unreachable: list[bool] = [False] * len(envelopes)
        semaphore = asyncio.Semaphore(self.config.max_parallel_requests)

        async def run_group(positions: list[int]) -> None:
            async with semaphore:
                blocked_by: str | None = None
                blocked_unreachable = False
                for index in positions:
                    envelope = envelopes[index]
                    if blocked_by is not None:
                        # Never sent, so it counts as unreachable when the blocker was
                        results[index] = ApplyResult.blocked(envelope.op_id, blocked_by)
                        unreachable[index] = blocked_unreachable
                        continue
                    result, unreachable[index] = await self._send_single(envelope)
                    results[index] = result
                    if not result.ok and result.retryable:
                        blocked_by = envelope.op_id
                        blocked_unreachable = unreachable[index]

        await asyncio.gather(*(run_group(group) for group in group_by_entity(envelopes)))

        if all(unreachable):
            raise TransientNetworkError("Server unreachable", url=APPLY_PATH)
        return [result for result in results if result is not None]

    async def _send_single(self, envelope: Envelope) -> tuple[ApplyResult, bool]:
        """Send one envelope. Returns (result, unreachable)."""
        headers = self._headers()
        headers["Idempotency-Key"] = envelope.op_id

        try:
            response = await self._client.post(APPLY_PATH, json=envelope.to_dict(), headers=headers)
        except httpx.HTTPError as e:
            logger.debug(
                "Single request failed", extra={"op_id": envelope.op_id, "error": str(e)}
            )
            return (
                ApplyResult(
                    ok=False,
                    op_id=envelope.op_id,
                    message=f"Request failed: {e}",
                    retryable=True,
                    error_code=TRANSPORT,
                ),
                True,
            )

        retryable = _is_retryable_status(response.status_code)
        data: Any = None
        try:
            data = response.json()
        except ValueError:
            pass

        if isinstance(data, dict) and "ok" in data:
            result = ApplyResult.from_dict(data, default_retryable=retryable)
            if result.op_id is None:
                result.op_id = envelope.op_id
            return result, False

        return (
            ApplyResult(
                ok=False,
                op_id=envelope.op_id,
                message=f"HTTP {response.status_code}",
                retryable=retryable,
                error_code=TRANSPORT if retryable else REJECTED,
            ),
            False,
        )

    async def probe(self) -> bool:
        try:
            response = await self._client.get(HEALTH_PATH, headers=self._headers())
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
