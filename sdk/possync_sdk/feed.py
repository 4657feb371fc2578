"""
Change feed client: how a device learns about changes made elsewhere.

Every fresh application on the server produces a ChangeRecord with a
store-wide sequence number (seq). A device keeps the highest seq it has
incorporated (its watermark) and asks for everything after it:

- fetch_since(): bounded catch-up page over HTTP (GET /v1/changes)
- subscribe(): live push over a WebSocket (GET /v1/feed)

Subscribing first and catching up second leaves no gap; duplicates are
filtered by seq in the reconciler.

Invariants:
    - Records arrive in seq order within one subscription
    - ChangeRecord carries full entity state, not a delta
    - Connection failures surface as TransientNetworkError
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

from .config import TransportConfig
from .errors import DecodeError, TransientNetworkError

logger = logging.getLogger(__name__)

CHANGES_PATH = "/v1/changes"
FEED_PATH = "/v1/feed"


@dataclass
class ChangeRecord:
    """One applied change as published by the server.

    Attributes:
        seq: Store-wide sequence number
        entity_type: Changed aggregate
        entity_id: Changed entity
        version: Entity version after the change
        op: Operation that produced it
        op_id: Originating opId
        device_id: Originating device
        data: Full entity state after the change
        deleted: Tombstone flag
        applied_at: Server application time (Unix ms)
    """

    seq: int
    entity_type: str
    entity_id: str
    version: int
    op: str
    op_id: str
    device_id: str
    data: dict[str, Any] = field(default_factory=dict)
    deleted: bool = False
    applied_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "version": self.version,
            "op": self.op,
            "opId": self.op_id,
            "deviceId": self.device_id,
            "data": self.data,
            "deleted": self.deleted,
            "appliedAt": self.applied_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> ChangeRecord:
        """Create from the wire mapping.

        Raises:
            DecodeError: If a required field is missing or mistyped
        """
        if not isinstance(data, dict):
            raise DecodeError("Change record must be an object")
        try:
            return cls(
                seq=int(data["seq"]),
                entity_type=str(data["entityType"]),
                entity_id=str(data["entityId"]),
                version=int(data["version"]),
                op=str(data["op"]),
                op_id=str(data["opId"]),
                device_id=str(data["deviceId"]),
                data=dict(data.get("data") or {}),
                deleted=bool(data.get("deleted", False)),
                applied_at=int(data.get("appliedAt", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed change record: {e}")


class FeedClient(Protocol):
    """Source of change records for the reconciler."""

    async def fetch_since(self, since: int, limit: int) -> list[ChangeRecord]:
        """Records with seq > since, oldest first, at most limit."""
        ...

    def subscribe(self) -> AbstractAsyncContextManager[AsyncIterator[ChangeRecord]]:
        """Open a live subscription.

        The iterator ends when the server closes the feed and raises
        TransientNetworkError when the connection breaks.
        """
        ...

    async def close(self) -> None: ...


class HttpFeedClient:
    """aiohttp-based feed client (HTTP catch-up, WebSocket push).

    Example:
        >>> feed = HttpFeedClient(TransportConfig(base_url="http://pos:8080"))
        >>> page = await feed.fetch_since(0, 100)
        >>> async with feed.subscribe() as changes:
        ...     async for change in changes:
        ...         print(change.seq)
    """

    def __init__(
        self,
        config: TransportConfig,
        session: aiohttp.ClientSession | None = None,
        heartbeat_s: float = 30.0,
    ) -> None:
        self.config = config
        self.heartbeat_s = heartbeat_s
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _headers(self) -> dict[str, str]:
        headers = {"X-Store-ID": self.config.store_id}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
            headers["apikey"] = self.config.api_key
        return headers

    def _url(self, path: str) -> str:
        return self.config.base_url.rstrip("/") + path

    async def fetch_since(self, since: int, limit: int) -> list[ChangeRecord]:
        session = self._get_session()
        url = self._url(CHANGES_PATH)
        try:
            async with session.get(
                url,
                params={"since": str(since), "limit": str(limit)},
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(
                    total=self.config.request_timeout_s,
                    sock_connect=self.config.connect_timeout_s,
                ),
            ) as response:
                if response.status != 200:
                    raise TransientNetworkError(
                        f"Catch-up returned HTTP {response.status}",
                        status=response.status,
                        url=url,
                    )
                payload = await response.json()
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Catch-up failed: {e}", url=url) from e
        except asyncio.TimeoutError as e:
            raise TransientNetworkError("Catch-up timed out", url=url) from e

        return [ChangeRecord.from_dict(item) for item in payload.get("changes", [])]

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[AsyncIterator[ChangeRecord]]:
        session = self._get_session()
        url = self._url(FEED_PATH)
        try:
            ws = await session.ws_connect(
                url,
                params={"store_id": self.config.store_id},
                headers=self._headers(),
                heartbeat=self.heartbeat_s,
            )
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Feed connect failed: {e}", url=url) from e
        except asyncio.TimeoutError as e:
            raise TransientNetworkError("Feed connect timed out", url=url) from e

        logger.info("Change feed connected", extra={"url": url})
        try:
            yield self._iterate(ws)
        finally:
            await ws.close()

    async def _iterate(self, ws: aiohttp.ClientWebSocketResponse) -> AsyncIterator[ChangeRecord]:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    payload = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON feed frame")
                    continue
                yield ChangeRecord.from_dict(payload)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise TransientNetworkError(f"Feed connection error: {ws.exception()}")

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class InMemoryFeedClient:
    """In-process change feed for tests and demos.

    publish() appends a record (assigning seq when it is 0) and pushes it to
    live subscribers. disconnect() breaks every live subscription;
    fail_connects makes the next subscribe() calls fail.

    Example:
        >>> feed = InMemoryFeedClient()
        >>> feed.publish(ChangeRecord(0, "item", "I1", 1, "create", "op1", "D2", {"name": "Soap"}))
        >>> [c.seq for c in await feed.fetch_since(0, 10)]
        [1]
    """

    def __init__(self) -> None:
        self.records: list[ChangeRecord] = []
        self.fail_connects = 0
        self.connect_count = 0
        self._subscribers: list[asyncio.Queue[Any]] = []

    def publish(self, record: ChangeRecord) -> ChangeRecord:
        if record.seq == 0:
            record.seq = (self.records[-1].seq if self.records else 0) + 1
        if not record.applied_at:
            record.applied_at = int(time.time() * 1000)
        self.records.append(record)
        for queue in self._subscribers:
            queue.put_nowait(record)
        return record

    def disconnect(self) -> None:
        for queue in self._subscribers:
            queue.put_nowait(TransientNetworkError("Feed disconnected"))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def fetch_since(self, since: int, limit: int) -> list[ChangeRecord]:
        return [r for r in self.records if r.seq > since][:limit]

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[AsyncIterator[ChangeRecord]]:
        self.connect_count += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise TransientNetworkError("Feed unavailable")

        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield self._iterate(queue)
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    async def _iterate(self, queue: asyncio.Queue[Any]) -> AsyncIterator[ChangeRecord]:
        while True:
            item = await queue.get()
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self._subscribers.clear()
