"""
HTTP API for the possync server.

Endpoints:
- POST /v1/sync/apply: apply one envelope
- POST /v1/sync/apply-batch: apply many envelopes, results in order
- GET /v1/changes: catch-up page of change records after a seq
- GET /v1/feed: WebSocket push of change records
- GET /v1/ledger/{op_id}: applied-operations ledger lookup
- GET /v1/health: health and statistics

Invariants:
    - Every operation is scoped to one store (X-Store-ID header, store_id
      query parameter, or the configured default)
    - apply-batch answers 200 with one result per op for any well-formed
      request; malformed requests are rejected before any op is applied
    - JSON request/response format with camelCase keys

How to change safely:
    - Keep the single-op status mapping stable; devices retry on 409 and 5xx
    - Add fields to responses, never rename them
    - Version the path if breaking changes are needed
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from aiohttp import WSMsgType, web

from possync_sdk.results import DEPENDENCY, STORAGE, ApplyResult

from .. import __version__
from ..apply import Applier, SyncStore
from ..config import FeedConfig, HttpConfig
from ..feed import ChangeFeed, FeedOverflowError

logger = logging.getLogger(__name__)

ALLOWED_HEADERS = (
    "Content-Type, Authorization, apikey, X-Store-ID, X-Device-Id, "
    "X-Batch-Count, Idempotency-Key"
)


@dataclass
class ApiContext:
    """Collaborators shared by all handlers."""

    applier: Applier
    store: SyncStore
    feed: ChangeFeed
    http: HttpConfig
    feed_config: FeedConfig
    default_store_id: str = "default"


def create_http_app(ctx: ApiContext) -> web.Application:
    """Create the aiohttp application.

    Args:
        ctx: Applier, store, feed and configuration

    Returns:
        aiohttp Application instance
    """
    config = ctx.http
    app = web.Application()

    app.router.add_post("/v1/sync/apply", lambda r: handle_apply(r, ctx))
    app.router.add_post("/v1/sync/apply-batch", lambda r: handle_apply_batch(r, ctx))
    app.router.add_get("/v1/changes", lambda r: handle_changes(r, ctx))
    app.router.add_get("/v1/feed", lambda r: handle_feed(r, ctx))
    app.router.add_get("/v1/ledger/{op_id}", lambda r: handle_ledger(r, ctx))
    app.router.add_get("/v1/health", lambda r: handle_health(r, ctx))

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response: web.StreamResponse = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        # Upgraded WebSocket responses have already sent their headers
        if response.prepared:
            return response

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS

        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"ok": False, "message": str(e), "errorCode": "INTERNAL"},
                status=500,
            )

    app.middlewares.insert(0, error_middleware)

    return app


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"ok": False, "message": message, "errorCode": "VALIDATION"}),
        content_type="application/json",
    )


def extract_store_id(request: web.Request, ctx: ApiContext) -> str:
    """Resolve the store a request is scoped to.

    Raises:
        web.HTTPBadRequest: If the store id is empty or has characters outside [A-Za-z0-9_-]
    """
    store_id = (
        request.headers.get("X-Store-ID")
        or request.query.get("store_id")
        or ctx.default_store_id
    ).strip()
    if not store_id or not all((c.isascii() and c.isalnum()) or c in "-_" for c in store_id):
        raise _bad_request(f"Invalid store id: {store_id!r}")
    return store_id


def _query_int(request: web.Request, name: str, default: int) -> int:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise _bad_request(f"Query parameter '{name}' must be an integer")
    if value < 0:
        raise _bad_request(f"Query parameter '{name}' must be >= 0")
    return value


def status_for(result: ApplyResult) -> int:
    """HTTP status for a single-op result."""
    if result.ok:
        return 200
    if result.error_code == DEPENDENCY:
        return 409
    if result.error_code == STORAGE:
        return 500
    return 400


async def handle_apply(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /v1/sync/apply - Apply one envelope."""
    store_id = extract_store_id(request, ctx)
    raw = await request.read()

    result = await ctx.applier.apply(store_id, raw)
    return web.json_response(result.to_dict(), status=status_for(result))


async def handle_apply_batch(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle POST /v1/sync/apply-batch - Apply envelopes in order."""
    store_id = extract_store_id(request, ctx)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise _bad_request("Invalid JSON body")

    ops = body.get("ops") if isinstance(body, dict) else None
    if not isinstance(ops, list):
        raise _bad_request("Field 'ops' must be an array")
    if len(ops) > ctx.http.max_batch_ops:
        raise _bad_request(
            f"Batch of {len(ops)} ops exceeds the limit of {ctx.http.max_batch_ops}"
        )

    envelopes = [op.get("envelope") if isinstance(op, dict) else op for op in ops]
    results = await ctx.applier.apply_batch(store_id, envelopes)

    logger.info(
        "Applied batch",
        extra={
            "store_id": store_id,
            "device_id": request.headers.get("X-Device-Id"),
            "count": len(results),
            "failed": sum(1 for r in results if not r.ok),
        },
    )
    return web.json_response({"results": [r.to_dict() for r in results]})


async def handle_changes(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /v1/changes - Catch-up page after a seq."""
    store_id = extract_store_id(request, ctx)
    since = _query_int(request, "since", 0)
    limit = _query_int(request, "limit", ctx.feed_config.catch_up_limit)
    limit = max(1, min(limit, ctx.feed_config.catch_up_limit))

    changes = await ctx.store.fetch_changes(store_id, since, limit)
    watermark = changes[-1].seq if changes else since
    return web.json_response(
        {
            "changes": [c.to_dict() for c in changes],
            "watermark": watermark,
            "hasMore": len(changes) == limit,
        }
    )


async def handle_feed(request: web.Request, ctx: ApiContext) -> web.WebSocketResponse:
    """Handle GET /v1/feed - WebSocket push of change records."""
    store_id = extract_store_id(request, ctx)

    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    subscription = ctx.feed.subscribe(store_id)
    logger.info(
        "Feed subscriber connected",
        extra={"store_id": store_id, "device_id": request.headers.get("X-Device-Id")},
    )

    async def forward() -> None:
        try:
            async for record in subscription:
                await ws.send_str(json.dumps(record.to_dict()))
        except FeedOverflowError:
            logger.warning("Feed subscriber overflowed", extra={"store_id": store_id})
            await ws.close(code=1013, message=b"feed overflow, catch up and reconnect")
            return
        await ws.close()

    forwarder = asyncio.create_task(forward())
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.warning(
                    "Feed connection error",
                    extra={"store_id": store_id, "error": str(ws.exception())},
                )
                break
    finally:
        subscription.close()
        forwarder.cancel()
        try:
            await forwarder
        except asyncio.CancelledError:
            pass
        logger.info("Feed subscriber disconnected", extra={"store_id": store_id})

    return ws


async def handle_ledger(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /v1/ledger/{op_id} - Ledger lookup."""
    store_id = extract_store_id(request, ctx)
    op_id = request.match_info["op_id"]

    entry = await ctx.store.get_ledger_entry(store_id, op_id)
    if entry is None:
        return web.json_response({"found": False, "opId": op_id}, status=404)
    return web.json_response({"found": True, **entry.to_dict()})


async def handle_health(request: web.Request, ctx: ApiContext) -> web.Response:
    """Handle GET /v1/health - Health check."""
    feed_stats: dict[str, Any] = {"subscribers": ctx.feed.subscriber_count()}
    return web.json_response(
        {
            "healthy": True,
            "version": __version__,
            "stores": len(ctx.store.list_stores()),
            "applier": ctx.applier.stats,
            "feed": feed_stats,
        }
    )


async def start_http_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Start serving the application.

    Returns:
        The runner; call cleanup() on it to stop
    """
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"HTTP server running on http://{host}:{port}")
    return runner
