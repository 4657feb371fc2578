"""
Integration tests for HttpSyncTransport against a mocked HTTP server.

Tests cover:
- Batch requests and result correlation
- Fallback to single requests
- Status-code classification
- Request headers
"""

import json

import httpx
import pytest

from possync_sdk.config import TransportConfig
from possync_sdk.errors import TransientNetworkError
from possync_sdk.results import BLOCKED, DEPENDENCY, REJECTED, TRANSPORT
from possync_sdk.transport import HttpSyncTransport


def _ok(op_id, version=1):
    return {"ok": True, "replay": False, "opId": op_id, "version": version}


class RecordingHandler:
    """httpx.MockTransport handler that records requests."""

    def __init__(self, respond):
        self.respond = respond
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.respond(request)

    @property
    def paths(self):
        return [request.url.path for request in self.requests]


class TestHttpSyncTransport:
    """Tests for HttpSyncTransport."""

    def _transport(self, handler, **config):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="http://sync.test"
        )
        config.setdefault("store_id", "A1")
        return HttpSyncTransport(TransportConfig(**config), "D1", client=client)

    @pytest.mark.asyncio
    async def test_batch_results_in_order(self, make_envelope):
        def respond(request):
            ops = json.loads(request.content)["ops"]
            return httpx.Response(
                200, json={"results": [_ok(op["envelope"]["opId"]) for op in ops]}
            )

        handler = RecordingHandler(respond)
        transport = self._transport(handler)
        envs = [make_envelope(entity_id="I1"), make_envelope(entity_id="I2")]

        results = await transport.apply_batch(envs)

        assert [r.op_id for r in results] == [e.op_id for e in envs]
        assert all(r.ok for r in results)
        assert handler.paths == ["/v1/sync/apply-batch"]
        body = json.loads(handler.requests[0].content)
        assert body["ops"][0]["preview"]["path"] == "/v1/items"

    @pytest.mark.asyncio
    async def test_headers(self, make_envelope):
        handler = RecordingHandler(
            lambda request: httpx.Response(200, json={"results": [_ok("op-x")]})
        )
        transport = self._transport(handler, api_key="secret")

        await transport.apply_batch([make_envelope(op_id="op-x")])

        headers = handler.requests[0].headers
        assert headers["X-Store-ID"] == "A1"
        assert headers["X-Device-Id"] == "D1"
        assert headers["X-Batch-Count"] == "1"
        assert headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_missing_batch_endpoint_falls_back_to_singles(self, make_envelope):
        """A 404 on the batch endpoint switches to single requests for good."""

        def respond(request):
            if request.url.path == "/v1/sync/apply-batch":
                return httpx.Response(404)
            envelope = json.loads(request.content)
            return httpx.Response(200, json=_ok(envelope["opId"]))

        handler = RecordingHandler(respond)
        transport = self._transport(handler)

        first = await transport.apply_batch([make_envelope(entity_id="I1")])
        second = await transport.apply_batch([make_envelope(entity_id="I2")])

        assert first[0].ok and second[0].ok
        assert handler.paths == ["/v1/sync/apply-batch", "/v1/sync/apply", "/v1/sync/apply"]
        assert handler.requests[1].headers["Idempotency-Key"] == first[0].op_id

    @pytest.mark.asyncio
    async def test_server_error_on_batch_is_transient(self, make_envelope):
        transport = self._transport(RecordingHandler(lambda request: httpx.Response(503)))

        with pytest.raises(TransientNetworkError) as exc_info:
            await transport.apply_batch([make_envelope()])

        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_short_batch_response_is_transient(self, make_envelope):
        transport = self._transport(
            RecordingHandler(lambda request: httpx.Response(200, json={"results": []}))
        )

        with pytest.raises(TransientNetworkError):
            await transport.apply_batch([make_envelope()])

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, make_envelope):
        def respond(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport = self._transport(RecordingHandler(respond))

        with pytest.raises(TransientNetworkError):
            await transport.apply_batch([make_envelope()])

    @pytest.mark.asyncio
    async def test_single_status_classification(self, make_envelope):
        """Single-request answers are classified per op."""
        envs = [
            make_envelope(entity_id="I1", op_id="ok"),
            make_envelope(entity_id="I2", op_id="dep"),
            make_envelope(entity_id="I3", op_id="rejected"),
            make_envelope(entity_id="I4", op_id="down"),
        ]

        def respond(request):
            op_id = request.headers["Idempotency-Key"]
            if op_id == "ok":
                return httpx.Response(200, json=_ok(op_id))
            if op_id == "dep":
                return httpx.Response(
                    409,
                    json={"ok": False, "opId": op_id, "retryable": True, "errorCode": DEPENDENCY},
                )
            if op_id == "rejected":
                return httpx.Response(422, text="unprocessable")
            return httpx.Response(502, text="bad gateway")

        transport = self._transport(RecordingHandler(respond), use_batch_endpoint=False)

        results = await transport.apply_batch(envs)

        assert results[0].ok is True
        assert (results[1].error_code, results[1].retryable) == (DEPENDENCY, True)
        assert (results[2].error_code, results[2].retryable) == (REJECTED, False)
        assert (results[3].error_code, results[3].retryable) == (TRANSPORT, True)

    @pytest.mark.asyncio
    async def test_singles_stop_entity_after_retryable_failure(self, make_envelope):
        """A later op on the same entity is not sent past a deferred one."""
        envs = [
            make_envelope(entity_id="I1", op="update", body={"name": "A"}, op_id="first"),
            make_envelope(entity_id="I1", op="update", body={"name": "B"}, op_id="second"),
            make_envelope(entity_id="I2", op_id="other"),
        ]

        def respond(request):
            op_id = request.headers["Idempotency-Key"]
            if op_id == "first":
                return httpx.Response(
                    409,
                    json={"ok": False, "opId": op_id, "retryable": True, "errorCode": DEPENDENCY},
                )
            return httpx.Response(200, json=_ok(op_id))

        handler = RecordingHandler(respond)
        transport = self._transport(handler, use_batch_endpoint=False)

        results = await transport.apply_batch(envs)

        sent = [request.headers["Idempotency-Key"] for request in handler.requests]
        assert sorted(sent) == ["first", "other"]
        assert (results[1].ok, results[1].retryable, results[1].error_code) == (
            False,
            True,
            BLOCKED,
        )
        assert results[1].op_id == "second"
        assert results[2].ok is True

    @pytest.mark.asyncio
    async def test_singles_all_unreachable_is_transient(self, make_envelope):
        def respond(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        transport = self._transport(RecordingHandler(respond), use_batch_endpoint=False)

        with pytest.raises(TransientNetworkError):
            await transport.apply_batch([make_envelope(entity_id="I1"), make_envelope(entity_id="I2")])

    @pytest.mark.asyncio
    async def test_health_check_reports_reachability(self):
        transport = self._transport(
            RecordingHandler(lambda request: httpx.Response(200, json={"healthy": True}))
        )

        assert await transport.probe() is True
