"""
Envelope codec for possync.

The envelope is the atomic, idempotent unit of synchronization. This module
provides:
- Envelope: the wire record (camelCase JSON, snake_case attributes)
- MutationEvent: what the application emits when local state changes
- EnvelopeCodec: turns mutation events into envelopes and bytes back into
  validated envelopes
- MutationChannel: bounded stream of mutation events feeding the codec
- request_preview(): REST-style description of what an envelope means

Example:
    {
        "apiVersion": 1,
        "deviceId": "D1",
        "opId": "0b6f9a4e-...",
        "sentAtMillis": 1730000000000,
        "entityType": "item",
        "entityId": "I1",
        "op": "adjust",
        "body": {"delta": -2}
    }

Invariants:
    - encode() always sets deviceId and a fresh opId
    - decode() never defaults opId, deviceId, entityType or op
    - A malformed envelope raises DecodeError before it can reach the outbox
      or the apply engine
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .errors import DecodeError, ValidationError
from .payloads import EntityType, OpKind, canonical_body, get_variant

API_VERSION = 1
SUPPORTED_API_VERSIONS = frozenset({1})
REQUIRED_FIELDS = ("opId", "deviceId", "entityType", "op")


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Envelope:
    """One synchronized operation.

    Attributes:
        device_id: Stable id of the originating device
        op_id: Globally unique operation id (the idempotency key)
        sent_at_millis: Creation time on the device, advisory only
        entity_type: Target aggregate
        entity_id: Target entity, None for creates with a derived id
        op: Operation kind
        body: Canonical body for (entity_type, op)
        api_version: Protocol version
    """

    device_id: str
    op_id: str
    sent_at_millis: int
    entity_type: str
    entity_id: Optional[str]
    op: str
    body: dict[str, Any] = field(default_factory=dict, hash=False)
    api_version: int = API_VERSION

    @property
    def entity_key(self) -> tuple[str, str]:
        """(entity_type, entity_id), with the derived id for creates that carry none."""
        return (self.entity_type, self.entity_id or derive_entity_id(self.op_id))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire mapping."""
        return {
            "apiVersion": self.api_version,
            "deviceId": self.device_id,
            "opId": self.op_id,
            "sentAtMillis": self.sent_at_millis,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "op": self.op,
            "body": self.body,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> Envelope:
        """Create from the wire mapping.

        Args:
            data: Decoded JSON value

        Returns:
            Validated Envelope with a canonical body

        Raises:
            DecodeError: If any structural or body validation fails
        """
        if not isinstance(data, Mapping):
            raise DecodeError(f"Envelope must be an object, got {type(data).__name__}")

        missing = [
            name
            for name in REQUIRED_FIELDS
            if not isinstance(data.get(name), str) or not data[name].strip()
        ]
        if missing:
            raise DecodeError(
                f"Missing required fields: {missing}",
                field_name=missing[0],
                errors=[f"Field '{name}' is required" for name in missing],
            )

        api_version = data.get("apiVersion", API_VERSION)
        if (
            not isinstance(api_version, int)
            or isinstance(api_version, bool)
            or api_version not in SUPPORTED_API_VERSIONS
        ):
            raise DecodeError(f"Unsupported apiVersion={api_version}", field_name="apiVersion")

        sent_at = data.get("sentAtMillis", 0)
        if not isinstance(sent_at, int) or isinstance(sent_at, bool):
            raise DecodeError("Field 'sentAtMillis' must be an integer", field_name="sentAtMillis")

        entity_id = data.get("entityId")
        if isinstance(entity_id, int) and not isinstance(entity_id, bool):
            entity_id = str(entity_id)
        if entity_id is not None and (not isinstance(entity_id, str) or not entity_id.strip()):
            raise DecodeError("Field 'entityId' must be a non-empty string", field_name="entityId")

        entity_type = data["entityType"].strip()
        op = data["op"].strip()

        try:
            variant = get_variant(entity_type, op)
            if variant.requires_entity_id and entity_id is None:
                raise DecodeError(
                    f"Field 'entityId' is required for {entity_type}/{op}",
                    field_name="entityId",
                )
            body = canonical_body(entity_type, op, data.get("body"))
        except DecodeError:
            raise
        except ValidationError as e:
            raise DecodeError(e.message, field_name=e.field_name, errors=e.errors)

        return cls(
            device_id=data["deviceId"].strip(),
            op_id=data["opId"].strip(),
            sent_at_millis=sent_at,
            entity_type=entity_type,
            entity_id=entity_id,
            op=op,
            body=body,
            api_version=api_version,
        )


@dataclass
class MutationEvent:
    """A local state change that must be synchronized.

    Attributes:
        entity_type: Target aggregate
        op: Operation kind
        entity_id: Target entity (None for creates with a derived id)
        body: Raw body, validated when encoded
    """

    entity_type: Union[EntityType, str]
    op: Union[OpKind, str]
    entity_id: Optional[str] = None
    body: dict[str, Any] = field(default_factory=dict)


class EnvelopeCodec:
    """Builds and parses envelopes for one device.

    Example:
        >>> codec = EnvelopeCodec(device_id="D1")
        >>> env = codec.encode(MutationEvent("item", "adjust", "I1", {"delta": -2}))
        >>> codec.decode(env.to_json()) == env
        True
    """

    def __init__(
        self,
        device_id: str,
        clock: Optional[Callable[[], int]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """Initialize the codec.

        Args:
            device_id: Stable id of this install
            clock: Millisecond clock (defaults to wall clock)
            id_factory: opId generator (defaults to random UUID4)
        """
        if not device_id or not device_id.strip():
            raise ValidationError("device_id is required", field_name="deviceId")
        self.device_id = device_id
        self._clock = clock or now_millis
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def encode(self, event: MutationEvent) -> Envelope:
        """Turn a mutation event into a new envelope.

        Raises:
            ValidationError: If the body does not match its variant
        """
        entity_type = _tag(event.entity_type)
        op = _tag(event.op)
        entity_id = str(event.entity_id) if event.entity_id is not None else None

        variant = get_variant(entity_type, op)
        if variant.requires_entity_id and entity_id is None:
            raise ValidationError(
                f"entity_id is required for {entity_type}/{op}",
                field_name="entityId",
            )

        return Envelope(
            device_id=self.device_id,
            op_id=self._id_factory(),
            sent_at_millis=self._clock(),
            entity_type=entity_type,
            entity_id=entity_id,
            op=op,
            body=canonical_body(entity_type, op, event.body),
        )

    def decode(self, raw: Union[bytes, str, Mapping[str, Any]]) -> Envelope:
        """Parse and validate an envelope.

        Raises:
            DecodeError: If the input is not a valid envelope
        """
        return decode_envelope(raw)


def decode_envelope(raw: Union[bytes, str, Mapping[str, Any]]) -> Envelope:
    """Parse and validate an envelope from bytes, text or a mapping."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Envelope is not valid UTF-8: {e}")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Envelope is not valid JSON: {e}")
    return Envelope.from_dict(raw)


def derive_entity_id(op_id: str) -> str:
    """Entity id for a create that carries no entityId.

    Deterministic in opId, so the device, the server and every replay agree.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"possync:op:{op_id}"))


def group_by_entity(envelopes: Sequence[Envelope]) -> list[list[int]]:
    """Partition positions into per-entity groups.

    Each group lists positions in submission order. A create without an
    entityId is keyed by its derived id, so later operations on that id
    join its group. Groups are ordered by first appearance.
    """
    groups: dict[tuple[str, str], list[int]] = {}
    for index, envelope in enumerate(envelopes):
        groups.setdefault(envelope.entity_key, []).append(index)
    return list(groups.values())


def _tag(value: Union[EntityType, OpKind, str]) -> str:
    if isinstance(value, (EntityType, OpKind)):
        return value.value
    return str(value)


_CLOSED = object()


class MutationChannel:
    """Bounded stream of mutation events.

    Platform event sources (scanner callbacks, UI handlers) submit events
    here; the sync client consumes them in order. A full channel applies
    backpressure to submit() and makes submit_nowait() raise QueueFull.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def submit(self, event: MutationEvent) -> None:
        if self._closed:
            raise RuntimeError("MutationChannel is closed")
        await self._queue.put(event)

    def submit_nowait(self, event: MutationEvent) -> None:
        if self._closed:
            raise RuntimeError("MutationChannel is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop accepting events; consumers drain what is queued, then stop."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def qsize(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[MutationEvent]:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event


@dataclass(frozen=True)
class RequestPreview:
    """REST-style description of an envelope, for logs and server routing."""

    method: str
    path: str

    def to_dict(self) -> dict[str, str]:
        return {"method": self.method, "path": self.path}

    def to_one_line(self, body: Optional[dict[str, Any]] = None, max_chars: int = 900) -> str:
        raw = f"Would {self.method} {self.path} body={json.dumps(body)}"
        return raw if len(raw) <= max_chars else raw[:max_chars] + "…"


_COLLECTIONS = {
    "item": "items",
    "party": "parties",
    "transaction": "transactions",
    "transaction_item": "transactions",
    "reminder": "reminders",
}

_TRANSACTION_PATHS = {
    "create_sale": "sale",
    "create_payment": "payment",
    "create_vendor_purchase": "vendor_purchase",
    "create_expense": "expense",
}


def request_preview(envelope: Envelope, base: str = "/v1") -> RequestPreview:
    """Deterministic REST request an envelope stands for. No I/O."""
    collection = _COLLECTIONS.get(envelope.entity_type, envelope.entity_type)
    ref = envelope.entity_id
    op = envelope.op

    if op == "delete":
        return RequestPreview("DELETE", f"{base}/{collection}/{ref}")
    if op in ("upsert", "update"):
        return RequestPreview("PUT", f"{base}/{collection}/{ref}")
    if op == "create":
        return RequestPreview("POST", f"{base}/{collection}")
    if op in _TRANSACTION_PATHS:
        return RequestPreview("POST", f"{base}/transactions/{_TRANSACTION_PATHS[op]}")
    if op == "upsert_customer":
        return RequestPreview("POST", f"{base}/customers")
    if op == "upsert_vendor":
        return RequestPreview("POST", f"{base}/vendors")
    if op == "upsert_many":
        return RequestPreview("POST", f"{base}/transactions/{ref}/items")
    if op == "adjust":
        return RequestPreview("POST", f"{base}/{collection}/{ref}/adjustments")
    if op == "record_payment":
        return RequestPreview("POST", f"{base}/{collection}/{ref}/payments")
    if op == "mark_done":
        return RequestPreview("POST", f"{base}/{collection}/{ref}/done")
    return RequestPreview("POST", f"{base}/{collection}/_unsupported_{op}")
