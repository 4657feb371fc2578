"""
Typed envelope bodies for the possync protocol.

An envelope body is a tagged union keyed by (entityType, op). Each variant
is a pydantic model with its own strict field set; bodies are validated and
canonicalized when an envelope is encoded or decoded, never trusted opaquely
through to storage.

Canonical form:
    - camelCase keys (the wire contract)
    - numbers coerced to the declared type
    - nulls stripped
    - unknown fields rejected

Invariants:
    - Validation is deterministic: the same body always yields the same
      canonical dict or the same error list
    - Canonicalizing a canonical body is a no-op
    - Every (entityType, op) pair the apply engine understands is registered
      here, and nothing else is

How to change safely:
    - Add new ops as new variants; never change the meaning of an existing one
    - New optional fields are backward compatible, new required ones are not
"""

from __future__ import annotations

from dataclasses import dataclass
from difflib import get_close_matches
from enum import Enum
from typing import Annotated, Any, Literal, NamedTuple, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError


class EntityType(str, Enum):
    """Logical aggregates that can be synchronized."""

    ITEM = "item"
    PARTY = "party"
    TRANSACTION = "transaction"
    TRANSACTION_ITEM = "transaction_item"
    REMINDER = "reminder"


class OpKind(str, Enum):
    """Operation kinds. Extensible: add members together with a variant."""

    CREATE = "create"
    UPSERT = "upsert"
    UPDATE = "update"
    DELETE = "delete"
    ADJUST = "adjust"
    RECORD_PAYMENT = "record_payment"
    UPSERT_CUSTOMER = "upsert_customer"
    UPSERT_VENDOR = "upsert_vendor"
    CREATE_SALE = "create_sale"
    CREATE_PAYMENT = "create_payment"
    CREATE_VENDOR_PURCHASE = "create_vendor_purchase"
    CREATE_EXPENSE = "create_expense"
    UPSERT_MANY = "upsert_many"
    MARK_DONE = "mark_done"


CREATE_OPS = frozenset(
    {
        OpKind.CREATE,
        OpKind.CREATE_SALE,
        OpKind.CREATE_PAYMENT,
        OpKind.CREATE_VENDOR_PURCHASE,
        OpKind.CREATE_EXPENSE,
    }
)


def _coerce_id(value: Any) -> Any:
    # Local ids are integers on older devices; the wire form is always a string.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    return value


NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
EntityRef = Annotated[NonBlank, BeforeValidator(_coerce_id)]
PartyKind = Literal["CUSTOMER", "VENDOR"]


class Reference(NamedTuple):
    """An entity a body points at, checked by the apply engine."""

    entity_type: EntityType
    entity_id: str
    party_type: Optional[str] = None


class Body(BaseModel):
    """Base class for all body variants."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    def canonical(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def references(self) -> list[Reference]:
        return []


class Patch(Body):
    """A body with merge semantics. At least one field must be set."""

    @model_validator(mode="after")
    def _not_empty(self) -> Patch:
        if not any(getattr(self, name) is not None for name in self.model_fields_set):
            raise ValueError("patch must set at least one field")
        return self


class EmptyBody(Body):
    pass


# Items


class ItemBody(Body):
    name: NonBlank
    category: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    cost_price: Optional[float] = Field(default=None, ge=0)
    stock: int = 0
    gst_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    reorder_point: int = 10
    vendor_id: Optional[EntityRef] = None
    rack_location: Optional[str] = None
    barcode: Optional[str] = None
    image_uri: Optional[str] = None
    expiry_date_millis: Optional[int] = Field(default=None, ge=0)

    def references(self) -> list[Reference]:
        if self.vendor_id is None:
            return []
        return [Reference(EntityType.PARTY, self.vendor_id, "VENDOR")]


class ItemPatch(Patch):
    name: Optional[NonBlank] = None
    category: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    cost_price: Optional[float] = Field(default=None, ge=0)
    gst_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    reorder_point: Optional[int] = None
    rack_location: Optional[str] = None
    barcode: Optional[str] = None
    image_uri: Optional[str] = None
    expiry_date_millis: Optional[int] = Field(default=None, ge=0)


class StockAdjustment(Body):
    delta: int
    reason: Optional[str] = None

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("delta must be non-zero")
        return value


# Parties


class PartyBody(Body):
    type: PartyKind
    name: NonBlank
    phone: NonBlank
    gst_number: Optional[str] = None
    balance: float = 0.0


class PartyContact(Body):
    name: NonBlank
    phone: NonBlank
    gst_number: Optional[str] = None


class PartyPatch(Patch):
    name: Optional[NonBlank] = None
    phone: Optional[NonBlank] = None
    gst_number: Optional[str] = None


class PaymentReceipt(Body):
    amount: float = Field(gt=0)
    mode: NonBlank
    note: Optional[str] = None


# Transactions


class LineItem(Body):
    item_id: Optional[EntityRef] = None
    name: Optional[str] = None
    qty: int = Field(gt=0)
    price: float = Field(ge=0)

    @model_validator(mode="after")
    def _item_or_name(self) -> LineItem:
        if self.item_id is None and not self.name:
            raise ValueError("line item needs itemId or name")
        return self


def _line_item_refs(items: list[LineItem]) -> list[Reference]:
    return [Reference(EntityType.ITEM, li.item_id) for li in items if li.item_id is not None]


class SaleBody(Body):
    payment_mode: NonBlank
    customer_id: Optional[EntityRef] = None
    amount: Optional[float] = Field(default=None, ge=0)
    items: list[LineItem] = Field(min_length=1)

    def references(self) -> list[Reference]:
        refs = _line_item_refs(self.items)
        if self.customer_id is not None:
            refs.insert(0, Reference(EntityType.PARTY, self.customer_id, "CUSTOMER"))
        return refs


class PaymentBody(Body):
    party_id: EntityRef
    party_type: Optional[PartyKind] = None
    amount: float = Field(gt=0)
    mode: NonBlank

    def references(self) -> list[Reference]:
        return [Reference(EntityType.PARTY, self.party_id, self.party_type)]


class VendorPurchaseBody(Body):
    vendor_id: EntityRef
    amount: float = Field(gt=0)
    mode: NonBlank
    note: Optional[str] = None

    def references(self) -> list[Reference]:
        return [Reference(EntityType.PARTY, self.vendor_id, "VENDOR")]


class ExpenseBody(Body):
    amount: float = Field(gt=0)
    mode: NonBlank
    vendor_id: Optional[EntityRef] = None
    category: Optional[str] = None
    description: Optional[str] = None

    def references(self) -> list[Reference]:
        if self.vendor_id is None:
            return []
        return [Reference(EntityType.PARTY, self.vendor_id, "VENDOR")]


class TransactionPatch(Patch):
    payment_mode: Optional[NonBlank] = None
    amount: Optional[float] = Field(default=None, ge=0)
    note: Optional[str] = None


class LineItems(Body):
    items: list[LineItem] = Field(default_factory=list)

    def references(self) -> list[Reference]:
        return _line_item_refs(self.items)


# Reminders


class ReminderBody(Body):
    type: NonBlank
    ref_id: Optional[EntityRef] = None
    title: NonBlank
    due_at: int = Field(ge=0)
    note: Optional[str] = None


@dataclass(frozen=True)
class BodyVariant:
    """One arm of the body union.

    Attributes:
        entity_type: Target aggregate
        op: Operation kind
        model: Pydantic model validating the body
        requires_entity_id: Whether the envelope must carry an entityId
        owner_type: Entity whose existence the target depends on
            (transaction_item rows belong to a transaction)
    """

    entity_type: EntityType
    op: OpKind
    model: type[Body]
    requires_entity_id: bool = True
    owner_type: Optional[EntityType] = None


_VARIANTS: dict[tuple[EntityType, OpKind], BodyVariant] = {}


def _register(
    entity_type: EntityType,
    op: OpKind,
    model: type[Body],
    owner_type: Optional[EntityType] = None,
) -> None:
    _VARIANTS[(entity_type, op)] = BodyVariant(
        entity_type=entity_type,
        op=op,
        model=model,
        requires_entity_id=op not in CREATE_OPS,
        owner_type=owner_type,
    )


_register(EntityType.ITEM, OpKind.CREATE, ItemBody)
_register(EntityType.ITEM, OpKind.UPSERT, ItemBody)
_register(EntityType.ITEM, OpKind.UPDATE, ItemPatch)
_register(EntityType.ITEM, OpKind.ADJUST, StockAdjustment)
_register(EntityType.ITEM, OpKind.DELETE, EmptyBody)

_register(EntityType.PARTY, OpKind.CREATE, PartyBody)
_register(EntityType.PARTY, OpKind.UPSERT, PartyBody)
_register(EntityType.PARTY, OpKind.UPSERT_CUSTOMER, PartyContact)
_register(EntityType.PARTY, OpKind.UPSERT_VENDOR, PartyContact)
_register(EntityType.PARTY, OpKind.UPDATE, PartyPatch)
_register(EntityType.PARTY, OpKind.RECORD_PAYMENT, PaymentReceipt)
_register(EntityType.PARTY, OpKind.DELETE, EmptyBody)

_register(EntityType.TRANSACTION, OpKind.CREATE_SALE, SaleBody)
_register(EntityType.TRANSACTION, OpKind.CREATE_PAYMENT, PaymentBody)
_register(EntityType.TRANSACTION, OpKind.CREATE_VENDOR_PURCHASE, VendorPurchaseBody)
_register(EntityType.TRANSACTION, OpKind.CREATE_EXPENSE, ExpenseBody)
_register(EntityType.TRANSACTION, OpKind.UPDATE, TransactionPatch)
_register(EntityType.TRANSACTION, OpKind.DELETE, EmptyBody)

_register(
    EntityType.TRANSACTION_ITEM,
    OpKind.UPSERT_MANY,
    LineItems,
    owner_type=EntityType.TRANSACTION,
)

_register(EntityType.REMINDER, OpKind.UPSERT, ReminderBody)
_register(EntityType.REMINDER, OpKind.MARK_DONE, EmptyBody)
_register(EntityType.REMINDER, OpKind.DELETE, EmptyBody)


def known_variants() -> list[tuple[str, str]]:
    """All registered (entityType, op) pairs, sorted."""
    return sorted((et.value, op.value) for et, op in _VARIANTS)


def get_variant(entity_type: str, op: str) -> BodyVariant:
    """Look up the body variant for an (entityType, op) pair.

    Raises:
        ValidationError: If the pair is not registered. The message suggests
            close matches for typos.
    """
    try:
        et = EntityType(entity_type)
    except ValueError:
        names = [e.value for e in EntityType]
        raise ValidationError(
            _with_suggestions(f"Unknown entityType '{entity_type}'", entity_type, names),
            field_name="entityType",
        )

    try:
        kind = OpKind(op)
    except ValueError:
        kind = None

    variant = _VARIANTS.get((et, kind)) if kind is not None else None
    if variant is None:
        ops = [o.value for (e, o) in _VARIANTS if e == et]
        raise ValidationError(
            _with_suggestions(f"Unknown op '{op}' for entityType '{et.value}'", op, ops),
            field_name="op",
        )
    return variant


def parse_body(entity_type: str, op: str, body: Optional[dict[str, Any]]) -> Body:
    """Validate a raw body against its variant.

    Args:
        entity_type: Envelope entityType
        op: Envelope op
        body: Raw body mapping (None is treated as empty)

    Returns:
        The validated variant model

    Raises:
        ValidationError: If the pair is unknown or the body is invalid
    """
    variant = get_variant(entity_type, op)
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise ValidationError(
            f"body must be an object, got {type(body).__name__}",
            field_name="body",
        )

    try:
        return variant.model.model_validate(body)
    except PydanticValidationError as e:
        errors = [_format_error(err) for err in e.errors()]
        raise ValidationError(
            f"Invalid body for {entity_type}/{op}: " + "; ".join(errors),
            field_name="body",
            errors=errors,
        )


def canonical_body(entity_type: str, op: str, body: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Validate a body and return its canonical wire form."""
    return parse_body(entity_type, op, body).canonical()


def _format_error(err: Any) -> str:
    loc = ".".join(str(part) for part in err.get("loc", ()))
    msg = err.get("msg", "invalid value")
    if loc:
        return f"Field '{loc}': {msg}"
    return msg


def _with_suggestions(message: str, value: str, candidates: list[str]) -> str:
    suggestions = get_close_matches(str(value), candidates, n=3)
    if suggestions:
        return f"{message}. Did you mean: {suggestions}?"
    return message
