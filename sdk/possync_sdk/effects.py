"""
Mutation semantics shared by the server and the device.

apply_effect() computes the state of an entity after one operation. The
apply engine uses it against canonical storage, the device uses it against
its local mirror, and the reconciler uses it to rebase unconfirmed local
operations on top of server state. Keeping one implementation means a
device's optimistic state and the server's canonical state cannot drift
apart for the same sequence of operations.

Invariants:
    - Pure function: no I/O, inputs are not mutated
    - Deletion is a tombstone (deleted=True) so the change feed can carry it
    - Operations that need an existing target raise MissingDependencyError
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import MissingDependencyError, PermanentApplicationError
from .payloads import OpKind

TRANSACTION_KINDS = {
    OpKind.CREATE_SALE: "SALE",
    OpKind.CREATE_PAYMENT: "PAYMENT",
    OpKind.CREATE_VENDOR_PURCHASE: "VENDOR_PURCHASE",
    OpKind.CREATE_EXPENSE: "EXPENSE",
}


@dataclass
class EntityState:
    """Entity state produced by an operation.

    Attributes:
        data: Field values (empty for a tombstone without history)
        deleted: Whether the entity is tombstoned
    """

    data: dict[str, Any] = field(default_factory=dict)
    deleted: bool = False


def apply_effect(
    entity_type: str,
    op: str,
    entity_id: Optional[str],
    current: Optional[EntityState],
    body: dict[str, Any],
) -> EntityState:
    """Compute the entity state after applying one operation.

    Args:
        entity_type: Target aggregate
        op: Operation kind
        entity_id: Target entity id
        current: Current state, or None if the entity never existed
        body: Canonical body

    Returns:
        New EntityState

    Raises:
        MissingDependencyError: If the op needs an existing entity
        PermanentApplicationError: If the op conflicts with current state
    """
    kind = OpKind(op)
    live = current is not None and not current.deleted
    existing = dict(current.data) if live else {}

    if kind in TRANSACTION_KINDS or kind == OpKind.CREATE:
        if live:
            raise PermanentApplicationError(
                f"{entity_type} id={entity_id} already exists",
                details={"entity_type": entity_type, "entity_id": entity_id},
            )
        data = dict(body)
        if kind in TRANSACTION_KINDS:
            data["type"] = TRANSACTION_KINDS[kind]
        return EntityState(data=data)

    if kind in (OpKind.UPSERT, OpKind.UPSERT_MANY):
        return EntityState(data=dict(body))

    if kind in (OpKind.UPSERT_CUSTOMER, OpKind.UPSERT_VENDOR):
        data = {**existing, **body}
        data["type"] = "CUSTOMER" if kind == OpKind.UPSERT_CUSTOMER else "VENDOR"
        data.setdefault("balance", 0.0)
        return EntityState(data=data)

    if kind == OpKind.DELETE:
        previous = dict(current.data) if current is not None else {}
        return EntityState(data=previous, deleted=True)

    if not live:
        raise MissingDependencyError(entity_type, entity_id)

    if kind == OpKind.UPDATE:
        return EntityState(data={**existing, **body})

    if kind == OpKind.ADJUST:
        existing["stock"] = int(existing.get("stock", 0)) + int(body["delta"])
        return EntityState(data=existing)

    if kind == OpKind.RECORD_PAYMENT:
        balance = float(existing.get("balance", 0.0)) - float(body["amount"])
        existing["balance"] = round(balance, 2)
        return EntityState(data=existing)

    if kind == OpKind.MARK_DONE:
        existing["done"] = True
        return EntityState(data=existing)

    raise PermanentApplicationError(f"No effect defined for {entity_type}/{op}")
