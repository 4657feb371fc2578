"""
Device-side local state the sync engine writes into.

The application owns its local database; the sync engine only needs the
narrow LocalStore interface below. InMemoryLocalStore is a complete
reference implementation used by tests, demos and the CLI.

Invariants:
    - apply_locally() applies the same mutation effects as the server
    - put_state() replaces state wholesale and records the server version
    - apply_locally() never changes the recorded server version
    - restore() puts back exactly what get() returned
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Protocol

from .effects import EntityState, apply_effect


@dataclass
class LocalRecord:
    """Local copy of one entity.

    Attributes:
        data: Field values (server state plus unconfirmed local effects)
        version: Last server version incorporated, None if never synced
        deleted: Tombstone flag
    """

    data: dict[str, Any] = field(default_factory=dict)
    version: int | None = None
    deleted: bool = False


class LocalStore(Protocol):
    """What the sync engine needs from the application's local store."""

    async def apply_locally(
        self,
        entity_type: str,
        op: str,
        entity_id: str,
        body: dict[str, Any],
    ) -> None:
        """Apply an operation optimistically.

        Raises:
            MissingDependencyError: If the op needs an entity that isn't there
            PermanentApplicationError: If the op conflicts with local state
        """
        ...

    async def put_state(
        self,
        entity_type: str,
        entity_id: str,
        data: dict[str, Any],
        version: int,
        deleted: bool = False,
    ) -> None:
        """Replace an entity with server state."""
        ...

    async def get_version(self, entity_type: str, entity_id: str) -> int | None: ...

    async def get(self, entity_type: str, entity_id: str) -> LocalRecord | None: ...

    async def restore(
        self, entity_type: str, entity_id: str, record: LocalRecord | None
    ) -> None:
        """Put back a record read with get(); None removes the entity."""
        ...


class InMemoryLocalStore:
    """Dict-backed LocalStore.

    Example:
        >>> store = InMemoryLocalStore()
        >>> await store.put_state("item", "I1", {"name": "Soap", "stock": 10}, version=1)
        >>> await store.apply_locally("item", "adjust", "I1", {"delta": -2})
        >>> (await store.get("item", "I1")).data["stock"]
        8
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], LocalRecord] = {}
        self._lock = asyncio.Lock()

    async def apply_locally(
        self,
        entity_type: str,
        op: str,
        entity_id: str,
        body: dict[str, Any],
    ) -> None:
        async with self._lock:
            key = (entity_type, entity_id)
            record = self._records.get(key)
            current = EntityState(data=record.data, deleted=record.deleted) if record else None
            new_state = apply_effect(entity_type, op, entity_id, current, body)
            self._records[key] = LocalRecord(
                data=new_state.data,
                version=record.version if record else None,
                deleted=new_state.deleted,
            )

    async def put_state(
        self,
        entity_type: str,
        entity_id: str,
        data: dict[str, Any],
        version: int,
        deleted: bool = False,
    ) -> None:
        async with self._lock:
            self._records[(entity_type, entity_id)] = LocalRecord(
                data=copy.deepcopy(data), version=version, deleted=deleted
            )

    async def get_version(self, entity_type: str, entity_id: str) -> int | None:
        record = self._records.get((entity_type, entity_id))
        return record.version if record else None

    async def get(self, entity_type: str, entity_id: str) -> LocalRecord | None:
        record = self._records.get((entity_type, entity_id))
        return copy.deepcopy(record) if record else None

    async def restore(
        self, entity_type: str, entity_id: str, record: LocalRecord | None
    ) -> None:
        async with self._lock:
            key = (entity_type, entity_id)
            if record is None:
                self._records.pop(key, None)
            else:
                self._records[key] = copy.deepcopy(record)

    def snapshot(self) -> dict[tuple[str, str], LocalRecord]:
        """Copy of every record (tests compare devices with this)."""
        return copy.deepcopy(self._records)
