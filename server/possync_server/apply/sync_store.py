"""
Canonical per-store SQLite database for possync.

One SQLite file per operator store holds:
- Entities with their full current state and version
- The applied-operations ledger (idempotency)
- The change log that feeds device catch-up

apply_envelope() is the atomic check-and-apply: the ledger lookup, the
entity write, the ledger row and the change-log row happen in a single
BEGIN IMMEDIATE transaction, and op_id is the ledger's primary key. Two
concurrent deliveries of the same opId therefore produce exactly one
application; the loser sees a replay.

Invariants:
    - One SQLite file per store
    - Every state change is one transaction
    - applied_ops only ever holds successfully applied operations
    - change_log.seq is strictly increasing per store
    - Entity version increases by exactly 1 per applied operation

How to change safely:
    - Schema migrations must be additive and bump SCHEMA_VERSION
    - Never write entities outside apply_envelope()
    - Test duplicate delivery with concurrent apply_envelope() calls

Table schema:
    entities:
        - entity_type TEXT
        - entity_id TEXT
        - data_json TEXT
        - version INTEGER
        - deleted INTEGER (0/1)
        - created_at, updated_at INTEGER (Unix ms)
        - last_op_id TEXT, last_device_id TEXT
        - PRIMARY KEY (entity_type, entity_id)

    applied_ops:
        - op_id TEXT PRIMARY KEY
        - device_id TEXT
        - entity_type TEXT, entity_id TEXT, op TEXT
        - version INTEGER (entity version after this op)
        - seq INTEGER (change_log position)
        - applied_at INTEGER (Unix ms)

    change_log:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT
        - entity_type, entity_id, op, op_id, device_id TEXT
        - version INTEGER
        - data_json TEXT (full state after the op)
        - deleted INTEGER
        - applied_at INTEGER
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from possync_sdk.effects import EntityState, apply_effect
from possync_sdk.envelope import Envelope, derive_entity_id
from possync_sdk.errors import (
    MissingDependencyError,
    PermanentApplicationError,
    StorageError,
)
from possync_sdk.feed import ChangeRecord
from possync_sdk.payloads import Reference, get_variant, parse_body

logger = logging.getLogger(__name__)


class StoreNotFoundError(Exception):
    """Store database does not exist."""

    pass


@dataclass
class StoredEntity:
    """Current canonical state of one entity.

    Attributes:
        entity_type: Aggregate
        entity_id: Entity id
        data: Field values
        version: Number of operations applied to it
        deleted: Tombstone flag
        created_at: First application time (Unix ms)
        updated_at: Last application time (Unix ms)
        last_op_id: opId of the last applied op
        last_device_id: Device of the last applied op
    """

    entity_type: str
    entity_id: str
    data: dict[str, Any]
    version: int
    deleted: bool
    created_at: int
    updated_at: int
    last_op_id: str | None = None
    last_device_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "data": self.data,
            "version": self.version,
            "deleted": self.deleted,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class AppliedOp:
    """Outcome of SyncStore.apply_envelope().

    Attributes:
        op_id: The operation
        entity_id: Resolved entity id
        version: Entity version after the op
        replay: True if the op was already in the ledger
        change: Change record written for a fresh application
    """

    op_id: str
    entity_id: str | None
    version: int | None
    replay: bool = False
    change: ChangeRecord | None = None


@dataclass
class LedgerEntry:
    """One row of the applied-operations ledger."""

    op_id: str
    device_id: str
    entity_type: str
    entity_id: str
    op: str
    version: int
    seq: int
    applied_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "opId": self.op_id,
            "deviceId": self.device_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "op": self.op,
            "version": self.version,
            "seq": self.seq,
            "appliedAt": self.applied_at,
        }


class SyncStore:
    """Per-store SQLite database with the atomic check-and-apply.

    Thread safety:
        A connection is created per operation. Writes run in worker threads
        (asyncio.to_thread) so operations on distinct entities proceed in
        parallel; SQLite's write lock plus BEGIN IMMEDIATE serializes the
        check-and-apply itself.

    Example:
        >>> store = SyncStore("/var/lib/possync")
        >>> applied = await store.apply_envelope("A1", envelope)
        >>> applied.replay
        False
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._initialized: set[str] = set()
        self._lock = asyncio.Lock()

    def _get_db_path(self, store_id: str) -> Path:
        # Distinct ids must never share a file, so nothing is stripped
        if not store_id or not all((c.isascii() and c.isalnum()) or c in "-_" for c in store_id):
            raise ValueError(f"Invalid store id: {store_id!r}")
        return self.data_dir / f"store_{store_id}.db"

    @contextmanager
    def _get_connection(self, store_id: str, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection for a store.

        Raises:
            StoreNotFoundError: If the database doesn't exist and create=False
        """
        db_path = self._get_db_path(store_id)
        if not create and not db_path.exists():
            raise StoreNotFoundError(f"Store database not found: {store_id}")

        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entities (
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                last_op_id TEXT,
                last_device_id TEXT,
                PRIMARY KEY (entity_type, entity_id)
            );

            CREATE TABLE IF NOT EXISTS applied_ops (
                op_id TEXT PRIMARY KEY,
                device_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                op TEXT NOT NULL,
                version INTEGER NOT NULL,
                seq INTEGER NOT NULL,
                applied_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_applied_ops_device ON applied_ops(device_id, applied_at);

            CREATE TABLE IF NOT EXISTS change_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                op TEXT NOT NULL,
                op_id TEXT NOT NULL,
                device_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                data_json TEXT NOT NULL,
                deleted INTEGER NOT NULL DEFAULT 0,
                applied_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_change_log_entity
                ON change_log(entity_type, entity_id, seq);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize_store(self, store_id: str) -> None:
        """Create the store database and schema if they don't exist."""
        async with self._lock:
            if store_id in self._initialized:
                return
            try:
                with self._get_connection(store_id, create=True) as conn:
                    self._create_schema(conn)
            except sqlite3.Error as e:
                raise StorageError(f"Cannot initialize store {store_id}: {e}") from e
            self._initialized.add(store_id)
        logger.info("Initialized store database", extra={"store_id": store_id})

    async def store_exists(self, store_id: str) -> bool:
        return self._get_db_path(store_id).exists()

    def list_stores(self) -> list[str]:
        if not self.data_dir.exists():
            return []
        return sorted(p.stem[len("store_"):] for p in self.data_dir.glob("store_*.db"))

    # Check-and-apply

    async def apply_envelope(self, store_id: str, envelope: Envelope) -> AppliedOp:
        """Apply one envelope exactly once.

        Args:
            store_id: Operator store
            envelope: Validated envelope

        Returns:
            AppliedOp (replay=True if the opId was already applied)

        Raises:
            MissingDependencyError: If the target or a referenced entity is absent
            PermanentApplicationError: If the op breaks a business rule
            StorageError: If SQLite fails
        """
        await self.initialize_store(store_id)
        return await asyncio.to_thread(self._apply_sync, store_id, envelope)

    def _apply_sync(self, store_id: str, envelope: Envelope) -> AppliedOp:
        now = int(time.time() * 1000)
        try:
            with self._get_connection(store_id) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    replay = self._lookup_ledger(conn, envelope.op_id)
                    if replay is not None:
                        conn.execute("ROLLBACK")
                        return replay

                    applied = self._apply_in_transaction(conn, envelope, now)
                    conn.execute("COMMIT")
                    return applied
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.IntegrityError as e:
            # A concurrent delivery of the same opId won the race
            replay = self._replay_after_conflict(store_id, envelope.op_id)
            if replay is not None:
                return replay
            raise StorageError(f"Integrity failure applying opId={envelope.op_id}: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(f"Storage failure applying opId={envelope.op_id}: {e}") from e

    def _lookup_ledger(self, conn: sqlite3.Connection, op_id: str) -> AppliedOp | None:
        row = conn.execute(
            "SELECT entity_id, version FROM applied_ops WHERE op_id = ?", (op_id,)
        ).fetchone()
        if row is None:
            return None
        return AppliedOp(
            op_id=op_id, entity_id=row["entity_id"], version=row["version"], replay=True
        )

    def _replay_after_conflict(self, store_id: str, op_id: str) -> AppliedOp | None:
        with self._get_connection(store_id) as conn:
            return self._lookup_ledger(conn, op_id)

    def _apply_in_transaction(
        self,
        conn: sqlite3.Connection,
        envelope: Envelope,
        now: int,
    ) -> AppliedOp:
        entity_type = envelope.entity_type
        entity_id = envelope.entity_id or derive_entity_id(envelope.op_id)

        variant = get_variant(entity_type, envelope.op)
        body = parse_body(entity_type, envelope.op, envelope.body)
        if variant.owner_type is not None:
            self._check_reference(conn, Reference(variant.owner_type, entity_id))
        for ref in body.references():
            self._check_reference(conn, ref)

        row = conn.execute(
            "SELECT * FROM entities WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        ).fetchone()
        current = None
        if row is not None:
            current = EntityState(data=json.loads(row["data_json"]), deleted=bool(row["deleted"]))

        new_state = apply_effect(entity_type, envelope.op, entity_id, current, envelope.body)
        version = (row["version"] if row is not None else 0) + 1
        data_json = json.dumps(new_state.data)
        created_at = row["created_at"] if row is not None else now

        conn.execute(
            """
            INSERT OR REPLACE INTO entities
                (entity_type, entity_id, data_json, version, deleted,
                 created_at, updated_at, last_op_id, last_device_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity_type,
                entity_id,
                data_json,
                version,
                int(new_state.deleted),
                created_at,
                now,
                envelope.op_id,
                envelope.device_id,
            ),
        )

        cursor = conn.execute(
            """
            INSERT INTO change_log
                (entity_type, entity_id, op, op_id, device_id, version,
                 data_json, deleted, applied_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entity_type,
                entity_id,
                envelope.op,
                envelope.op_id,
                envelope.device_id,
                version,
                data_json,
                int(new_state.deleted),
                now,
            ),
        )
        seq = cursor.lastrowid

        conn.execute(
            """
            INSERT INTO applied_ops
                (op_id, device_id, entity_type, entity_id, op, version, seq, applied_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                envelope.op_id,
                envelope.device_id,
                entity_type,
                entity_id,
                envelope.op,
                version,
                seq,
                now,
            ),
        )

        change = ChangeRecord(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            version=version,
            op=envelope.op,
            op_id=envelope.op_id,
            device_id=envelope.device_id,
            data=new_state.data,
            deleted=new_state.deleted,
            applied_at=now,
        )
        return AppliedOp(
            op_id=envelope.op_id, entity_id=entity_id, version=version, change=change
        )

    def _check_reference(self, conn: sqlite3.Connection, ref: Reference) -> None:
        entity_type = ref.entity_type.value
        row = conn.execute(
            "SELECT data_json, deleted FROM entities WHERE entity_type = ? AND entity_id = ?",
            (entity_type, ref.entity_id),
        ).fetchone()
        if row is None or row["deleted"]:
            raise MissingDependencyError(entity_type, ref.entity_id)

        if ref.party_type is not None:
            actual = json.loads(row["data_json"]).get("type")
            if actual != ref.party_type:
                raise PermanentApplicationError(
                    f"{entity_type} id={ref.entity_id} is not a {ref.party_type}",
                    details={"entity_id": ref.entity_id, "expected": ref.party_type, "actual": actual},
                )

    # Reads

    async def get_entity(self, store_id: str, entity_type: str, entity_id: str) -> StoredEntity | None:
        if not await self.store_exists(store_id):
            return None
        with self._get_connection(store_id) as conn:
            row = conn.execute(
                "SELECT * FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            ).fetchone()
        if row is None:
            return None
        return StoredEntity(
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            data=json.loads(row["data_json"]),
            version=row["version"],
            deleted=bool(row["deleted"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_op_id=row["last_op_id"],
            last_device_id=row["last_device_id"],
        )

    async def get_ledger_entry(self, store_id: str, op_id: str) -> LedgerEntry | None:
        if not await self.store_exists(store_id):
            return None
        with self._get_connection(store_id) as conn:
            row = conn.execute("SELECT * FROM applied_ops WHERE op_id = ?", (op_id,)).fetchone()
        if row is None:
            return None
        return LedgerEntry(
            op_id=row["op_id"],
            device_id=row["device_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            op=row["op"],
            version=row["version"],
            seq=row["seq"],
            applied_at=row["applied_at"],
        )

    async def fetch_changes(self, store_id: str, since: int, limit: int) -> list[ChangeRecord]:
        """Change records with seq > since, oldest first."""
        if not await self.store_exists(store_id):
            return []
        with self._get_connection(store_id) as conn:
            cursor = conn.execute(
                "SELECT * FROM change_log WHERE seq > ? ORDER BY seq LIMIT ?",
                (since, limit),
            )
            return [self._row_to_change(row) for row in cursor.fetchall()]

    async def latest_seq(self, store_id: str) -> int:
        if not await self.store_exists(store_id):
            return 0
        with self._get_connection(store_id) as conn:
            row = conn.execute("SELECT MAX(seq) FROM change_log").fetchone()
        return row[0] or 0

    async def get_stats(self, store_id: str) -> dict[str, int]:
        """Get store statistics.

        Raises:
            StoreNotFoundError: If the store has no database yet
        """
        with self._get_connection(store_id) as conn:
            entities = conn.execute(
                "SELECT COUNT(*) FROM entities WHERE deleted = 0"
            ).fetchone()[0]
            tombstones = conn.execute(
                "SELECT COUNT(*) FROM entities WHERE deleted = 1"
            ).fetchone()[0]
            applied = conn.execute("SELECT COUNT(*) FROM applied_ops").fetchone()[0]
            latest = conn.execute("SELECT MAX(seq) FROM change_log").fetchone()[0] or 0

        return {
            "entities": entities,
            "tombstones": tombstones,
            "applied_ops": applied,
            "latest_seq": latest,
        }

    def _row_to_change(self, row: sqlite3.Row) -> ChangeRecord:
        return ChangeRecord(
            seq=row["seq"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            version=row["version"],
            op=row["op"],
            op_id=row["op_id"],
            device_id=row["device_id"],
            data=json.loads(row["data_json"]),
            deleted=bool(row["deleted"]),
            applied_at=row["applied_at"],
        )
