"""
Durable outbox of pending envelopes for one device.

The outbox is a SQLite file on the device. It stores every envelope that
must reach the server, in local creation order, together with its delivery
state. It survives process restarts; nothing is held only in memory.

Invariants:
    - FIFO by seq (local creation order)
    - Every state transition is a single SQLite transaction
    - reserve_batch() is the only way the dispatcher takes entries, so two
      concurrent reservations never select the same entry
    - An entry is withheld while an earlier entry for the same entity is in
      flight or waiting for its retry time, so per-entity order survives
      retries
    - mark_acked() is idempotent

How to change safely:
    - Schema changes need a SCHEMA_VERSION bump and an additive migration
    - Never hand entries to the network outside reserve_batch()
    - Test restart behavior by reopening the same file

Table schema:
    outbox:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT
        - op_id TEXT UNIQUE
        - entity_type TEXT, entity_id TEXT, op TEXT
        - envelope_json TEXT
        - state TEXT (PENDING | IN_FLIGHT | ACKED | FAILED_PERMANENT)
        - attempts INTEGER
        - created_at, last_attempt_at, next_retry_at, acked_at INTEGER (Unix ms)
        - last_error TEXT
        - server_version INTEGER (entity version reported on ack)

    sync_meta:
        - key TEXT PRIMARY KEY
        - value TEXT
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .envelope import Envelope, derive_entity_id, now_millis
from .errors import StorageError

logger = logging.getLogger(__name__)


class OutboxState(str, Enum):
    """Delivery state of an outbox entry."""

    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    ACKED = "ACKED"
    FAILED_PERMANENT = "FAILED_PERMANENT"


@dataclass
class OutboxEntry:
    """An envelope plus its delivery state.

    Attributes:
        seq: Position in local creation order
        envelope: The payload (immutable once created)
        state: Delivery state
        attempts: Delivery attempts made
        created_at: Enqueue time (Unix ms)
        last_attempt_at: Last send time (Unix ms)
        next_retry_at: Earliest next send time (Unix ms)
        last_error: Last observed failure reason
        acked_at: Confirmation time (Unix ms)
        server_version: Entity version the server reported on ack
    """

    seq: int
    envelope: Envelope
    state: OutboxState
    attempts: int = 0
    created_at: int = 0
    last_attempt_at: Optional[int] = None
    next_retry_at: int = 0
    last_error: Optional[str] = None
    acked_at: Optional[int] = None
    server_version: Optional[int] = None

    @property
    def op_id(self) -> str:
        return self.envelope.op_id


class OutboxStore:
    """SQLite-backed outbox.

    Thread safety:
        All operations run on the event loop thread and are serialized by
        an asyncio lock. SQLite transactions make each transition atomic
        with respect to other processes opening the same file.

    Example:
        >>> outbox = OutboxStore("/data/possync/outbox.db")
        >>> await outbox.initialize()
        >>> entry = await outbox.enqueue(envelope)
        >>> batch = await outbox.reserve_batch(20)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        """Initialize the outbox.

        Args:
            path: SQLite file path
            wal_mode: Enable SQLite WAL journal
            busy_timeout_ms: SQLite busy timeout
            clock: Millisecond clock (defaults to wall clock)
        """
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._clock = clock or now_millis
        self._lock = asyncio.Lock()
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection and run one IMMEDIATE transaction.

        Raises:
            StorageError: If SQLite fails for any reason
        """
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            raise StorageError(f"Outbox storage failure: {e}", path=str(self.path)) from e

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS outbox (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                op_id TEXT NOT NULL UNIQUE,
                entity_type TEXT NOT NULL,
                entity_id TEXT,
                op TEXT NOT NULL,
                envelope_json TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'PENDING',
                attempts INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                last_attempt_at INTEGER,
                next_retry_at INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                acked_at INTEGER,
                server_version INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_outbox_state ON outbox(state, seq);
            CREATE INDEX IF NOT EXISTS idx_outbox_entity ON outbox(entity_type, entity_id, seq);

            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            try:
                with self._get_connection() as conn:
                    self._create_schema(conn)
            except sqlite3.Error as e:
                raise StorageError(f"Cannot initialize outbox: {e}", path=str(self.path)) from e
            self._initialized = True
        logger.info("Outbox ready", extra={"path": str(self.path)})

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    # Writes

    async def enqueue(self, envelope: Envelope) -> OutboxEntry:
        """Append an envelope at the tail in PENDING state.

        The envelope is re-validated first, so a malformed envelope never
        enters the outbox. Enqueueing an opId that is already present
        returns the existing entry unchanged.

        Raises:
            DecodeError: If the envelope is malformed
            StorageError: If persistence fails
        """
        envelope = Envelope.from_dict(envelope.to_dict())
        await self._ensure_initialized()
        now = self._clock()

        async with self._lock:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO outbox
                        (op_id, entity_type, entity_id, op, envelope_json, state,
                         attempts, created_at, next_retry_at)
                    VALUES (?, ?, ?, ?, ?, 'PENDING', 0, ?, 0)
                    """,
                    (
                        envelope.op_id,
                        envelope.entity_type,
                        # Creates without an id are keyed by their derived id
                        envelope.entity_key[1],
                        envelope.op,
                        envelope.to_json(),
                        now,
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM outbox WHERE op_id = ?", (envelope.op_id,)
                ).fetchone()

        entry = self._row_to_entry(row)
        logger.debug(
            "Enqueued envelope",
            extra={
                "op_id": envelope.op_id,
                "entity_type": envelope.entity_type,
                "entity_id": envelope.entity_id,
                "op": envelope.op,
                "seq": entry.seq,
            },
        )
        return entry

    async def reserve_batch(self, max_count: int, now: Optional[int] = None) -> list[OutboxEntry]:
        """Select due entries and mark them IN_FLIGHT in one transaction.

        Args:
            max_count: Maximum entries to reserve
            now: Current time (Unix ms), defaults to the store clock

        Returns:
            Reserved entries, oldest first
        """
        await self._ensure_initialized()
        now = self._clock() if now is None else now

        async with self._lock:
            with self._transaction() as conn:
                rows = self._select_ready(conn, max_count, now)
                for row in rows:
                    conn.execute(
                        """
                        UPDATE outbox SET state = 'IN_FLIGHT', last_attempt_at = ?
                        WHERE seq = ? AND state = 'PENDING'
                        """,
                        (now, row["seq"]),
                    )
                seqs = [row["seq"] for row in rows]
                reserved = self._fetch_by_seq(conn, seqs)

        return reserved

    async def mark_in_flight(self, op_ids: Iterable[str]) -> list[str]:
        """Move PENDING entries to IN_FLIGHT.

        Returns:
            The op ids that actually transitioned
        """
        await self._ensure_initialized()
        now = self._clock()
        moved = []
        async with self._lock:
            with self._transaction() as conn:
                for op_id in op_ids:
                    cursor = conn.execute(
                        """
                        UPDATE outbox SET state = 'IN_FLIGHT', last_attempt_at = ?
                        WHERE op_id = ? AND state = 'PENDING'
                        """,
                        (now, op_id),
                    )
                    if cursor.rowcount > 0:
                        moved.append(op_id)
        return moved

    async def mark_acked(
        self,
        op_ids: Iterable[str],
        versions: Optional[dict[str, int]] = None,
    ) -> int:
        """Mark entries confirmed by the server.

        Safe to call for entries that are already ACKED (no-op).

        Args:
            op_ids: Confirmed operation ids
            versions: Optional entity versions reported by the server

        Returns:
            Number of entries that transitioned
        """
        await self._ensure_initialized()
        versions = versions or {}
        now = self._clock()
        changed = 0
        async with self._lock:
            with self._transaction() as conn:
                for op_id in op_ids:
                    cursor = conn.execute(
                        """
                        UPDATE outbox
                        SET state = 'ACKED', acked_at = ?, last_error = NULL,
                            server_version = COALESCE(?, server_version)
                        WHERE op_id = ? AND state != 'ACKED'
                        """,
                        (now, versions.get(op_id), op_id),
                    )
                    changed += cursor.rowcount
        return changed

    async def mark_failed(self, op_id: str, reason: str) -> bool:
        """Move an entry to FAILED_PERMANENT.

        Returns:
            True if the entry transitioned
        """
        await self._ensure_initialized()
        async with self._lock:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE outbox
                    SET state = 'FAILED_PERMANENT', last_error = ?,
                        attempts = attempts + CASE WHEN state = 'IN_FLIGHT' THEN 1 ELSE 0 END
                    WHERE op_id = ? AND state != 'ACKED'
                    """,
                    (reason, op_id),
                )
                changed = cursor.rowcount > 0

        if changed:
            logger.warning(
                "Envelope failed permanently",
                extra={"op_id": op_id, "reason": reason},
            )
        return changed

    async def mark_retry(self, op_id: str, reason: str, next_retry_at: int) -> bool:
        """Return an IN_FLIGHT entry to PENDING after a retryable failure.

        Increments attempts and schedules the next send.
        """
        await self._ensure_initialized()
        async with self._lock:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE outbox
                    SET state = 'PENDING', attempts = attempts + 1,
                        last_error = ?, next_retry_at = ?
                    WHERE op_id = ? AND state = 'IN_FLIGHT'
                    """,
                    (reason, next_retry_at, op_id),
                )
                return cursor.rowcount > 0

    async def release(
        self,
        op_ids: Iterable[str],
        reason: Optional[str] = None,
        next_retry_at: Optional[int] = None,
        count_attempt: bool = True,
    ) -> int:
        """Return IN_FLIGHT entries to PENDING as a group.

        Used when a transport call fails as a whole or is cancelled: each
        entry is charged at most one attempt.

        Returns:
            Number of entries released
        """
        await self._ensure_initialized()
        retry_at = next_retry_at if next_retry_at is not None else 0
        increment = 1 if count_attempt else 0
        released = 0
        async with self._lock:
            with self._transaction() as conn:
                for op_id in op_ids:
                    cursor = conn.execute(
                        """
                        UPDATE outbox
                        SET state = 'PENDING', attempts = attempts + ?,
                            last_error = COALESCE(?, last_error), next_retry_at = ?
                        WHERE op_id = ? AND state = 'IN_FLIGHT'
                        """,
                        (increment, reason, retry_at, op_id),
                    )
                    released += cursor.rowcount
        return released

    async def recover_in_flight(self) -> int:
        """Revert every IN_FLIGHT entry to PENDING.

        Called at startup and teardown: an entry left IN_FLIGHT by a crash
        or an aborted send has an unknown outcome, and resending it is safe
        because the server applies each opId once.
        """
        await self._ensure_initialized()
        async with self._lock:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "UPDATE outbox SET state = 'PENDING' WHERE state = 'IN_FLIGHT'"
                )
                recovered = cursor.rowcount

        if recovered:
            logger.info("Recovered in-flight envelopes", extra={"count": recovered})
        return recovered

    async def retry_failed(self, op_id: Optional[str] = None) -> int:
        """Re-queue FAILED_PERMANENT entries (one, or all).

        Resets attempts and the last error; the envelope itself is unchanged.
        """
        await self._ensure_initialized()
        query = """
            UPDATE outbox SET state = 'PENDING', attempts = 0, last_error = NULL,
                next_retry_at = 0
            WHERE state = 'FAILED_PERMANENT'
        """
        params: tuple[Any, ...] = ()
        if op_id is not None:
            query += " AND op_id = ?"
            params = (op_id,)

        async with self._lock:
            with self._transaction() as conn:
                return conn.execute(query, params).rowcount

    async def clear_failed(self, op_id: Optional[str] = None) -> int:
        """Delete FAILED_PERMANENT entries after they have been inspected."""
        await self._ensure_initialized()
        query = "DELETE FROM outbox WHERE state = 'FAILED_PERMANENT'"
        params: tuple[Any, ...] = ()
        if op_id is not None:
            query += " AND op_id = ?"
            params = (op_id,)

        async with self._lock:
            with self._transaction() as conn:
                return conn.execute(query, params).rowcount

    async def purge_acked(self, older_than_ms: int = 0, now: Optional[int] = None) -> int:
        """Garbage-collect ACKED entries confirmed more than older_than_ms ago."""
        await self._ensure_initialized()
        now = self._clock() if now is None else now
        async with self._lock:
            with self._transaction() as conn:
                return conn.execute(
                    "DELETE FROM outbox WHERE state = 'ACKED' AND acked_at <= ?",
                    (now - older_than_ms,),
                ).rowcount

    # Reads

    async def peek_batch(self, max_count: int, now: Optional[int] = None) -> list[OutboxEntry]:
        """Return up to max_count due PENDING entries, oldest first.

        Does not change any state.
        """
        await self._ensure_initialized()
        now = self._clock() if now is None else now
        async with self._lock:
            with self._transaction() as conn:
                rows = self._select_ready(conn, max_count, now)
        return [self._row_to_entry(row) for row in rows]

    async def get(self, op_id: str) -> Optional[OutboxEntry]:
        await self._ensure_initialized()
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM outbox WHERE op_id = ?", (op_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    async def count(self, state: Optional[OutboxState] = None) -> int:
        """Count entries, optionally in one state."""
        await self._ensure_initialized()
        with self._get_connection() as conn:
            if state is None:
                cursor = conn.execute("SELECT COUNT(*) FROM outbox")
            else:
                cursor = conn.execute(
                    "SELECT COUNT(*) FROM outbox WHERE state = ?", (OutboxState(state).value,)
                )
            return cursor.fetchone()[0]

    async def pending_count(self) -> int:
        """Entries not yet confirmed and not failed (the backlog indicator)."""
        await self._ensure_initialized()
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM outbox WHERE state IN ('PENDING', 'IN_FLIGHT')"
            )
            return cursor.fetchone()[0]

    async def oldest_pending_age_ms(self, now: Optional[int] = None) -> Optional[int]:
        """Age of the oldest unconfirmed entry, or None when the backlog is empty."""
        await self._ensure_initialized()
        now = self._clock() if now is None else now
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MIN(created_at) FROM outbox WHERE state IN ('PENDING', 'IN_FLIGHT')"
            ).fetchone()
        if row is None or row[0] is None:
            return None
        return max(0, now - row[0])

    async def next_due_at(self, now: Optional[int] = None) -> Optional[int]:
        """Earliest future next_retry_at among PENDING entries, or None."""
        await self._ensure_initialized()
        now = self._clock() if now is None else now
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MIN(next_retry_at) FROM outbox WHERE state = 'PENDING' AND next_retry_at > ?",
                (now,),
            ).fetchone()
        return row[0] if row else None

    async def list_entries(
        self,
        state: Optional[OutboxState] = None,
        limit: int = 100,
    ) -> list[OutboxEntry]:
        """List entries oldest first, optionally filtered by state."""
        await self._ensure_initialized()
        with self._get_connection() as conn:
            if state is None:
                cursor = conn.execute("SELECT * FROM outbox ORDER BY seq LIMIT ?", (limit,))
            else:
                cursor = conn.execute(
                    "SELECT * FROM outbox WHERE state = ? ORDER BY seq LIMIT ?",
                    (OutboxState(state).value, limit),
                )
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    async def entries_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        states: Optional[Iterable[OutboxState]] = None,
    ) -> list[OutboxEntry]:
        """Entries targeting one entity, oldest first."""
        await self._ensure_initialized()
        query = "SELECT * FROM outbox WHERE entity_type = ? AND entity_id = ?"
        params: list[Any] = [entity_type, entity_id]
        if states is not None:
            names = [OutboxState(s).value for s in states]
            query += f" AND state IN ({', '.join('?' for _ in names)})"
            params.extend(names)
        query += " ORDER BY seq"

        with self._get_connection() as conn:
            return [self._row_to_entry(row) for row in conn.execute(query, params).fetchall()]

    async def pending_for_entity(self, entity_type: str, entity_id: str) -> list[OutboxEntry]:
        """Unconfirmed entries (PENDING or IN_FLIGHT) targeting one entity."""
        return await self.entries_for_entity(
            entity_type, entity_id, states=(OutboxState.PENDING, OutboxState.IN_FLIGHT)
        )

    async def unsynced_entity_ids(self, entity_type: str) -> list[str]:
        """Ids of entities of one type with changes not yet confirmed.

        The UI uses this to badge rows that exist only on this device.
        """
        await self._ensure_initialized()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT DISTINCT entity_id FROM outbox
                WHERE state != 'ACKED' AND entity_type = ? AND entity_id IS NOT NULL
                ORDER BY entity_id
                """,
                (entity_type,),
            )
            return [row[0] for row in cursor.fetchall()]

    # Metadata

    async def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        await self._ensure_initialized()
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else default

    async def set_meta(self, key: str, value: str) -> None:
        await self._ensure_initialized()
        async with self._lock:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)",
                    (key, value),
                )

    async def get_or_create_device_id(self) -> str:
        """Stable device id, generated once per install and never reused."""
        await self._ensure_initialized()
        async with self._lock:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO sync_meta (key, value) VALUES ('device_id', ?)",
                    (str(uuid.uuid4()),),
                )
                row = conn.execute(
                    "SELECT value FROM sync_meta WHERE key = 'device_id'"
                ).fetchone()
        return row[0]

    # Internals

    def _select_ready(
        self,
        conn: sqlite3.Connection,
        max_count: int,
        now: int,
    ) -> list[sqlite3.Row]:
        """Pick due PENDING rows in seq order, respecting per-entity order."""
        if max_count <= 0:
            return []

        cursor = conn.execute(
            "SELECT * FROM outbox WHERE state IN ('PENDING', 'IN_FLIGHT') ORDER BY seq"
        )
        blocked: set[tuple[str, str]] = set()
        selected: list[sqlite3.Row] = []

        for row in cursor:
            key = (row["entity_type"], row["entity_id"] or derive_entity_id(row["op_id"]))
            if key in blocked:
                continue

            due = row["state"] == OutboxState.PENDING.value and row["next_retry_at"] <= now
            if not due:
                blocked.add(key)
                continue

            selected.append(row)
            if len(selected) >= max_count:
                break

        return selected

    def _fetch_by_seq(self, conn: sqlite3.Connection, seqs: list[int]) -> list[OutboxEntry]:
        if not seqs:
            return []
        placeholders = ", ".join("?" for _ in seqs)
        cursor = conn.execute(
            f"SELECT * FROM outbox WHERE seq IN ({placeholders}) ORDER BY seq", seqs
        )
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def _row_to_entry(self, row: sqlite3.Row) -> OutboxEntry:
        data = json.loads(row["envelope_json"])
        envelope = Envelope(
            device_id=data["deviceId"],
            op_id=data["opId"],
            sent_at_millis=data.get("sentAtMillis", 0),
            entity_type=data["entityType"],
            entity_id=data.get("entityId"),
            op=data["op"],
            body=data.get("body") or {},
            api_version=data.get("apiVersion", 1),
        )
        return OutboxEntry(
            seq=row["seq"],
            envelope=envelope,
            state=OutboxState(row["state"]),
            attempts=row["attempts"],
            created_at=row["created_at"],
            last_attempt_at=row["last_attempt_at"],
            next_retry_at=row["next_retry_at"],
            last_error=row["last_error"],
            acked_at=row["acked_at"],
            server_version=row["server_version"],
        )
