"""Local state for the sync client.

This module provides:
- LocalStore: SQLite mirror of the syncable records plus sync bookkeeping
- LocalRecord: A record as held on the device

Architecture:
    Record bodies are stored as JSON, keyed by (table, id). ``updated_at`` is
    kept alongside in milliseconds so pulled rows can be compared with local
    ones (last write wins).

    The watermark (``last_pulled_at``) lives in the key/value ``sync_state``
    table and only moves forwards. It is advanced in the same transaction
    that applies a pull, so a crash never leaves a watermark ahead of the
    data it covers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tasksync.core.tables import is_sync_table
from tasksync.core.timestamps import now_millis, to_datetime, to_millis

logger = logging.getLogger(__name__)

WATERMARK_KEY = "last_pulled_at"
LAST_SYNC_KEY = "last_sync_at"


class LocalRecordNotFoundError(KeyError):
    """Raised when a local record does not exist."""

    def __init__(self, table: str, record_id: str) -> None:
        super().__init__(f"{table}:{record_id}")
        self.table = table
        self.record_id = record_id


@dataclass
class LocalRecord:
    """A record as held on the device.

    Attributes:
        table: Table name.
        id: Local id.
        server_id: Server id, once the record was synced.
        data: Record body.
        updated_at: Last modification, in milliseconds.
        is_dirty: True while local edits have not been accepted by the server.
        synced_at: Last time the record was confirmed by the server (ms).
    """

    table: str
    id: str
    server_id: str | None
    data: dict[str, Any]
    updated_at: int
    is_dirty: bool
    synced_at: int | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LocalRecord:
        """Create LocalRecord from database row."""
        return cls(
            table=row["table_name"],
            id=row["id"],
            server_id=row["server_id"],
            data=json.loads(row["data"]),
            updated_at=row["updated_at"],
            is_dirty=bool(row["is_dirty"]),
            synced_at=row["synced_at"],
        )


@dataclass
class ApplyResult:
    """Outcome of applying a pull."""

    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: list[tuple[str, str]] = field(default_factory=list)
    live: list[tuple[str, str]] = field(default_factory=list)  # Present on the server
    watermark: int | None = None

    @property
    def total(self) -> int:
        return self.inserted + self.updated + len(self.deleted)


def _millis(value: Any) -> int:
    """Timestamp field value -> milliseconds (0 when absent)."""
    if value is None:
        return 0
    return to_millis(to_datetime(value))


class LocalStore:
    """SQLite-based local store for the sync client."""

    def __init__(self, db_path: Path) -> None:
        """Initialize local state database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS records (
                table_name TEXT NOT NULL,
                id TEXT NOT NULL,
                server_id TEXT,
                data TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                is_dirty INTEGER NOT NULL DEFAULT 0,
                synced_at INTEGER,
                PRIMARY KEY (table_name, id)
            );

            -- Key-value sync state
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    # === Record operations ===

    def get(self, table: str, record_id: str) -> LocalRecord | None:
        """Get a record by local id.

        Returns:
            LocalRecord if found, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM records WHERE table_name = ? AND id = ?",
                (table, record_id),
            ).fetchone()
        return LocalRecord.from_row(row) if row else None

    def find(self, table: str, record_id: str) -> LocalRecord | None:
        """Get a record by local id or server id."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM records WHERE table_name = ? AND (id = ? OR server_id = ?)",
                (table, record_id, record_id),
            ).fetchone()
        return LocalRecord.from_row(row) if row else None

    def list_records(self, table: str | None = None) -> list[LocalRecord]:
        """List records, optionally of a single table."""
        query = "SELECT * FROM records"
        params: tuple[str, ...] = ()
        if table is not None:
            query += " WHERE table_name = ?"
            params = (table,)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY table_name, id", params).fetchall()
        return [LocalRecord.from_row(row) for row in rows]

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM records").fetchone()[0])

    def save_local(self, table: str, record: Mapping[str, Any]) -> LocalRecord:
        """Create or update a record from a local edit.

        Fields are merged into the stored body; ``updated_at`` is stamped
        with the local clock and the record is marked dirty. A record without
        an id gets a fresh UUID.

        Returns:
            The stored record.
        """
        now = now_millis()
        body = dict(record)
        record_id = str(body.get("id") or uuid.uuid4())

        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT * FROM records WHERE table_name = ? AND id = ?",
                (table, record_id),
            ).fetchone()
            if existing is not None:
                data = {**json.loads(existing["data"]), **body}
                server_id = existing["server_id"]
                created_at = existing["created_at"]
                synced_at = existing["synced_at"]
            else:
                data = body
                server_id = None
                synced_at = None
                created_at = _millis(body.get("created_at")) or now
                data.setdefault("created_at", created_at)
            data["id"] = record_id
            data["updated_at"] = now
            conn.execute(
                """
                INSERT OR REPLACE INTO records
                (table_name, id, server_id, data, created_at, updated_at, is_dirty, synced_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    table,
                    record_id,
                    server_id,
                    json.dumps(data, default=str),
                    created_at,
                    now,
                    synced_at,
                ),
            )
        return LocalRecord(table, record_id, server_id, data, now, True, synced_at)

    def delete_local(self, table: str, record_id: str) -> LocalRecord:
        """Remove a record after a local delete.

        Returns:
            The removed record (its server id is needed to push the delete).

        Raises:
            LocalRecordNotFoundError: If the record does not exist.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE table_name = ? AND id = ?",
                (table, record_id),
            ).fetchone()
            if row is None:
                raise LocalRecordNotFoundError(table, record_id)
            conn.execute(
                "DELETE FROM records WHERE table_name = ? AND id = ?",
                (table, record_id),
            )
        return LocalRecord.from_row(row)

    def mark_synced(self, table: str, record_id: str, server_id: str) -> None:
        """Record that the server accepted the record's changes."""
        with self._lock:
            self._conn.execute(
                """
                UPDATE records SET server_id = ?, is_dirty = 0, synced_at = ?
                WHERE table_name = ? AND id = ?
                """,
                (server_id, now_millis(), table, record_id),
            )

    # === Pull application ===

    def apply_pull(
        self,
        changes: Mapping[str, list[Mapping[str, Any]]],
        timestamp: int,
    ) -> ApplyResult:
        """Merge pulled changes and advance the watermark, atomically.

        Per change:
        - unseen id: inserted
        - known id: overwritten only if the server ``updated_at`` is newer
          than the local one (last write wins), otherwise skipped
        - ``deleted``: the record is removed

        Applying the same pull twice leaves the store unchanged.

        Args:
            changes: Table name -> wire changes.
            timestamp: Server timestamp to store as the new watermark.

        Returns:
            ApplyResult with counts and the deleted (table, id) pairs.
        """
        result = ApplyResult()
        synced_at = now_millis()

        with self._transaction() as conn:
            for table, items in changes.items():
                if not is_sync_table(table):
                    logger.warning("Ignoring pulled changes for unknown table %s", table)
                    continue
                for change in items:
                    self._apply_change(conn, table, change, synced_at, result)
            result.watermark = self._advance_watermark(conn, timestamp)

        logger.info(
            "Applied pull: %d inserted, %d updated, %d deleted, %d skipped",
            result.inserted,
            result.updated,
            len(result.deleted),
            result.skipped,
        )
        return result

    def _apply_change(
        self,
        conn: sqlite3.Connection,
        table: str,
        change: Mapping[str, Any],
        synced_at: int,
        result: ApplyResult,
    ) -> None:
        server_id = str(change["id"])
        local = conn.execute(
            "SELECT * FROM records WHERE table_name = ? AND (id = ? OR server_id = ?)",
            (table, server_id, server_id),
        ).fetchone()

        if change.get("deleted"):
            if local is not None:
                conn.execute(
                    "DELETE FROM records WHERE table_name = ? AND id = ?",
                    (table, local["id"]),
                )
            result.deleted.append((table, server_id))
            return

        data = change.get("created") or change.get("updated")
        if data is None:
            logger.warning("Ignoring pulled change without a body: %s:%s", table, server_id)
            result.skipped += 1
            return

        result.live.append((table, server_id))

        updated_at = _millis(data.get("updated_at"))
        if local is None:
            conn.execute(
                """
                INSERT INTO records
                (table_name, id, server_id, data, created_at, updated_at, is_dirty, synced_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    table,
                    server_id,
                    server_id,
                    json.dumps(dict(data), default=str),
                    _millis(data.get("created_at")),
                    updated_at,
                    synced_at,
                ),
            )
            result.inserted += 1
        elif updated_at > local["updated_at"]:
            conn.execute(
                """
                UPDATE records
                SET server_id = ?, data = ?, updated_at = ?, is_dirty = 0, synced_at = ?
                WHERE table_name = ? AND id = ?
                """,
                (
                    server_id,
                    json.dumps({**dict(data), "id": local["id"]}, default=str),
                    updated_at,
                    synced_at,
                    table,
                    local["id"],
                ),
            )
            result.updated += 1
        else:
            result.skipped += 1

    # === Watermark ===

    @property
    def watermark(self) -> int | None:
        """Server timestamp (ms) of the last applied pull, or None."""
        value = self.get_state(WATERMARK_KEY)
        return int(value) if value is not None else None

    def advance_watermark(self, timestamp: int) -> int:
        """Move the watermark forward; never backwards.

        Returns:
            The watermark after the call.
        """
        with self._transaction() as conn:
            return self._advance_watermark(conn, timestamp)

    def _advance_watermark(self, conn: sqlite3.Connection, timestamp: int) -> int:
        row = conn.execute(
            "SELECT value FROM sync_state WHERE key = ?", (WATERMARK_KEY,)
        ).fetchone()
        current = int(row["value"]) if row and row["value"] is not None else None
        if current is not None and current >= timestamp:
            return current
        conn.execute(
            "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
            (WATERMARK_KEY, str(timestamp)),
        )
        return timestamp

    @property
    def last_sync_at(self) -> float | None:
        """Unix time of the last completed sync cycle."""
        value = self.get_state(LAST_SYNC_KEY)
        return float(value) if value is not None else None

    def set_last_sync_at(self, when: float | None = None) -> None:
        self.set_state(LAST_SYNC_KEY, str(time.time() if when is None else when))

    def get_state(self, key: str) -> str | None:
        """Get a sync state value."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        """Set a sync state value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                (key, value),
            )

    def reset(self) -> None:
        """Drop every record and all sync state, including the watermark.

        The next pull starts from scratch.
        """
        with self._transaction() as conn:
            conn.execute("DELETE FROM records")
            conn.execute("DELETE FROM sync_state")
        logger.info("Local state reset")
