"""Durable queue of local changes waiting to be pushed.

Every local create, update or delete appends one entry. Entries survive
restarts (SQLite, committed on every operation) and leave the queue only
when the server accepts them, when the record is deleted on the server, or
when they are removed by hand.

Ordering:
    Changes are offered in submission order. A record's later changes are
    held back while an earlier change of the same record is still waiting,
    so the server always sees a record's changes in the order they were made.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tasksync.client.sync.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ChangeOperation(str, Enum):
    """Kind of local change."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChangeStatus(str, Enum):
    """Queue status of a change."""

    PENDING = "pending"  # Waiting to be pushed (possibly after a backoff)
    FAILED = "failed"  # Parked after too many rejections


@dataclass
class LocalChange:
    """A queued local change.

    Attributes:
        seq: Position in the queue (submission order).
        table: Table name.
        id: Local record id.
        server_id: Server id of the record, once known.
        operation: created, updated or deleted.
        body: Record body for creates and updates.
        attempts: Number of server rejections so far.
        next_attempt_at: Unix time before which the change is not offered.
        status: pending or failed.
        last_error: Reason of the last rejection.
    """

    seq: int
    table: str
    id: str
    server_id: str | None
    operation: ChangeOperation
    body: dict[str, Any] | None
    attempts: int = 0
    next_attempt_at: float = 0.0
    status: ChangeStatus = ChangeStatus.PENDING
    last_error: str | None = None

    @property
    def wire_id(self) -> str:
        """Id the server knows the record by."""
        if self.operation is ChangeOperation.CREATED:
            return self.id
        return self.server_id or self.id

    @property
    def key(self) -> tuple[str, str]:
        return (self.table, self.id)

    def to_wire(self) -> dict[str, Any]:
        """Render the change as sent to the push endpoint."""
        value: Any = True if self.operation is ChangeOperation.DELETED else (self.body or {})
        return {"table": self.table, "id": self.wire_id, self.operation.value: value}

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LocalChange:
        """Create LocalChange from database row."""
        return cls(
            seq=row["seq"],
            table=row["table_name"],
            id=row["record_id"],
            server_id=row["server_id"],
            operation=ChangeOperation(row["operation"]),
            body=json.loads(row["body"]) if row["body"] else None,
            attempts=row["attempts"],
            next_attempt_at=row["next_attempt_at"],
            status=ChangeStatus(row["status"]),
            last_error=row["last_error"],
        )


class ChangeQueue:
    """SQLite-backed FIFO of local changes.

    Thread-safe: every operation holds an RLock and commits immediately.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the queue.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS pending_changes (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                table_name TEXT NOT NULL,
                record_id TEXT NOT NULL,
                server_id TEXT,
                operation TEXT NOT NULL,
                body TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                next_attempt_at REAL NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                last_error TEXT,
                queued_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_pending_changes_record
                ON pending_changes(table_name, record_id);
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def append(
        self,
        table: str,
        record_id: str,
        operation: ChangeOperation,
        body: dict[str, Any] | None = None,
        server_id: str | None = None,
    ) -> LocalChange:
        """Append a change at the end of the queue.

        Args:
            table: Table name.
            record_id: Local record id.
            operation: Kind of change.
            body: Record body for creates and updates.
            server_id: Server id, if the record was synced before.

        Returns:
            The queued change.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO pending_changes
                (table_name, record_id, server_id, operation, body, queued_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    table,
                    record_id,
                    server_id,
                    operation.value,
                    json.dumps(body, default=str) if body is not None else None,
                    time.time(),
                ),
            )
            seq = cursor.lastrowid
        assert seq is not None
        logger.debug("Queued %s %s:%s (seq %d)", operation.value, table, record_id, seq)
        return LocalChange(seq, table, record_id, server_id, operation, body)

    def get(self, seq: int) -> LocalChange | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM pending_changes WHERE seq = ?", (seq,)
            ).fetchone()
        return LocalChange.from_row(row) if row else None

    def remove(self, seq: int) -> None:
        """Remove a change (accepted by the server, or dropped by hand)."""
        with self._lock:
            self._conn.execute("DELETE FROM pending_changes WHERE seq = ?", (seq,))

    def list(self, status: ChangeStatus | None = None) -> list[LocalChange]:
        """List queued changes in submission order.

        Args:
            status: Only changes with this status (None = all).
        """
        query = "SELECT * FROM pending_changes"
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY seq", params).fetchall()
        return [LocalChange.from_row(row) for row in rows]

    def pending_count(self) -> int:
        """Number of changes not parked as failed."""
        return self._count(ChangeStatus.PENDING)

    def failed_count(self) -> int:
        """Number of changes parked as failed."""
        return self._count(ChangeStatus.FAILED)

    def _count(self, status: ChangeStatus) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM pending_changes WHERE status = ?", (status.value,)
            ).fetchone()
        return int(row[0])

    def has_pending(self, table: str, record_id: str) -> bool:
        """Check whether any change of a record is still queued."""
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM pending_changes WHERE table_name = ? AND record_id = ? LIMIT 1",
                (table, record_id),
            ).fetchone()
        return row is not None

    def ready_batch(self, now: float | None = None, limit: int | None = None) -> list[LocalChange]:
        """Get the changes to push now.

        A change is ready when it is pending, its retry time has come, and it
        is the oldest queued change of its record. Only one change per record
        is returned, so each rejected id maps to exactly one change.

        Args:
            now: Current unix time (default: time.time()).
            limit: Maximum number of changes.

        Returns:
            Ready changes in submission order.
        """
        now = time.time() if now is None else now
        batch: list[LocalChange] = []
        blocked: set[tuple[str, str]] = set()
        for change in self.list():
            if change.key in blocked:
                continue
            blocked.add(change.key)
            if change.status is ChangeStatus.FAILED or change.next_attempt_at > now:
                continue
            batch.append(change)
            if limit is not None and len(batch) >= limit:
                break
        return batch

    def mark_rejected(
        self,
        seq: int,
        policy: RetryPolicy,
        now: float | None = None,
        error: str = "rejected by server",
    ) -> LocalChange | None:
        """Record a server rejection and schedule the next offer.

        The change is parked as failed once the policy's attempts are used up.

        Returns:
            The updated change, or None if it is no longer queued.
        """
        now = time.time() if now is None else now
        with self._lock:
            change = self.get(seq)
            if change is None:
                return None
            change.attempts += 1
            change.last_error = error
            if policy.exhausted(change.attempts):
                change.status = ChangeStatus.FAILED
                logger.warning(
                    "Change %s:%s parked after %d rejections",
                    change.table,
                    change.id,
                    change.attempts,
                )
            else:
                change.next_attempt_at = now + policy.backoff(change.attempts)
            self._conn.execute(
                """
                UPDATE pending_changes
                SET attempts = ?, next_attempt_at = ?, status = ?, last_error = ?
                WHERE seq = ?
                """,
                (
                    change.attempts,
                    change.next_attempt_at,
                    change.status.value,
                    change.last_error,
                    seq,
                ),
            )
        return change

    def set_server_id(self, table: str, record_id: str, server_id: str) -> None:
        """Attach the server id to every queued change of a record."""
        with self._lock:
            self._conn.execute(
                "UPDATE pending_changes SET server_id = ? WHERE table_name = ? AND record_id = ?",
                (server_id, table, record_id),
            )

    def discard_record(self, table: str, record_id: str) -> int:
        """Drop every queued change of a record (e.g. deleted on the server).

        The record is matched by local id or by server id.

        Returns:
            Number of changes dropped.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                DELETE FROM pending_changes
                WHERE table_name = ? AND (record_id = ? OR server_id = ?)
                """,
                (table, record_id, record_id),
            )
        if cursor.rowcount:
            logger.info(
                "Discarded %d queued changes for %s:%s", cursor.rowcount, table, record_id
            )
        return cursor.rowcount

    def confirm_created(self, table: str, server_id: str) -> LocalChange | None:
        """Drop the queued create of a record the server already holds.

        A create whose push reached the server but whose response was lost
        is rejected as a duplicate on the next push. Once a pull shows the
        record, the create is done: it leaves the queue, even if parked, and
        the record's later changes carry the server id from then on.

        Returns:
            The dropped create, or None if the record had none queued.
        """
        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM pending_changes
                WHERE table_name = ? AND operation = ? AND (record_id = ? OR server_id = ?)
                ORDER BY seq LIMIT 1
                """,
                (table, ChangeOperation.CREATED.value, server_id, server_id),
            ).fetchone()
            if row is None:
                return None
            change = LocalChange.from_row(row)
            self._conn.execute("DELETE FROM pending_changes WHERE seq = ?", (change.seq,))
            self.set_server_id(table, change.id, server_id)
        logger.info(
            "Create of %s:%s already on server after %d attempts",
            table,
            change.id,
            change.attempts,
        )
        return change

    def retry_failed(self) -> int:
        """Move every parked change back to pending with a fresh attempt count.

        Returns:
            Number of changes re-queued.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE pending_changes
                SET status = 'pending', attempts = 0, next_attempt_at = 0
                WHERE status = 'failed'
                """
            )
        return cursor.rowcount

    def clear(self) -> None:
        """Remove every queued change."""
        with self._lock:
            self._conn.execute("DELETE FROM pending_changes")
