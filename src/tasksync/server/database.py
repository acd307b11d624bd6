"""Server database using SQLAlchemy with SQLite.

This module provides:
- A generic row store over the syncable tables (select/insert/update/delete)
- Workspace membership lookups
- Tombstones for deleted rows
- Token-based identity resolution
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import create_engine, delete, event, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tasksync.core.tables import UnknownTableError, nullified_links
from tasksync.core.timestamps import ensure_utc
from tasksync.server.models import (
    SYNC_MODELS,
    Base,
    SyncableMixin,
    Token,
    Tombstone,
    WorkspaceMember,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

Row = dict[str, Any]


def hash_token(token: str) -> str:
    """Hash a token using SHA-256.

    Args:
        token: Raw token string.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    return hashlib.sha256(token.encode()).hexdigest()


class RecordNotFoundError(Exception):
    """Raised when an update or delete targets a row that does not exist."""

    def __init__(self, table: str, record_id: str) -> None:
        super().__init__(f"{table}:{record_id} not found")
        self.table = table
        self.record_id = record_id


@dataclass(frozen=True)
class TombstoneEntry:
    """A row about to be deleted, with the scope pulling clients need."""

    table: str
    record_id: str
    workspace_id: str | None = None
    user_id: str | None = None


class RowStore(Protocol):
    """Storage operations the sync core is written against.

    ``Database`` implements it over SQLAlchemy; any store offering the same
    calls can back the permission evaluator, extractor and reconciler.
    """

    def get_row(self, table: str, record_id: str) -> Row | None: ...

    def select_rows(
        self,
        table: str,
        since: datetime | None = None,
        filters: Mapping[str, Collection[str]] | None = None,
    ) -> list[Row]: ...

    def select_ids(self, table: str, column: str, values: Collection[str]) -> list[str]: ...

    def insert_row(self, table: str, values: Mapping[str, Any]) -> Row: ...

    def update_row(self, table: str, record_id: str, values: Mapping[str, Any]) -> Row: ...

    def delete_row(
        self,
        table: str,
        record_id: str,
        tombstones: Sequence[TombstoneEntry] = (),
        deleted_at: datetime | None = None,
    ) -> None: ...

    def list_memberships(self, user_id: str) -> dict[str, str]: ...

    def get_role(self, workspace_id: str, user_id: str) -> str | None: ...

    def list_tombstones_since(
        self,
        since: datetime,
        workspace_ids: Collection[str],
        user_id: str,
    ) -> list[Tombstone]: ...


def row_to_dict(obj: SyncableMixin) -> Row:
    """Convert a model instance to a plain dict with aware UTC datetimes."""
    row: Row = {}
    for column in obj.__table__.columns:  # type: ignore[attr-defined]
        value = getattr(obj, column.key)
        if isinstance(value, datetime):
            value = ensure_utc(value)
        row[column.key] = value
    return row


class Database:
    """SQLAlchemy database for the server row store.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    Foreign keys are enforced on every connection so deletes cascade down the
    containment hierarchy.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False for multi-threaded access
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )
        event.listen(self._engine, "connect", _enable_foreign_keys)

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            with self._engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    @staticmethod
    def _model(table: str) -> type[SyncableMixin]:
        try:
            return SYNC_MODELS[table]
        except KeyError:
            raise UnknownTableError(table) from None

    # === Row store ===

    def get_row(self, table: str, record_id: str) -> Row | None:
        """Get a row by id.

        Args:
            table: Table name.
            record_id: Row id.

        Returns:
            Row as a dict, or None if not found.
        """
        model = self._model(table)
        with self._session() as session:
            obj = session.get(model, record_id)
            return row_to_dict(obj) if obj is not None else None

    def select_rows(
        self,
        table: str,
        since: datetime | None = None,
        filters: Mapping[str, Collection[str]] | None = None,
    ) -> list[Row]:
        """Select rows changed since a timestamp, restricted by column filters.

        Args:
            table: Table name.
            since: Only rows with updated_at >= since (None = all rows).
            filters: column -> allowed values (SQL IN). An empty value set
                matches nothing.

        Returns:
            Matching rows.
        """
        model = self._model(table)
        stmt = select(model)
        if since is not None:
            stmt = stmt.where(model.updated_at >= ensure_utc(since))
        for column, values in (filters or {}).items():
            if not values:
                return []
            stmt = stmt.where(getattr(model, column).in_(list(values)))

        with self._session() as session:
            return [row_to_dict(obj) for obj in session.execute(stmt).scalars().all()]

    def select_ids(self, table: str, column: str, values: Collection[str]) -> list[str]:
        """Get ids of rows whose ``column`` is one of ``values``."""
        if not values:
            return []
        model = self._model(table)
        stmt = select(model.id).where(getattr(model, column).in_(list(values)))
        with self._session() as session:
            return list(session.execute(stmt).scalars().all())

    def insert_row(self, table: str, values: Mapping[str, Any]) -> Row:
        """Insert a new row.

        Args:
            table: Table name.
            values: Column values (including id).

        Returns:
            Inserted row.

        Raises:
            IntegrityError: On duplicate id, unique or foreign key violation.
        """
        model = self._model(table)
        with self._session() as session:
            obj = model(**values)
            session.add(obj)
            session.commit()
            session.refresh(obj)
            return row_to_dict(obj)

    def update_row(self, table: str, record_id: str, values: Mapping[str, Any]) -> Row:
        """Update columns of an existing row.

        Raises:
            RecordNotFoundError: If the row does not exist.
            IntegrityError: On unique or foreign key violation.
        """
        model = self._model(table)
        with self._session() as session:
            obj = session.get(model, record_id)
            if obj is None:
                raise RecordNotFoundError(table, record_id)
            for column, value in values.items():
                setattr(obj, column, value)
            session.commit()
            session.refresh(obj)
            return row_to_dict(obj)

    def delete_row(
        self,
        table: str,
        record_id: str,
        tombstones: Sequence[TombstoneEntry] = (),
        deleted_at: datetime | None = None,
    ) -> None:
        """Delete a row, recording tombstones in the same transaction.

        Child rows are removed by foreign key cascade. Rows whose reference
        is set to NULL instead are cleared here first, with a fresh
        ``updated_at`` so the change reaches other devices.

        Raises:
            RecordNotFoundError: If the row does not exist.
        """
        model = self._model(table)
        when = ensure_utc(deleted_at) if deleted_at else datetime.now(UTC)
        with self._session() as session:
            if session.get(model, record_id) is None:
                raise RecordNotFoundError(table, record_id)
            for entry in tombstones:
                session.add(
                    Tombstone(
                        table_name=entry.table,
                        record_id=entry.record_id,
                        workspace_id=entry.workspace_id,
                        user_id=entry.user_id,
                        deleted_at=when,
                    )
                )
            for child_table, fk in nullified_links(table):
                child = self._model(child_table)
                column = getattr(child, fk)
                session.execute(
                    update(child).where(column == record_id).values({fk: None, "updated_at": when})
                )
            session.execute(delete(model).where(model.id == record_id))
            session.commit()

    # === Membership ===

    def list_memberships(self, user_id: str) -> dict[str, str]:
        """Get the workspaces a user belongs to.

        Returns:
            workspace_id -> role.
        """
        stmt = select(WorkspaceMember.workspace_id, WorkspaceMember.role).where(
            WorkspaceMember.user_id == user_id
        )
        with self._session() as session:
            return {workspace_id: role for workspace_id, role in session.execute(stmt).all()}

    def get_role(self, workspace_id: str, user_id: str) -> str | None:
        """Get a user's role in a workspace, or None if not a member."""
        stmt = select(WorkspaceMember.role).where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == user_id,
        )
        with self._session() as session:
            return session.execute(stmt).scalar_one_or_none()

    # === Tombstones ===

    def list_tombstones_since(
        self,
        since: datetime,
        workspace_ids: Collection[str],
        user_id: str,
    ) -> list[Tombstone]:
        """List tombstones visible to a user since a timestamp.

        A tombstone is visible when its workspace is one of ``workspace_ids``
        or when it is scoped to ``user_id`` directly.
        """
        scope = Tombstone.user_id == user_id
        if workspace_ids:
            scope = scope | Tombstone.workspace_id.in_(list(workspace_ids))
        stmt = (
            select(Tombstone)
            .where(Tombstone.deleted_at >= ensure_utc(since), scope)
            .order_by(Tombstone.id)
        )
        with self._session() as session:
            tombstones = list(session.execute(stmt).scalars().all())
            for tombstone in tombstones:
                session.expunge(tombstone)
            return tombstones

    def purge_tombstones(self, older_than_days: int = 30) -> int:
        """Delete tombstones older than a retention period.

        Args:
            older_than_days: Retention period in days.

        Returns:
            Number of tombstones deleted.
        """
        cutoff = datetime.now(UTC) - timedelta(days=older_than_days)
        with self._session() as session:
            result = session.execute(delete(Tombstone).where(Tombstone.deleted_at < cutoff))
            session.commit()
            return int(result.rowcount or 0)

    # === Token operations ===

    def create_token(
        self,
        user_id: str,
        expires_in: timedelta | None = None,
    ) -> tuple[str, Token]:
        """Create a new authentication token.

        Args:
            user_id: User the token resolves to.
            expires_in: Optional expiration duration.

        Returns:
            Tuple of (raw_token, Token object).
        """
        raw_token = "ts_" + secrets.token_urlsafe(32)
        now = datetime.now(UTC)
        expires_at = (now + expires_in) if expires_in else None

        with self._session() as session:
            token = Token(
                user_id=user_id,
                token_hash=hash_token(raw_token),
                created_at=now,
                expires_at=expires_at,
            )
            session.add(token)
            session.commit()
            session.refresh(token)
            session.expunge(token)
            return raw_token, token

    def validate_token(self, raw_token: str) -> Token | None:
        """Validate a token and return it if valid.

        Args:
            raw_token: Raw token string.

        Returns:
            Token if valid, None otherwise.
        """
        token_hash = hash_token(raw_token)
        with self._session() as session:
            stmt = select(Token).where(Token.token_hash == token_hash, Token.revoked == False)  # noqa: E712
            token = session.execute(stmt).scalar_one_or_none()

            if token is None:
                return None

            # SQLite hands back naive datetimes
            if token.expires_at and ensure_utc(token.expires_at) < datetime.now(UTC):
                return None

            session.expunge(token)
            return token

    def resolve_identity(self, raw_token: str) -> str | None:
        """Resolve a bearer credential to a user id."""
        token = self.validate_token(raw_token)
        return token.user_id if token else None

    def revoke_token(self, token_id: int) -> None:
        """Revoke a token.

        Args:
            token_id: Token ID to revoke.
        """
        with self._session() as session:
            token = session.get(Token, token_id)
            if token:
                token.revoked = True
                session.commit()


def _enable_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
