"""Apply pushed client changes to the row store.

Changes are applied one at a time, in submission order. A change that cannot
be applied is rejected on its own; the rest of the batch still goes through.
The only per-item signal returned to the client is the list of rejected ids.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tasksync.core.payloads import RecordPayload, parse_payload
from tasksync.core.tables import (
    LOCAL_ONLY_FIELDS,
    TableKind,
    UnknownTableError,
    child_links,
    get_table,
)
from tasksync.core.timestamps import utcnow
from tasksync.core.types import RejectionReason
from tasksync.server.database import RecordNotFoundError, TombstoneEntry
from tasksync.server.permissions import Access, PermissionEvaluator
from tasksync.server.schemas import SyncChange

if TYPE_CHECKING:
    from tasksync.server.database import Row, RowStore

logger = logging.getLogger(__name__)

# Identifier fields that are never written as columns
_ID_FIELDS = frozenset({"id", "server_id"})


class ChangeRejected(Exception):
    """Raised inside the reconciler when a single change must be rejected."""

    def __init__(self, reason: RejectionReason, detail: str = "") -> None:
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail


@dataclass
class Rejection:
    """A pushed change the server refused."""

    table: str | None
    record_id: str
    reason: RejectionReason
    detail: str = ""


@dataclass
class PushResult:
    """Outcome of applying a batch of pushed changes."""

    applied: int = 0
    rejections: list[Rejection] = field(default_factory=list)

    @property
    def rejected_ids(self) -> list[str]:
        """Ids of rejected changes, in submission order."""
        return [rejection.record_id for rejection in self.rejections]


class PushReconciler:
    """Validates, authorizes and applies pushed changes.

    Usage:
        reconciler = PushReconciler(db)
        result = reconciler.apply_changes(user_id, request.changes)
    """

    def __init__(self, store: RowStore, permissions: PermissionEvaluator | None = None) -> None:
        self._store = store
        self._permissions = permissions or PermissionEvaluator(store)

    def apply_changes(
        self,
        user_id: str,
        changes: Iterable[Any],
    ) -> PushResult:
        """Apply a batch of changes on behalf of a user.

        Never raises for a single bad change: each failure is logged and
        recorded in the result.

        Args:
            user_id: Authenticated user.
            changes: Changes in submission order (SyncChange or raw objects;
                anything that is not a change object is dropped).

        Returns:
            PushResult with the applied count and the rejections.
        """
        result = PushResult()
        for raw in changes:
            try:
                change = self._parse_change(raw)
            except ChangeRejected as e:
                record_id = raw.get("id") if isinstance(raw, Mapping) else None
                if record_id is None:
                    logger.warning("Dropping change without an id: %s", e)
                    continue
                self._reject(result, None, str(record_id), e)
                continue

            try:
                self._apply(user_id, change)
            except ChangeRejected as e:
                self._reject(result, change.table, change.id, e)
            else:
                result.applied += 1

        logger.info(
            "Push from %s: %d applied, %d rejected",
            user_id,
            result.applied,
            len(result.rejections),
        )
        return result

    @staticmethod
    def _reject(
        result: PushResult,
        table: str | None,
        record_id: str,
        error: ChangeRejected,
    ) -> None:
        logger.warning(
            "Rejected change %s:%s (%s) %s",
            table,
            record_id,
            error.reason.value,
            error.detail,
        )
        result.rejections.append(Rejection(table, record_id, error.reason, error.detail))

    @staticmethod
    def _parse_change(raw: Any) -> SyncChange:
        if isinstance(raw, SyncChange):
            change = raw
        elif not isinstance(raw, Mapping):
            raise ChangeRejected(
                RejectionReason.MALFORMED_PAYLOAD, f"expected an object, got {type(raw).__name__}"
            )
        else:
            try:
                change = SyncChange.model_validate(raw)
            except ValidationError as e:
                raise ChangeRejected(RejectionReason.MALFORMED_PAYLOAD, str(e)) from e

        if change.operation is None:
            raise ChangeRejected(
                RejectionReason.MALFORMED_PAYLOAD,
                "exactly one of created/updated/deleted must be set",
            )
        try:
            get_table(change.table)
        except UnknownTableError as e:
            raise ChangeRejected(RejectionReason.MALFORMED_PAYLOAD, str(e)) from e
        return change

    def _apply(self, user_id: str, change: SyncChange) -> None:
        try:
            if change.operation == "created":
                self._apply_create(user_id, change)
            elif change.operation == "updated":
                self._apply_update(user_id, change)
            else:
                self._apply_delete(user_id, change)
        except IntegrityError as e:
            raise ChangeRejected(RejectionReason.CONSTRAINT_VIOLATION, str(e.orig)) from e
        except RecordNotFoundError as e:
            raise ChangeRejected(RejectionReason.NOT_FOUND, str(e)) from e
        except SQLAlchemyError as e:
            logger.exception("Storage error applying %s:%s", change.table, change.id)
            raise ChangeRejected(RejectionReason.STORAGE_ERROR, type(e).__name__) from e

    # === Operations ===

    def _apply_create(self, user_id: str, change: SyncChange) -> None:
        payload = self._parse_body(change)
        values = self._to_columns(payload)
        values["id"] = payload.server_id or change.id

        now = utcnow()
        if values.get("created_at") is None:
            values["created_at"] = now
        values["updated_at"] = now

        if not self._permissions.can_access(
            user_id, change.table, values["id"], values, Access.CREATE
        ):
            raise ChangeRejected(RejectionReason.PERMISSION_DENIED)
        self._store.insert_row(change.table, values)

    def _apply_update(self, user_id: str, change: SyncChange) -> None:
        payload = self._parse_body(change)
        values = self._to_columns(payload)
        values["updated_at"] = utcnow()

        if self._store.get_row(change.table, change.id) is None:
            raise ChangeRejected(RejectionReason.NOT_FOUND)
        if not self._permissions.can_access(
            user_id, change.table, change.id, values, Access.UPDATE
        ):
            raise ChangeRejected(RejectionReason.PERMISSION_DENIED)
        self._store.update_row(change.table, change.id, values)

    def _apply_delete(self, user_id: str, change: SyncChange) -> None:
        row = self._store.get_row(change.table, change.id)
        if row is None:
            raise ChangeRejected(RejectionReason.NOT_FOUND)
        if not self._permissions.can_access(user_id, change.table, change.id, action=Access.DELETE):
            raise ChangeRejected(RejectionReason.PERMISSION_DENIED)

        tombstones = self.collect_tombstones(change.table, row)
        self._store.delete_row(change.table, change.id, tombstones, deleted_at=utcnow())
        logger.debug(
            "Deleted %s:%s (%d tombstones)", change.table, change.id, len(tombstones)
        )

    # === Helpers ===

    @staticmethod
    def _parse_body(change: SyncChange) -> RecordPayload:
        try:
            return parse_payload(change.table, change.body or {})
        except (ValidationError, ValueError) as e:
            raise ChangeRejected(RejectionReason.MALFORMED_PAYLOAD, str(e)) from e

    @staticmethod
    def _to_columns(payload: RecordPayload) -> dict[str, Any]:
        """Keep the fields the client sent, minus ids and local bookkeeping."""
        data = payload.model_dump(exclude_unset=True)
        return {
            key: value
            for key, value in data.items()
            if key not in _ID_FIELDS and key not in LOCAL_ONLY_FIELDS
        }

    def collect_tombstones(self, table: str, row: Row) -> list[TombstoneEntry]:
        """List tombstones for a row and every row its deletion cascades to.

        Contained rows share their parent's workspace. Rows reached from a
        profile (its workspaces, memberships, tasks, comments and so on) can
        sit in any workspace, so theirs is resolved one by one. Rows owned
        by a user (time entries, memberships) are also scoped to that user.
        """
        entries: list[TombstoneEntry] = []
        seen: set[tuple[str, str]] = set()
        pending: list[tuple[str, Row, str | None]] = [
            (table, row, self._permissions.resolve_workspace_id(table, row))
        ]

        while pending:
            current_table, current, workspace_id = pending.pop()
            key = (current_table, current["id"])
            if key in seen:
                continue
            seen.add(key)

            is_profile = get_table(current_table).kind is TableKind.SELF
            owner = current["id"] if is_profile else current.get("user_id")
            entries.append(TombstoneEntry(current_table, current["id"], workspace_id, owner))

            for child_table, fk in child_links(current_table):
                for child in self._store.select_rows(child_table, filters={fk: [current["id"]]}):
                    child_workspace = (
                        self._permissions.resolve_workspace_id(child_table, child)
                        if is_profile
                        else workspace_id
                    )
                    pending.append((child_table, child, child_workspace))
        return entries

