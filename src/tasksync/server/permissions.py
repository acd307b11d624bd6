"""Permission evaluation for syncable records.

A user may touch a record when the record's containment path
(time_entry -> task -> project -> workspace) ends in a workspace the user is
a member of. A few tables bottom out elsewhere:

    | Table             | Root authorization fact                           |
    |-------------------|---------------------------------------------------|
    | profiles          | record id is the user id                          |
    | workspaces        | owner_id (writes) / membership (reads)            |
    | workspace_members | caller is owner/admin of the workspace            |
    | time_entries      | membership, or the entry belongs to the caller    |
    | task_tags         | membership in both the tag's and task's workspace |
    | activity_logs     | caller is the actor (writes); actor or entity     |
    |                   | workspace membership (reads)                      |

The path is recomputed on every call. Missing rows anywhere on the path deny
access; nothing here raises for "not found".
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from tasksync.core.tables import ADMIN_ROLES, TableKind, UnknownTableError, get_table

if TYPE_CHECKING:
    from tasksync.server.database import RowStore

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]

# activity_logs.entity_type -> table holding the entity
ENTITY_TABLES = {
    "workspace": "workspaces",
    "project": "projects",
    "task": "tasks",
}


class Access(str, Enum):
    """Operation being authorized."""

    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PermissionEvaluator:
    """Decides whether a user may read or write a record.

    Usage:
        evaluator = PermissionEvaluator(db)
        if evaluator.can_access(user_id, "tasks", record=body, action=Access.CREATE):
            ...
    """

    def __init__(self, store: RowStore) -> None:
        self._store = store
        self._rules: dict[TableKind, Callable[[str, str, Row, Access], bool]] = {
            TableKind.SELF: self._check_self,
            TableKind.WORKSPACE_ROOT: self._check_workspace,
            TableKind.WORKSPACE_CHILD: self._check_workspace_child,
            TableKind.MEMBERSHIP: self._check_membership,
            TableKind.PROJECT_CHILD: self._check_contained,
            TableKind.TASK_CHILD: self._check_task_child,
            TableKind.JUNCTION: self._check_junction,
            TableKind.ACTIVITY: self._check_activity,
        }

    def can_access(
        self,
        user_id: str,
        table: str,
        record_id: str | None = None,
        record: Row | None = None,
        action: Access = Access.READ,
    ) -> bool:
        """Check whether ``user_id`` may perform ``action`` on a record.

        Creates are judged on the body. Updates are judged on the stored row
        and on the row as it would look after the update. Deletes, and reads
        without a body, are judged on the stored row.

        Args:
            user_id: Authenticated user.
            table: Table name.
            record_id: Id of the target row.
            record: Record body (full for creates, partial for updates).
            action: Operation being authorized.

        Returns:
            True if allowed. Unknown tables, missing rows and storage errors
            all return False.
        """
        try:
            spec = get_table(table)
        except UnknownTableError:
            return False

        rule = self._rules[spec.kind]
        try:
            rows = self._rows_to_check(table, record_id, record, action)
            return bool(rows) and all(rule(user_id, table, row, action) for row in rows)
        except SQLAlchemyError:
            logger.exception("Permission lookup failed for %s:%s", table, record_id)
            return False

    def _rows_to_check(
        self,
        table: str,
        record_id: str | None,
        record: Row | None,
        action: Access,
    ) -> list[Row]:
        if action is Access.CREATE:
            if record is None:
                return []
            body = dict(record)
            if record_id is not None:
                body.setdefault("id", record_id)
            return [body]

        if action is Access.READ and record is not None and record_id is None:
            return [record]

        target_id = record_id if record_id is not None else (record or {}).get("id")
        if target_id is None:
            return []
        stored = self._store.get_row(table, target_id)
        if stored is None:
            return []
        if action is Access.UPDATE and record:
            changes = {k: v for k, v in record.items() if k not in ("id", "server_id")}
            return [stored, {**stored, **changes}]
        return [stored]

    # === Containment resolution ===

    def resolve_workspace_id(self, table: str, row: Row) -> str | None:
        """Walk a row's containment path up to its workspace id.

        Returns:
            Workspace id, or None if the table is not workspace-scoped or a
            row on the path is missing.
        """
        spec = get_table(table)
        current: Row | None = row
        while current is not None:
            if spec.kind is TableKind.WORKSPACE_ROOT:
                return current.get("id")
            if spec.kind is TableKind.ACTIVITY:
                return self._resolve_entity_workspace(current)
            if spec.parent is None:
                return None
            parent_table, fk = spec.parent
            parent_id = current.get(fk)
            if parent_id is None:
                return None
            if parent_table == "workspaces":
                return str(parent_id)
            current = self._store.get_row(parent_table, parent_id)
            spec = get_table(parent_table)
        return None

    def _resolve_entity_workspace(self, row: Row) -> str | None:
        table = ENTITY_TABLES.get(row.get("entity_type") or "")
        entity_id = row.get("entity_id")
        if table is None or entity_id is None:
            return None
        if table == "workspaces":
            return str(entity_id)
        entity = self._store.get_row(table, entity_id)
        if entity is None:
            return None
        return self.resolve_workspace_id(table, entity)

    def _is_member(self, user_id: str, workspace_id: str | None) -> bool:
        if workspace_id is None:
            return False
        return self._store.get_role(workspace_id, user_id) is not None

    # === Rules per table kind ===

    def _check_self(self, user_id: str, table: str, row: Row, action: Access) -> bool:
        return row.get("id") == user_id

    def _check_workspace(self, user_id: str, table: str, row: Row, action: Access) -> bool:
        if action is Access.READ:
            return self._is_member(user_id, row.get("id"))
        return row.get("owner_id") == user_id

    def _check_workspace_child(self, user_id: str, table: str, row: Row, action: Access) -> bool:
        return self._is_member(user_id, row.get("workspace_id"))

    def _check_membership(self, user_id: str, table: str, row: Row, action: Access) -> bool:
        workspace_id = row.get("workspace_id")
        if workspace_id is None:
            return False
        role = self._store.get_role(workspace_id, user_id)
        if action is Access.READ:
            return role is not None
        if role in ADMIN_ROLES:
            return True
        is_own_row = row.get("user_id") == user_id
        if action is Access.DELETE:
            # Leaving a workspace
            return is_own_row
        if action is Access.CREATE and is_own_row:
            # Owner adding their own first membership row
            workspace = self._store.get_row("workspaces", workspace_id)
            return workspace is not None and workspace.get("owner_id") == user_id
        return False

    def _check_contained(self, user_id: str, table: str, row: Row, action: Access) -> bool:
        return self._is_member(user_id, self.resolve_workspace_id(table, row))

    def _check_task_child(self, user_id: str, table: str, row: Row, action: Access) -> bool:
        if (
            table == "time_entries"
            and action is not Access.CREATE
            and row.get("user_id") == user_id
        ):
            return True
        return self._check_contained(user_id, table, row, action)

    def _check_junction(self, user_id: str, table: str, row: Row, action: Access) -> bool:
        tag_id = row.get("tag_id")
        tag = self._store.get_row("tags", tag_id) if tag_id else None
        if tag is None or not self._is_member(user_id, tag.get("workspace_id")):
            return False
        return self._check_contained(user_id, table, row, action)

    def _check_activity(self, user_id: str, table: str, row: Row, action: Access) -> bool:
        if row.get("user_id") == user_id:
            return True
        if action is not Access.READ:
            return False
        return self._is_member(user_id, self._resolve_entity_workspace(row))
