"""Change extraction for pull requests.

Collects every row a user may see that changed since their watermark, plus
the deletions recorded since then. Visibility is expressed as id filters
that walk down the containment hierarchy:

    memberships -> workspace ids -> project ids -> task ids
                                 -> tag ids
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import datetime
from typing import TYPE_CHECKING

from tasksync.core.tables import SYNC_TABLES, TableKind, TableSpec, get_table
from tasksync.core.timestamps import ensure_utc
from tasksync.server.schemas import SyncChange

if TYPE_CHECKING:
    from tasksync.server.database import RowStore

logger = logging.getLogger(__name__)

Filters = dict[str, Collection[str]]


class ChangeExtractor:
    """Builds the per-table change map returned by a pull."""

    def __init__(self, store: RowStore) -> None:
        self._store = store

    def extract_changes(self, user_id: str, since: datetime) -> dict[str, list[SyncChange]]:
        """Collect changes visible to a user since a timestamp.

        Rows are tagged ``created`` when they were created after ``since`` and
        ``updated`` otherwise. Tombstones recorded since then are reported as
        ``deleted``.

        Args:
            user_id: Authenticated user.
            since: Watermark (aware UTC datetime; the epoch for a first pull).

        Returns:
            Table name -> changes. Tables with nothing to report are absent.
        """
        since = ensure_utc(since)
        accessible = self._accessible_ids(user_id)
        changes: dict[str, list[SyncChange]] = {}

        for table in SYNC_TABLES:
            filters = self._scope(get_table(table), user_id, accessible)
            if any(not values for values in filters.values()):
                continue
            rows = self._store.select_rows(table, since=since, filters=filters)
            if not rows:
                continue
            changes[table] = [self._row_change(table, row, since) for row in rows]

        deleted = self._deletions(user_id, since, accessible["workspaces"], changes)
        for change in deleted:
            changes.setdefault(change.table, []).append(change)

        logger.debug(
            "Extracted changes for %s since %s: %s",
            user_id,
            since.isoformat(),
            {table: len(items) for table, items in changes.items()},
        )
        return changes

    def _accessible_ids(self, user_id: str) -> dict[str, list[str]]:
        """Resolve the ids of containers the user can see, top down."""
        workspace_ids = list(self._store.list_memberships(user_id))
        project_ids = self._store.select_ids("projects", "workspace_id", workspace_ids)
        return {
            "workspaces": workspace_ids,
            "projects": project_ids,
            "tasks": self._store.select_ids("tasks", "project_id", project_ids),
            "tags": self._store.select_ids("tags", "workspace_id", workspace_ids),
        }

    @staticmethod
    def _scope(spec: TableSpec, user_id: str, accessible: dict[str, list[str]]) -> Filters:
        if spec.kind is TableKind.SELF:
            return {"id": [user_id]}
        if spec.kind is TableKind.WORKSPACE_ROOT:
            return {"id": accessible["workspaces"]}
        if spec.kind is TableKind.ACTIVITY:
            return {"user_id": [user_id]}
        if spec.kind is TableKind.JUNCTION:
            return {"tag_id": accessible["tags"]}
        assert spec.parent is not None
        parent_table, fk = spec.parent
        return {fk: accessible[parent_table]}

    @staticmethod
    def _row_change(table: str, row: dict, since: datetime) -> SyncChange:
        created_at = row.get("created_at")
        if created_at is not None and created_at > since:
            return SyncChange(table=table, id=row["id"], created=row)
        return SyncChange(table=table, id=row["id"], updated=row)

    def _deletions(
        self,
        user_id: str,
        since: datetime,
        workspace_ids: Collection[str],
        live: dict[str, list[SyncChange]],
    ) -> list[SyncChange]:
        """Tombstones since ``since``, minus ids that exist again."""
        present = {(table, change.id) for table, items in live.items() for change in items}
        seen: set[tuple[str, str]] = set()
        deleted = []
        for tombstone in self._store.list_tombstones_since(since, workspace_ids, user_id):
            key = (tombstone.table_name, tombstone.record_id)
            if key in present or key in seen:
                continue
            seen.add(key)
            deleted.append(
                SyncChange(table=tombstone.table_name, id=tombstone.record_id, deleted=True)
            )
        return deleted
