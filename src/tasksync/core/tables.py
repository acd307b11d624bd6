"""Registry of syncable tables.

This module defines the closed set of tables that take part in sync and,
for each of them:
- its kind (how authorization resolves up the containment hierarchy)
- its containment parent (table + foreign key column), if any
- the timestamp-typed fields it carries

Containment hierarchy:
    workspace -> project -> task -> {subtask, comment, attachment, time_entry}
    workspace -> tag;  task + tag -> task_tag
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TableError(Exception):
    """Base exception for table registry errors."""


class UnknownTableError(TableError):
    """Raised when a table name is not part of the sync schema."""

    def __init__(self, table: str) -> None:
        super().__init__(f"Unknown table: {table}")
        self.table = table


class TableKind(str, Enum):
    """How a table resolves to its authorization root."""

    SELF = "self"
    WORKSPACE_ROOT = "workspace_root"
    WORKSPACE_CHILD = "workspace_child"
    MEMBERSHIP = "membership"
    PROJECT_CHILD = "project_child"
    TASK_CHILD = "task_child"
    JUNCTION = "junction"
    ACTIVITY = "activity"


class Role(str, Enum):
    """Role of a user inside a workspace."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


ADMIN_ROLES = frozenset({Role.OWNER.value, Role.ADMIN.value})

# Every timestamp-typed field known to the schema
TIMESTAMP_FIELDS = frozenset(
    {
        "created_at",
        "updated_at",
        "due_date",
        "completed_at",
        "joined_at",
        "start_time",
        "end_time",
    }
)

# Client bookkeeping that never reaches the server
LOCAL_ONLY_FIELDS = frozenset({"synced_at", "is_dirty"})


@dataclass(frozen=True)
class TableSpec:
    """Static description of a syncable table.

    Attributes:
        name: Table name as used on the wire and in the row store.
        kind: Authorization strategy.
        parent: (parent table, foreign key column) for containment, or None.
        timestamp_fields: Timestamp-typed columns of this table.
    """

    name: str
    kind: TableKind
    parent: tuple[str, str] | None = None
    timestamp_fields: frozenset[str] = frozenset({"created_at", "updated_at"})


_BASE_TIMESTAMPS = frozenset({"created_at", "updated_at"})

TABLES: dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        TableSpec("profiles", TableKind.SELF),
        TableSpec("workspaces", TableKind.WORKSPACE_ROOT),
        TableSpec("projects", TableKind.WORKSPACE_CHILD, ("workspaces", "workspace_id")),
        TableSpec(
            "tasks",
            TableKind.PROJECT_CHILD,
            ("projects", "project_id"),
            _BASE_TIMESTAMPS | {"due_date", "completed_at"},
        ),
        TableSpec("subtasks", TableKind.TASK_CHILD, ("tasks", "task_id")),
        TableSpec("comments", TableKind.TASK_CHILD, ("tasks", "task_id")),
        TableSpec("tags", TableKind.WORKSPACE_CHILD, ("workspaces", "workspace_id")),
        TableSpec("task_tags", TableKind.JUNCTION, ("tasks", "task_id")),
        TableSpec(
            "workspace_members",
            TableKind.MEMBERSHIP,
            ("workspaces", "workspace_id"),
            _BASE_TIMESTAMPS | {"joined_at"},
        ),
        TableSpec("attachments", TableKind.TASK_CHILD, ("tasks", "task_id")),
        TableSpec(
            "time_entries",
            TableKind.TASK_CHILD,
            ("tasks", "task_id"),
            _BASE_TIMESTAMPS | {"start_time", "end_time"},
        ),
        TableSpec("activity_logs", TableKind.ACTIVITY),
    )
}

SYNC_TABLES: tuple[str, ...] = tuple(TABLES)

# Cascading foreign keys that are not containment parents: task_tags also
# hangs off tags, and a profile owns rows in every workspace it touched.
EXTRA_CHILD_LINKS: dict[str, tuple[tuple[str, str], ...]] = {
    "tags": (("task_tags", "tag_id"),),
    "profiles": (
        ("workspaces", "owner_id"),
        ("workspace_members", "user_id"),
        ("tasks", "created_by"),
        ("comments", "author_id"),
        ("attachments", "uploaded_by"),
        ("time_entries", "user_id"),
    ),
}

# Foreign keys declared ON DELETE SET NULL
NULLIFIED_LINKS: dict[str, tuple[tuple[str, str], ...]] = {
    "profiles": (
        ("tasks", "assignee_id"),
        ("activity_logs", "user_id"),
    ),
}


def get_table(name: str) -> TableSpec:
    """Look up a table spec by name.

    Raises:
        UnknownTableError: If the table is not syncable.
    """
    try:
        return TABLES[name]
    except KeyError:
        raise UnknownTableError(name) from None


def is_sync_table(name: str) -> bool:
    """Check whether a table name is part of the sync schema."""
    return name in TABLES


def child_links(table: str) -> list[tuple[str, str]]:
    """List (child table, fk column) pairs that reference ``table``.

    Used to walk the containment hierarchy downwards, e.g. to find the rows a
    cascading delete will remove.
    """
    links = [
        (spec.name, spec.parent[1])
        for spec in TABLES.values()
        if spec.parent is not None and spec.parent[0] == table
    ]
    links.extend(EXTRA_CHILD_LINKS.get(table, ()))
    return links


def nullified_links(table: str) -> list[tuple[str, str]]:
    """List (table, fk column) pairs cleared when a ``table`` row is deleted."""
    return list(NULLIFIED_LINKS.get(table, ()))
