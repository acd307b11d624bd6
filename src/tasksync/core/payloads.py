"""Typed record payloads for every syncable table.

Change bodies arrive as untyped JSON objects. Right after transport decode
they are parsed into one of the models below, so the reconciler works with
validated, normalized records instead of raw dicts.

All fields are optional: update bodies are partial. Unknown keys (client
internals such as ``_status`` or ``_changed``) are ignored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator

from tasksync.core.tables import TIMESTAMP_FIELDS, get_table
from tasksync.core.timestamps import to_datetime

TaskStatus = Literal["todo", "in_progress", "completed", "cancelled"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
MemberRole = Literal["owner", "admin", "member"]


class RecordPayload(BaseModel):
    """Fields shared by every syncable record."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    server_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Local bookkeeping, stripped before anything is written
    synced_at: Any = None
    is_dirty: Any = None

    @field_validator(*TIMESTAMP_FIELDS, mode="before", check_fields=False)
    @classmethod
    def _normalize_timestamp(cls, value: Any) -> Any:
        if value is None:
            return None
        return to_datetime(value)


class ProfilePayload(RecordPayload):
    email: str | None = None
    full_name: str | None = None
    avatar_url: str | None = None
    username: str | None = None


class WorkspacePayload(RecordPayload):
    name: str | None = None
    description: str | None = None
    owner_id: str | None = None


class ProjectPayload(RecordPayload):
    name: str | None = None
    description: str | None = None
    workspace_id: str | None = None
    color: str | None = None
    is_archived: bool | None = None


class TaskPayload(RecordPayload):
    title: str | None = None
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    project_id: str | None = None
    assignee_id: str | None = None
    created_by: str | None = None
    due_date: datetime | None = None
    completed_at: datetime | None = None
    position: int | None = None


class SubtaskPayload(RecordPayload):
    title: str | None = None
    description: str | None = None
    is_completed: bool | None = None
    task_id: str | None = None
    position: int | None = None


class CommentPayload(RecordPayload):
    content: str | None = None
    task_id: str | None = None
    author_id: str | None = None


class TagPayload(RecordPayload):
    name: str | None = None
    color: str | None = None
    workspace_id: str | None = None


class TaskTagPayload(RecordPayload):
    task_id: str | None = None
    tag_id: str | None = None


class WorkspaceMemberPayload(RecordPayload):
    workspace_id: str | None = None
    user_id: str | None = None
    role: MemberRole | None = None
    joined_at: datetime | None = None


class AttachmentPayload(RecordPayload):
    filename: str | None = None
    file_path: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    task_id: str | None = None
    uploaded_by: str | None = None


class TimeEntryPayload(RecordPayload):
    task_id: str | None = None
    user_id: str | None = None
    description: str | None = None
    duration: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None


class ActivityLogPayload(RecordPayload):
    entity_type: str | None = None
    entity_id: str | None = None
    action: str | None = None
    changes: dict[str, Any] | None = None
    user_id: str | None = None


PAYLOAD_MODELS: dict[str, type[RecordPayload]] = {
    "profiles": ProfilePayload,
    "workspaces": WorkspacePayload,
    "projects": ProjectPayload,
    "tasks": TaskPayload,
    "subtasks": SubtaskPayload,
    "comments": CommentPayload,
    "tags": TagPayload,
    "task_tags": TaskTagPayload,
    "workspace_members": WorkspaceMemberPayload,
    "attachments": AttachmentPayload,
    "time_entries": TimeEntryPayload,
    "activity_logs": ActivityLogPayload,
}


def parse_payload(table: str, data: dict[str, Any]) -> RecordPayload:
    """Parse a raw change body into the table's payload model.

    Raises:
        UnknownTableError: If the table is not syncable.
        pydantic.ValidationError: If the body does not match the table.
    """
    get_table(table)
    return PAYLOAD_MODELS[table].model_validate(data)
