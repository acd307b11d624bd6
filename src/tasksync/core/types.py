"""Shared types for tasksync.

This module defines enums used by both client and server.
"""

from __future__ import annotations

from enum import Enum


class SyncPhase(str, Enum):
    """Phase of the sync state machine on a device."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"


class SyncTrigger(str, Enum):
    """What asked for a sync cycle."""

    FOREGROUND = "foreground"
    MANUAL = "manual"
    PERIODIC = "periodic"
    PENDING_THRESHOLD = "pending_threshold"


class RejectionReason(str, Enum):
    """Why the server refused a single pushed change."""

    PERMISSION_DENIED = "permission_denied"
    CONSTRAINT_VIOLATION = "constraint_violation"
    MALFORMED_PAYLOAD = "malformed_payload"
    NOT_FOUND = "not_found"
    STORAGE_ERROR = "storage_error"
