"""Core module - Table registry, payload models and shared types."""

from tasksync.core.config import SCHEMA_VERSION, ServerConfig
from tasksync.core.payloads import PAYLOAD_MODELS, RecordPayload, parse_payload
from tasksync.core.tables import (
    SYNC_TABLES,
    TABLES,
    TIMESTAMP_FIELDS,
    Role,
    TableKind,
    TableSpec,
    UnknownTableError,
    get_table,
)
from tasksync.core.timestamps import from_millis, now_millis, to_datetime, to_millis
from tasksync.core.types import RejectionReason, SyncPhase, SyncTrigger

__all__ = [
    # Config
    "SCHEMA_VERSION",
    "ServerConfig",
    # Payloads
    "PAYLOAD_MODELS",
    "RecordPayload",
    "parse_payload",
    # Tables
    "SYNC_TABLES",
    "TABLES",
    "TIMESTAMP_FIELDS",
    "Role",
    "TableKind",
    "TableSpec",
    "UnknownTableError",
    "get_table",
    # Timestamps
    "from_millis",
    "now_millis",
    "to_datetime",
    "to_millis",
    # Types
    "RejectionReason",
    "SyncPhase",
    "SyncTrigger",
]
