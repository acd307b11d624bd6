"""Sync machinery for the client.

Architecture:
    local mutation -> LocalStore + ChangeQueue -> SyncOrchestrator -> HTTPClient

Components:
- **ChangeQueue**: Durable FIFO of local changes waiting to be pushed
- **RetryPolicy**: Backoff and parking of changes the server rejected
- **SyncOrchestrator**: Push-then-pull cycles, single-flight, background worker
"""

from tasksync.client.sync.orchestrator import (
    DEFAULT_PENDING_THRESHOLD,
    DEFAULT_SYNC_INTERVAL,
    SyncOrchestrator,
    SyncReport,
    SyncStatus,
)
from tasksync.client.sync.queue import ChangeOperation, ChangeQueue, ChangeStatus, LocalChange
from tasksync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF,
    RetryPolicy,
)

__all__ = [
    # Orchestrator
    "DEFAULT_PENDING_THRESHOLD",
    "DEFAULT_SYNC_INTERVAL",
    "SyncOrchestrator",
    "SyncReport",
    "SyncStatus",
    # Queue
    "ChangeOperation",
    "ChangeQueue",
    "ChangeStatus",
    "LocalChange",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_BACKOFF",
    "RetryPolicy",
]
