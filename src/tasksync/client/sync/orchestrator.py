"""Sync orchestrator driving push-then-pull cycles.

This module provides:
- SyncOrchestrator: Runs sync cycles on request or in a background thread
- SyncStatus / SyncReport: What the UI needs to show sync progress

State machine:
    IDLE --trigger--> PUSHING --push done--> PULLING --pull applied--> IDLE
    PUSHING/PULLING --network or server failure--> IDLE (nothing advanced)

Cycle:
    | Phase   | Step                                | On success               |
    |---------|-------------------------------------|--------------------------|
    | PUSHING | send the ready batch                | accepted changes leave   |
    |         |                                     | the queue; rejected ones |
    |         |                                     | back off                 |
    | PULLING | pull with the watermark, apply it   | watermark advanced,      |
    |         |                                     | queued changes of server |
    |         |                                     | deleted records dropped, |
    |         |                                     | creates seen on the      |
    |         |                                     | server confirmed         |

Only one cycle runs at a time. Triggers arriving during a cycle are
coalesced into a single follow-up cycle.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tasksync.client.api import APIError, AuthenticationError
from tasksync.client.state import LocalRecordNotFoundError
from tasksync.client.sync.queue import ChangeOperation, LocalChange
from tasksync.client.sync.retry import RetryPolicy
from tasksync.core.tables import get_table
from tasksync.core.types import SyncPhase, SyncTrigger

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from tasksync.client.api import HTTPClient
    from tasksync.client.state import LocalRecord, LocalStore
    from tasksync.client.sync.queue import ChangeQueue

logger = logging.getLogger(__name__)

# Default interval between periodic syncs (seconds)
DEFAULT_SYNC_INTERVAL = 300.0

# Pending changes that trigger a sync on their own
DEFAULT_PENDING_THRESHOLD = 20

# Upper bound on push rounds within one cycle
MAX_PUSH_ROUNDS = 50


@dataclass
class SyncStatus:
    """Snapshot of the sync state for display."""

    phase: SyncPhase
    pending_count: int
    failed_count: int
    last_sync_at: float | None
    watermark: int | None
    last_error: str | None = None


@dataclass
class SyncReport:
    """Outcome of one sync cycle."""

    trigger: SyncTrigger
    pushed: int = 0
    rejected: int = 0
    pulled: int = 0
    deleted: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncOrchestrator:
    """Coordinates local mutations, the change queue and the server.

    Usage:
        orchestrator = SyncOrchestrator(client, store, queue)
        orchestrator.create("tasks", {"title": "Write docs", "project_id": pid})
        report = orchestrator.sync_now()

        # Or in the background
        orchestrator.start(interval=300)
        ...
        orchestrator.stop()
    """

    def __init__(
        self,
        client: HTTPClient,
        store: LocalStore,
        queue: ChangeQueue,
        retry_policy: RetryPolicy | None = None,
        pending_threshold: int = DEFAULT_PENDING_THRESHOLD,
        on_status: Callable[[SyncStatus], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: HTTP client for the sync API.
            store: Local record store.
            queue: Durable queue of local changes.
            retry_policy: Backoff for rejected changes.
            pending_threshold: Pending changes that request a sync (0 = never).
            on_status: Optional callback on every phase change.
            clock: Time source (unix seconds).
        """
        self._client = client
        self._store = store
        self._queue = queue
        self._retry_policy = retry_policy or RetryPolicy()
        self._pending_threshold = pending_threshold
        self._on_status = on_status
        self._clock = clock

        self._lock = threading.RLock()
        self._phase = SyncPhase.IDLE
        self._last_error: str | None = None

        # Single-flight bookkeeping
        self._cycle_active = False
        self._follow_up: SyncTrigger | None = None

        # Background mode
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._requested: SyncTrigger | None = None

    # === Status ===

    @property
    def phase(self) -> SyncPhase:
        """Current phase of the state machine."""
        return self._phase

    @property
    def running(self) -> bool:
        """True while the background worker is alive."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def status(self) -> SyncStatus:
        """Current sync status."""
        return SyncStatus(
            phase=self._phase,
            pending_count=self._queue.pending_count(),
            failed_count=self._queue.failed_count(),
            last_sync_at=self._store.last_sync_at,
            watermark=self._store.watermark,
            last_error=self._last_error,
        )

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._lock:
            self._phase = phase
        logger.debug("Sync phase: %s", phase.value)
        if self._on_status:
            try:
                self._on_status(self.status)
            except Exception:
                logger.exception("Status callback failed")

    # === Local mutations ===

    def create(self, table: str, record: Mapping[str, Any]) -> LocalRecord:
        """Create a record locally and queue it for push.

        Args:
            table: Table name.
            record: Record body; an id is generated when missing.

        Returns:
            The stored record.
        """
        get_table(table)
        saved = self._store.save_local(table, record)
        self._queue.append(table, saved.id, ChangeOperation.CREATED, body=saved.data)
        self._check_threshold()
        return saved

    def update(self, table: str, record_id: str, fields: Mapping[str, Any]) -> LocalRecord:
        """Update a local record and queue the change.

        Raises:
            LocalRecordNotFoundError: If the record does not exist locally.
        """
        get_table(table)
        if self._store.get(table, record_id) is None:
            raise LocalRecordNotFoundError(table, record_id)
        saved = self._store.save_local(table, {**fields, "id": record_id})
        self._queue.append(
            table,
            saved.id,
            ChangeOperation.UPDATED,
            body=saved.data,
            server_id=saved.server_id,
        )
        self._check_threshold()
        return saved

    def delete(self, table: str, record_id: str) -> LocalRecord:
        """Delete a local record and queue the deletion.

        Raises:
            LocalRecordNotFoundError: If the record does not exist locally.
        """
        get_table(table)
        removed = self._store.delete_local(table, record_id)
        self._queue.append(
            table, removed.id, ChangeOperation.DELETED, server_id=removed.server_id
        )
        self._check_threshold()
        return removed

    def _check_threshold(self) -> None:
        if self._pending_threshold and self._queue.pending_count() >= self._pending_threshold:
            self.request_sync(SyncTrigger.PENDING_THRESHOLD)

    # === Triggers ===

    def request_sync(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> bool:
        """Ask the background worker for a cycle.

        Returns:
            True if the request was handed to a running worker.
        """
        with self._lock:
            if not self.running:
                logger.debug("Sync requested (%s) but no worker is running", trigger.value)
                return False
            self._requested = trigger
        self._wake_event.set()
        return True

    def on_foreground(self) -> bool:
        """Notify that the app came to the foreground."""
        return self.request_sync(SyncTrigger.FOREGROUND)

    def sync_now(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncReport | None:
        """Run a sync cycle in the calling thread.

        If a cycle is already running, the trigger is coalesced into one
        follow-up cycle run by the thread that owns the current cycle.

        Returns:
            Report of the last cycle run, or None if the trigger was coalesced.

        Raises:
            AuthenticationError: The server refused the token. The
                orchestrator is back in IDLE when this propagates.
        """
        with self._lock:
            if self._cycle_active:
                self._follow_up = trigger
                logger.debug("Sync cycle in progress, coalescing %s trigger", trigger.value)
                return None
            self._cycle_active = True

        try:
            while True:
                report = self._run_cycle(trigger)
                with self._lock:
                    if self._follow_up is None:
                        self._cycle_active = False
                        return report
                    trigger = self._follow_up
                    self._follow_up = None
        except BaseException:
            with self._lock:
                self._cycle_active = False
                self._follow_up = None
            raise

    # === Cycle ===

    def _run_cycle(self, trigger: SyncTrigger) -> SyncReport:
        report = SyncReport(trigger=trigger)
        logger.info("Sync cycle started (%s)", trigger.value)
        try:
            self._set_phase(SyncPhase.PUSHING)
            self._push(report)
            self._set_phase(SyncPhase.PULLING)
            self._pull(report)
        except AuthenticationError as e:
            self._last_error = str(e)
            logger.error("Sync failed: authentication refused")
            raise
        except APIError as e:
            report.error = str(e)
            self._last_error = report.error
            logger.warning("Sync cycle aborted: %s", e)
        else:
            self._last_error = None
            self._store.set_last_sync_at(self._clock())
            logger.info(
                "Sync cycle done: %d pushed, %d rejected, %d pulled, %d deleted",
                report.pushed,
                report.rejected,
                report.pulled,
                report.deleted,
            )
        finally:
            self._set_phase(SyncPhase.IDLE)
        return report

    def _push(self, report: SyncReport) -> None:
        """Push ready changes until none are left to offer.

        Each round sends at most one change per record; the next change of a
        record becomes ready once the previous one was accepted.
        """
        for _ in range(MAX_PUSH_ROUNDS):
            now = self._clock()
            batch = self._queue.ready_batch(now)
            if not batch:
                return
            rejected = set(self._client.push([c.to_wire() for c in batch], self._store.watermark))

            accepted = 0
            for change in batch:
                if change.wire_id in rejected:
                    self._queue.mark_rejected(change.seq, self._retry_policy, now)
                    report.rejected += 1
                else:
                    self._accept(change)
                    accepted += 1
            report.pushed += accepted
            if accepted == 0:
                return
        logger.warning("Push stopped after %d rounds", MAX_PUSH_ROUNDS)

    def _accept(self, change: LocalChange) -> None:
        self._queue.remove(change.seq)
        if change.operation is ChangeOperation.DELETED:
            return
        server_id = change.wire_id
        self._queue.set_server_id(change.table, change.id, server_id)
        if not self._queue.has_pending(change.table, change.id):
            self._store.mark_synced(change.table, change.id, server_id)

    def _pull(self, report: SyncReport) -> None:
        result = self._client.pull(self._store.watermark)
        applied = self._store.apply_pull(result.changes, result.timestamp)
        report.pulled = applied.inserted + applied.updated
        report.deleted = len(applied.deleted)
        for table, record_id in applied.deleted:
            self._queue.discard_record(table, record_id)
        for table, server_id in applied.live:
            confirmed = self._queue.confirm_created(table, server_id)
            if confirmed is not None and not self._queue.has_pending(table, confirmed.id):
                self._store.mark_synced(table, confirmed.id, server_id)

    # === Background mode ===

    def start(self, interval: float = DEFAULT_SYNC_INTERVAL, sync_immediately: bool = True) -> None:
        """Start the background worker.

        Args:
            interval: Seconds between periodic cycles.
            sync_immediately: Run a first cycle right away.
        """
        with self._lock:
            if self.running:
                logger.warning("Sync orchestrator already running")
                return
            self._stop_event.clear()
            self._wake_event.clear()
            if sync_immediately:
                self._requested = SyncTrigger.FOREGROUND
                self._wake_event.set()
            self._thread = threading.Thread(
                target=self._run,
                args=(interval,),
                name="SyncOrchestrator",
                daemon=True,
            )
            self._thread.start()
            logger.info("Sync orchestrator started (interval %.0fs)", interval)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background worker.

        Args:
            timeout: Maximum time to wait for the thread to finish.
        """
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            self._wake_event.set()

        if thread.is_alive():
            thread.join(timeout=timeout)

        with self._lock:
            self._thread = None
            logger.info("Sync orchestrator stopped")

    def _run(self, interval: float) -> None:
        """Worker loop: one cycle per tick or request."""
        logger.debug("Sync worker loop started")
        while not self._stop_event.is_set():
            woken = self._wake_event.wait(timeout=interval)
            if self._stop_event.is_set():
                break
            with self._lock:
                self._wake_event.clear()
                trigger = self._requested if woken and self._requested else SyncTrigger.PERIODIC
                self._requested = None
            try:
                self.sync_now(trigger)
            except AuthenticationError:
                logger.error("Sync worker: token refused, waiting for the next trigger")
            except Exception:
                logger.exception("Error during sync cycle")
        logger.debug("Sync worker loop ended")
