"""Tests for the sync orchestrator."""

from __future__ import annotations

import time
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from tasksync.client.api import AuthenticationError, NetworkError, PullResult
from tasksync.client.state import LocalRecordNotFoundError, LocalStore
from tasksync.client.sync.orchestrator import SyncOrchestrator, SyncStatus
from tasksync.client.sync.queue import ChangeOperation, ChangeQueue, ChangeStatus
from tasksync.client.sync.retry import RetryPolicy
from tasksync.core.tables import UnknownTableError
from tasksync.core.types import SyncPhase, SyncTrigger


class FakeClient:
    """In-memory stand-in for HTTPClient."""

    def __init__(self) -> None:
        self.pushed: list[list[dict[str, Any]]] = []
        self.pulls: list[int | None] = []
        self.reject: set[str] = set()
        self.pull_changes: dict[str, list[dict[str, Any]]] = {}
        self.timestamp = 1000
        self.push_error: Exception | None = None
        self.pull_error: Exception | None = None
        self.on_push: Callable[[], None] | None = None

    def push(self, changes: list[dict[str, Any]], last_pulled_at: int | None) -> list[str]:
        if self.push_error:
            raise self.push_error
        self.pushed.append(changes)
        if self.on_push:
            self.on_push()
        return [c["id"] for c in changes if c["id"] in self.reject]

    def pull(self, last_pulled_at: int | None) -> PullResult:
        self.pulls.append(last_pulled_at)
        if self.pull_error:
            raise self.pull_error
        changes, self.pull_changes = self.pull_changes, {}
        return PullResult(changes=changes, timestamp=self.timestamp)


@pytest.fixture
def store(tmp_path: Path) -> Generator[LocalStore, None, None]:
    s = LocalStore(tmp_path / "state.db")
    yield s
    s.close()


@pytest.fixture
def queue(tmp_path: Path) -> Generator[ChangeQueue, None, None]:
    q = ChangeQueue(tmp_path / "state.db")
    yield q
    q.close()


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def orchestrator(
    client: FakeClient, store: LocalStore, queue: ChangeQueue
) -> Generator[SyncOrchestrator, None, None]:
    orch = SyncOrchestrator(client, store, queue, pending_threshold=0)  # type: ignore[arg-type]
    yield orch
    orch.stop()


class TestLocalMutations:
    """Local edits are stored and queued."""

    def test_create_queues_change(
        self, orchestrator: SyncOrchestrator, store: LocalStore, queue: ChangeQueue
    ) -> None:
        record = orchestrator.create("tasks", {"title": "Buy milk"})

        assert store.get("tasks", record.id) is not None
        [change] = queue.list()
        assert change.operation is ChangeOperation.CREATED
        assert change.body is not None
        assert change.body["title"] == "Buy milk"

    def test_update_missing_record(self, orchestrator: SyncOrchestrator) -> None:
        with pytest.raises(LocalRecordNotFoundError):
            orchestrator.update("tasks", "nope", {"title": "x"})

    def test_delete_missing_record(self, orchestrator: SyncOrchestrator) -> None:
        with pytest.raises(LocalRecordNotFoundError):
            orchestrator.delete("tasks", "nope")

    def test_unknown_table(self, orchestrator: SyncOrchestrator, queue: ChangeQueue) -> None:
        with pytest.raises(UnknownTableError):
            orchestrator.create("users", {"name": "x"})
        assert queue.list() == []

    def test_delete_queues_server_id(
        self, orchestrator: SyncOrchestrator, store: LocalStore, queue: ChangeQueue
    ) -> None:
        record = orchestrator.create("tasks", {"title": "a"})
        queue.clear()
        store.mark_synced("tasks", record.id, "srv-1")

        orchestrator.delete("tasks", record.id)

        [change] = queue.list()
        assert change.to_wire() == {"table": "tasks", "id": "srv-1", "deleted": True}


class TestSyncCycle:
    """Tests for push-then-pull cycles."""

    def test_push_then_pull(
        self,
        orchestrator: SyncOrchestrator,
        client: FakeClient,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        record = orchestrator.create("tasks", {"title": "Buy milk"})

        report = orchestrator.sync_now()

        assert report is not None and report.ok
        assert report.pushed == 1
        assert client.pushed[0][0]["id"] == record.id
        assert client.pulls == [None]
        assert queue.list() == []
        synced = store.get("tasks", record.id)
        assert synced is not None
        assert not synced.is_dirty
        assert synced.server_id == record.id
        assert store.watermark == 1000
        assert store.last_sync_at is not None
        assert orchestrator.phase is SyncPhase.IDLE

    def test_sends_watermark(
        self, orchestrator: SyncOrchestrator, client: FakeClient, store: LocalStore
    ) -> None:
        store.advance_watermark(500)
        orchestrator.sync_now()
        assert client.pulls == [500]

    def test_changes_of_one_record_in_order(
        self, orchestrator: SyncOrchestrator, client: FakeClient, queue: ChangeQueue
    ) -> None:
        record = orchestrator.create("tasks", {"title": "a"})
        orchestrator.update("tasks", record.id, {"title": "b"})

        report = orchestrator.sync_now()

        assert report is not None
        assert report.pushed == 2
        operations = [sorted(set(batch[0]) - {"table", "id"}) for batch in client.pushed]
        assert operations == [["created"], ["updated"]]
        assert queue.list() == []

    def test_rejected_change_stays_queued(
        self,
        orchestrator: SyncOrchestrator,
        client: FakeClient,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        denied = orchestrator.create("tasks", {"title": "denied"})
        accepted = orchestrator.create("tasks", {"title": "ok"})
        client.reject = {denied.id}

        report = orchestrator.sync_now()

        assert report is not None
        assert report.pushed == 1
        assert report.rejected == 1
        [change] = queue.list()
        assert change.id == denied.id
        assert change.attempts == 1
        assert change.next_attempt_at > 0
        assert store.get("tasks", denied.id).is_dirty  # type: ignore[union-attr]
        assert not store.get("tasks", accepted.id).is_dirty  # type: ignore[union-attr]

    def test_rejected_change_parked(
        self, client: FakeClient, store: LocalStore, queue: ChangeQueue
    ) -> None:
        orch = SyncOrchestrator(
            client,  # type: ignore[arg-type]
            store,
            queue,
            retry_policy=RetryPolicy(max_attempts=1),
            pending_threshold=0,
        )
        record = orch.create("tasks", {"title": "denied"})
        client.reject = {record.id}

        orch.sync_now()

        assert queue.list(ChangeStatus.FAILED)[0].id == record.id
        assert orch.status.failed_count == 1
        assert orch.status.pending_count == 0

    def test_pull_failure_keeps_watermark(
        self,
        orchestrator: SyncOrchestrator,
        client: FakeClient,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        store.advance_watermark(500)
        orchestrator.create("tasks", {"title": "a"})
        client.pull_error = NetworkError("Cannot reach server")

        report = orchestrator.sync_now()

        assert report is not None
        assert not report.ok
        assert report.pushed == 1
        assert store.watermark == 500
        assert store.last_sync_at is None
        assert queue.list() == []
        assert orchestrator.phase is SyncPhase.IDLE
        assert orchestrator.status.last_error == "Cannot reach server"

    def test_push_failure_keeps_queue(
        self,
        orchestrator: SyncOrchestrator,
        client: FakeClient,
        queue: ChangeQueue,
    ) -> None:
        orchestrator.create("tasks", {"title": "a"})
        client.push_error = NetworkError("Cannot reach server")

        report = orchestrator.sync_now()

        assert report is not None and not report.ok
        [change] = queue.list()
        assert change.attempts == 0
        assert client.pulls == []

    def test_authentication_error_propagates(
        self, orchestrator: SyncOrchestrator, client: FakeClient
    ) -> None:
        client.pull_error = AuthenticationError("Invalid or expired token", 401)

        with pytest.raises(AuthenticationError):
            orchestrator.sync_now()

        assert orchestrator.phase is SyncPhase.IDLE
        assert orchestrator.status.last_error == "Invalid or expired token"
        # The orchestrator accepts new cycles afterwards
        client.pull_error = None
        assert orchestrator.sync_now() is not None

    def test_pulled_deletion_discards_queued_changes(
        self,
        orchestrator: SyncOrchestrator,
        client: FakeClient,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        store.apply_pull(
            {"tasks": [{"table": "tasks", "id": "t1", "created": {"id": "t1", "updated_at": 1}}]},
            100,
        )
        orchestrator.update("tasks", "t1", {"title": "edited offline"})
        client.reject = {"t1"}
        client.pull_changes = {"tasks": [{"table": "tasks", "id": "t1", "deleted": True}]}

        report = orchestrator.sync_now()

        assert report is not None
        assert report.deleted == 1
        assert queue.list() == []
        assert store.get("tasks", "t1") is None


class TestLostPushResponse:
    """A create the server applied without the device hearing back."""

    @staticmethod
    def _server_copy(record_id: str, title: str) -> dict[str, list[dict[str, Any]]]:
        body = {"id": record_id, "title": title, "updated_at": 1}
        return {"tasks": [{"table": "tasks", "id": record_id, "created": body}]}

    def test_pulled_record_confirms_create(
        self,
        orchestrator: SyncOrchestrator,
        client: FakeClient,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        record = orchestrator.create("tasks", {"title": "Buy milk"})
        orchestrator.update("tasks", record.id, {"title": "Buy oat milk"})
        client.reject = {record.id}  # Duplicate id on the re-push
        client.pull_changes = self._server_copy(record.id, "Buy milk")

        report = orchestrator.sync_now()

        assert report is not None and report.rejected == 1
        [change] = queue.list()
        assert change.operation is ChangeOperation.UPDATED
        assert change.server_id == record.id

        client.reject = set()
        report = orchestrator.sync_now()

        assert report is not None and report.pushed == 1
        assert client.pushed[-1][0]["updated"]["title"] == "Buy oat milk"
        assert queue.list() == []
        assert not store.get("tasks", record.id).is_dirty  # type: ignore[union-attr]

    def test_parked_create_released(
        self, client: FakeClient, store: LocalStore, queue: ChangeQueue
    ) -> None:
        orch = SyncOrchestrator(
            client,  # type: ignore[arg-type]
            store,
            queue,
            retry_policy=RetryPolicy(max_attempts=1),
            pending_threshold=0,
        )
        record = orch.create("tasks", {"title": "Buy milk"})
        orch.update("tasks", record.id, {"title": "Buy oat milk"})
        client.reject = {record.id}
        orch.sync_now()
        assert [c.status for c in queue.list()] == [ChangeStatus.FAILED, ChangeStatus.PENDING]

        client.reject = set()
        client.pull_changes = self._server_copy(record.id, "Buy milk")
        orch.sync_now()
        orch.sync_now()

        assert queue.list() == []
        assert client.pushed[-1][0]["updated"]["title"] == "Buy oat milk"

    def test_confirmed_create_marks_record_synced(
        self,
        orchestrator: SyncOrchestrator,
        client: FakeClient,
        store: LocalStore,
        queue: ChangeQueue,
    ) -> None:
        record = orchestrator.create("tasks", {"title": "Buy milk"})
        client.reject = {record.id}
        client.pull_changes = self._server_copy(record.id, "Buy milk")

        orchestrator.sync_now()

        assert queue.list() == []
        synced = store.get("tasks", record.id)
        assert synced is not None
        assert not synced.is_dirty
        assert synced.server_id == record.id


class TestSingleFlight:
    """Only one cycle runs at a time."""

    def test_trigger_during_cycle_coalesced(
        self, orchestrator: SyncOrchestrator, client: FakeClient
    ) -> None:
        results: list[Any] = []
        orchestrator.create("tasks", {"title": "a"})

        def trigger_again() -> None:
            client.on_push = None
            results.append(orchestrator.sync_now(SyncTrigger.FOREGROUND))
            results.append(orchestrator.sync_now(SyncTrigger.FOREGROUND))

        client.on_push = trigger_again

        report = orchestrator.sync_now()

        assert results == [None, None]
        # One cycle plus a single follow-up
        assert len(client.pulls) == 2
        assert report is not None
        assert report.trigger is SyncTrigger.FOREGROUND


class TestStatus:
    """Tests for status reporting."""

    def test_phase_callbacks(self, client: FakeClient, store: LocalStore, queue: ChangeQueue) -> None:
        phases: list[SyncPhase] = []
        orch = SyncOrchestrator(
            client,  # type: ignore[arg-type]
            store,
            queue,
            pending_threshold=0,
            on_status=lambda status: phases.append(status.phase),
        )
        orch.sync_now()
        assert phases == [SyncPhase.PUSHING, SyncPhase.PULLING, SyncPhase.IDLE]

    def test_callback_errors_ignored(
        self, client: FakeClient, store: LocalStore, queue: ChangeQueue
    ) -> None:
        def broken(status: SyncStatus) -> None:
            raise RuntimeError("ui gone")

        orch = SyncOrchestrator(
            client, store, queue, pending_threshold=0, on_status=broken  # type: ignore[arg-type]
        )
        report = orch.sync_now()
        assert report is not None and report.ok


class TestBackgroundMode:
    """Tests for the background worker."""

    @staticmethod
    def _wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if condition():
                return True
            time.sleep(0.02)
        return False

    def test_request_without_worker(self, orchestrator: SyncOrchestrator) -> None:
        assert not orchestrator.request_sync()
        assert not orchestrator.on_foreground()

    def test_start_syncs_immediately(
        self, orchestrator: SyncOrchestrator, client: FakeClient
    ) -> None:
        orchestrator.start(interval=60)
        assert orchestrator.running
        assert self._wait_for(lambda: len(client.pulls) == 1)
        orchestrator.stop()
        assert not orchestrator.running

    def test_foreground_wakes_worker(
        self, orchestrator: SyncOrchestrator, client: FakeClient
    ) -> None:
        orchestrator.start(interval=60, sync_immediately=False)
        assert orchestrator.on_foreground()
        assert self._wait_for(lambda: len(client.pulls) == 1)

    def test_pending_threshold_requests_sync(
        self, client: FakeClient, store: LocalStore, queue: ChangeQueue
    ) -> None:
        orch = SyncOrchestrator(client, store, queue, pending_threshold=2)  # type: ignore[arg-type]
        orch.start(interval=60, sync_immediately=False)
        try:
            orch.create("tasks", {"title": "a"})
            time.sleep(0.1)
            assert client.pulls == []
            orch.create("tasks", {"title": "b"})
            assert self._wait_for(lambda: len(client.pulls) == 1)
        finally:
            orch.stop()

    def test_worker_survives_auth_error(
        self, orchestrator: SyncOrchestrator, client: FakeClient
    ) -> None:
        client.pull_error = AuthenticationError("Invalid or expired token", 401)
        orchestrator.start(interval=60)
        assert self._wait_for(lambda: len(client.pulls) == 1)
        assert orchestrator.running
