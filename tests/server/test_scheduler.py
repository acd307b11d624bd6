"""Tests for the tombstone purge scheduler."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

from tasksync.server.database import Database, TombstoneEntry
from tasksync.server.scheduler import TombstonePurgeScheduler, purge_tombstones
from tests.conftest import World


def _delete_task(db: Database, task_id: str, workspace_id: str, days_ago: int) -> None:
    db.delete_row(
        "tasks",
        task_id,
        tombstones=[TombstoneEntry("tasks", task_id, workspace_id=workspace_id)],
        deleted_at=datetime.now(UTC) - timedelta(days=days_ago),
    )


class TestPurgeTombstones:
    """Tests for purge_tombstones function."""

    def test_purges_old_tombstones(self, db: Database, world: World) -> None:
        """Should purge tombstones older than retention period."""
        _delete_task(db, world.task1, world.ws1, days_ago=31)

        assert purge_tombstones(db, 30) == 1

    def test_keeps_recent_tombstones(self, db: Database, world: World) -> None:
        """Should keep tombstones within retention period."""
        _delete_task(db, world.task1, world.ws1, days_ago=5)

        assert purge_tombstones(db, 30) == 0
        since = datetime.now(UTC) - timedelta(days=6)
        assert len(db.list_tombstones_since(since, [world.ws1], world.alice)) == 1

    def test_handles_no_tombstones(self, db: Database) -> None:
        assert purge_tombstones(db) == 0


class TestTombstonePurgeScheduler:
    """Tests for TombstonePurgeScheduler class."""

    def test_init_default_values(self, db: Database) -> None:
        """Should initialize with default values."""
        scheduler = TombstonePurgeScheduler(db)

        assert scheduler._retention_days == 30
        assert scheduler._hour == 3
        assert scheduler._minute == 0
        assert not scheduler.running

    def test_init_custom_values(self, db: Database) -> None:
        """Should accept custom values."""
        scheduler = TombstonePurgeScheduler(db, retention_days=7, hour=2, minute=30)

        assert scheduler._retention_days == 7
        assert scheduler._hour == 2
        assert scheduler._minute == 30

    def test_start_creates_scheduler(self, db: Database) -> None:
        """Should create and start APScheduler on start()."""
        scheduler = TombstonePurgeScheduler(db)
        scheduler.start()

        try:
            assert scheduler._scheduler is not None
            assert scheduler._scheduler.running
            assert scheduler._scheduler.get_job("tombstone_purge") is not None
        finally:
            scheduler.stop()

    def test_stop_stops_scheduler(self, db: Database) -> None:
        """Should stop scheduler on stop()."""
        scheduler = TombstonePurgeScheduler(db)
        scheduler.start()
        scheduler.stop()

        assert scheduler._scheduler is None
        assert not scheduler.running

    def test_start_idempotent(self, db: Database) -> None:
        """Should be safe to call start() multiple times."""
        scheduler = TombstonePurgeScheduler(db)
        scheduler.start()
        sched1 = scheduler._scheduler
        scheduler.start()  # Second call should be ignored
        sched2 = scheduler._scheduler

        try:
            assert sched1 is sched2
        finally:
            scheduler.stop()

    def test_run_now(self, db: Database, world: World) -> None:
        """Should run purge immediately with run_now()."""
        _delete_task(db, world.task1, world.ws1, days_ago=10)
        _delete_task(db, world.task2, world.ws2, days_ago=1)

        scheduler = TombstonePurgeScheduler(db, retention_days=7)

        assert scheduler.run_now() == 1

    @patch("tasksync.server.scheduler.purge_tombstones")
    def test_purge_job_handles_exception(self, mock_purge: MagicMock, db: Database) -> None:
        """Should handle exceptions in purge job gracefully."""
        mock_purge.side_effect = Exception("Test error")

        scheduler = TombstonePurgeScheduler(db)

        # Should not raise
        scheduler._purge_job()
        mock_purge.assert_called_once_with(db, 30)
