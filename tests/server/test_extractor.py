"""Tests for pull change extraction."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tasksync.core.timestamps import EPOCH, utcnow
from tasksync.server.database import Database, TombstoneEntry
from tasksync.server.extractor import ChangeExtractor
from tests.conftest import World


@pytest.fixture
def extractor(db: Database) -> ChangeExtractor:
    return ChangeExtractor(db)


def _ids(changes: dict, table: str) -> set[str]:
    return {change.id for change in changes.get(table, [])}


class TestFirstPull:
    """A pull from the epoch returns everything the user can see."""

    def test_scoped_to_memberships(self, extractor: ChangeExtractor, world: World) -> None:
        changes = extractor.extract_changes(world.bob, EPOCH)

        assert _ids(changes, "profiles") == {world.bob}
        assert _ids(changes, "workspaces") == {world.ws1}
        assert _ids(changes, "workspace_members") == {"m-alice", "m-bob"}
        assert _ids(changes, "projects") == {world.project1}
        assert _ids(changes, "tasks") == {world.task1}
        assert _ids(changes, "tags") == {world.tag1}

    def test_other_workspace_invisible(self, extractor: ChangeExtractor, world: World) -> None:
        changes = extractor.extract_changes(world.carol, EPOCH)
        assert _ids(changes, "projects") == {world.project2}
        assert world.task1 not in _ids(changes, "tasks")

    def test_everything_is_created(self, extractor: ChangeExtractor, world: World) -> None:
        changes = extractor.extract_changes(world.alice, EPOCH)
        for items in changes.values():
            for change in items:
                assert change.operation == "created"
                assert change.created is not None
                assert change.created["id"] == change.id

    def test_empty_tables_absent(self, extractor: ChangeExtractor, world: World) -> None:
        changes = extractor.extract_changes(world.alice, EPOCH)
        assert "subtasks" not in changes
        assert "time_entries" not in changes
        assert "activity_logs" not in changes

    def test_user_without_workspaces(
        self, extractor: ChangeExtractor, db: Database, world: World
    ) -> None:
        db.insert_row("profiles", {"id": "dave", "email": "dave@example.com"})
        changes = extractor.extract_changes("dave", EPOCH)
        assert list(changes) == ["profiles"]


class TestIncrementalPull:
    """A pull from a watermark only returns what changed since."""

    def test_updated_rows(self, extractor: ChangeExtractor, db: Database, world: World) -> None:
        since = utcnow() + timedelta(seconds=1)
        db.update_row(
            "projects",
            world.project1,
            {"name": "Renamed", "updated_at": since + timedelta(seconds=1)},
        )

        changes = extractor.extract_changes(world.bob, since)

        assert list(changes) == ["projects"]
        [change] = changes["projects"]
        assert change.operation == "updated"
        assert change.updated is not None
        assert change.updated["name"] == "Renamed"

    def test_new_rows_are_created(
        self, extractor: ChangeExtractor, db: Database, world: World
    ) -> None:
        since = utcnow() - timedelta(seconds=1)
        db.insert_row(
            "subtasks",
            {"id": "sub-1", "title": "Step", "task_id": world.task1},
        )
        changes = extractor.extract_changes(world.bob, since)
        [change] = changes["subtasks"]
        assert change.operation == "created"

    def test_nothing_changed(self, extractor: ChangeExtractor, world: World) -> None:
        assert extractor.extract_changes(world.bob, utcnow() + timedelta(seconds=1)) == {}

    def test_activity_of_user_only(
        self, extractor: ChangeExtractor, db: Database, world: World
    ) -> None:
        for actor in (world.alice, world.bob):
            db.insert_row(
                "activity_logs",
                {
                    "id": f"a-{actor}",
                    "entity_type": "task",
                    "entity_id": world.task1,
                    "action": "updated",
                    "user_id": actor,
                },
            )
        changes = extractor.extract_changes(world.bob, EPOCH)
        assert _ids(changes, "activity_logs") == {"a-bob"}

    def test_task_tags_through_tags(
        self, extractor: ChangeExtractor, db: Database, world: World
    ) -> None:
        db.insert_row("task_tags", {"id": "tt-1", "task_id": world.task1, "tag_id": world.tag1})
        assert _ids(extractor.extract_changes(world.bob, EPOCH), "task_tags") == {"tt-1"}
        assert "task_tags" not in extractor.extract_changes(world.carol, EPOCH)


class TestDeletions:
    """Tombstones are reported as deleted changes."""

    def test_deleted_rows(self, extractor: ChangeExtractor, db: Database, world: World) -> None:
        since = utcnow() - timedelta(seconds=1)
        db.delete_row(
            "tasks",
            world.task1,
            tombstones=[TombstoneEntry("tasks", world.task1, workspace_id=world.ws1)],
        )

        changes = extractor.extract_changes(world.bob, since)

        deleted = [c for c in changes["tasks"] if c.operation == "deleted"]
        assert [c.id for c in deleted] == [world.task1]
        assert deleted[0].model_dump() == {"table": "tasks", "id": world.task1, "deleted": True}

    def test_other_workspace_deletions_hidden(
        self, extractor: ChangeExtractor, db: Database, world: World
    ) -> None:
        since = utcnow() - timedelta(seconds=1)
        db.delete_row(
            "tasks",
            world.task2,
            tombstones=[TombstoneEntry("tasks", world.task2, workspace_id=world.ws2)],
        )
        changes = extractor.extract_changes(world.bob, utcnow() + timedelta(seconds=1))
        assert changes == {}
        changes = extractor.extract_changes(world.bob, since)
        assert world.task2 not in _ids(changes, "tasks")

    def test_removed_member_sees_own_membership_deleted(
        self, extractor: ChangeExtractor, db: Database, world: World
    ) -> None:
        since = utcnow() - timedelta(seconds=1)
        db.delete_row(
            "workspace_members",
            "m-bob",
            tombstones=[
                TombstoneEntry("workspace_members", "m-bob", world.ws1, world.bob),
            ],
        )
        changes = extractor.extract_changes(world.bob, since)
        assert [c.id for c in changes["workspace_members"]] == ["m-bob"]
        assert changes["workspace_members"][0].deleted is True

    def test_existing_row_not_reported_deleted(
        self, extractor: ChangeExtractor, db: Database, world: World
    ) -> None:
        """A tombstoned id that exists again is reported live only."""
        since = utcnow() - timedelta(seconds=1)
        db.delete_row(
            "tags",
            world.tag1,
            tombstones=[TombstoneEntry("tags", world.tag1, workspace_id=world.ws1)],
        )
        db.insert_row("tags", {"id": world.tag1, "name": "urgent", "workspace_id": world.ws1})

        changes = extractor.extract_changes(world.bob, since)

        assert [c.operation for c in changes["tags"]] == ["created"]
