"""Shared fixtures: a server database seeded with two separate workspaces."""

from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from pathlib import Path

import pytest

from tasksync.server.database import Database


@dataclass
class World:
    """Ids of the seeded rows.

    alice owns ws1 (bob is a member there); carol owns ws2 alone.
    """

    alice: str = "alice"
    bob: str = "bob"
    carol: str = "carol"
    ws1: str = "ws-1"
    ws2: str = "ws-2"
    project1: str = "project-1"
    project2: str = "project-2"
    task1: str = "task-1"
    task2: str = "task-2"
    tag1: str = "tag-1"
    tag2: str = "tag-2"


def seed(db: Database) -> World:
    """Insert profiles, two workspaces and their projects, tasks and tags."""
    w = World()
    for user in (w.alice, w.bob, w.carol):
        db.insert_row("profiles", {"id": user, "email": f"{user}@example.com"})

    db.insert_row("workspaces", {"id": w.ws1, "name": "Team", "owner_id": w.alice})
    db.insert_row("workspaces", {"id": w.ws2, "name": "Private", "owner_id": w.carol})
    db.insert_row(
        "workspace_members",
        {"id": "m-alice", "workspace_id": w.ws1, "user_id": w.alice, "role": "owner"},
    )
    db.insert_row(
        "workspace_members",
        {"id": "m-bob", "workspace_id": w.ws1, "user_id": w.bob, "role": "member"},
    )
    db.insert_row(
        "workspace_members",
        {"id": "m-carol", "workspace_id": w.ws2, "user_id": w.carol, "role": "owner"},
    )

    db.insert_row("projects", {"id": w.project1, "name": "Launch", "workspace_id": w.ws1})
    db.insert_row("projects", {"id": w.project2, "name": "Secret", "workspace_id": w.ws2})
    db.insert_row(
        "tasks",
        {"id": w.task1, "title": "Plan", "project_id": w.project1, "created_by": w.alice},
    )
    db.insert_row(
        "tasks",
        {"id": w.task2, "title": "Hide", "project_id": w.project2, "created_by": w.carol},
    )
    db.insert_row("tags", {"id": w.tag1, "name": "urgent", "workspace_id": w.ws1})
    db.insert_row("tags", {"id": w.tag2, "name": "urgent", "workspace_id": w.ws2})
    return w


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "server.db")
    yield database
    database.close()


@pytest.fixture
def world(db: Database) -> World:
    """Seed the test database."""
    return seed(db)
