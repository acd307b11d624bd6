"""Pytest fixtures for integration tests.

This module provides fixtures for end-to-end testing with a real server
running in a background thread on a temporary database.
"""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable, Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import pytest
import uvicorn

from tasksync.client.api import HTTPClient
from tasksync.client.state import LocalStore
from tasksync.client.sync import ChangeQueue, SyncOrchestrator
from tasksync.core.config import ServerConfig
from tasksync.server.app import create_app
from tasksync.server.database import Database
from tests.conftest import World, seed


@dataclass
class TestServer:
    """Container for test server resources."""

    db: Database
    url: str
    world: World

    def create_token(self, user_id: str) -> str:
        """Issue a bearer token for a seeded user."""
        raw_token, _ = self.db.create_token(user_id)
        return raw_token


@dataclass
class SyncDevice:
    """A simulated device of one user."""

    name: str
    user_id: str
    store: LocalStore
    queue: ChangeQueue
    api_client: HTTPClient
    orchestrator: SyncOrchestrator

    def sync(self) -> Any:
        """Run one sync cycle."""
        return self.orchestrator.sync_now()

    def title(self, task_id: str) -> str | None:
        """Title of a local task, or None if the device does not hold it."""
        record = self.store.find("tasks", task_id)
        return record.data.get("title") if record else None

    def close(self) -> None:
        self.api_client.close()
        self.queue.close()
        self.store.close()


class UvicornTestServer:
    """Uvicorn server running in a background thread for testing."""

    def __init__(self, app: Any, host: str = "127.0.0.1", port: int = 0) -> None:
        self.app = app
        self.host = host
        self.port = port
        self.server: uvicorn.Server | None = None
        self.thread: threading.Thread | None = None

    def start(self) -> int:
        """Start the server and return the port."""
        # Find a free port
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((self.host, 0))
            self.port = s.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
        )
        self.server = uvicorn.Server(config)

        self.thread = threading.Thread(target=self.server.run, daemon=True)
        self.thread.start()

        self._wait_for_ready()
        return self.port

    def _wait_for_ready(self, timeout: float = 5.0) -> None:
        """Wait for the server to be ready to accept connections."""
        start = time.time()
        while time.time() - start < timeout:
            try:
                with httpx.Client() as client:
                    response = client.get(f"http://{self.host}:{self.port}/health")
                    if response.status_code == 200:
                        return
            except httpx.TransportError:
                pass
            time.sleep(0.1)
        raise RuntimeError("Server failed to start in time")

    def stop(self) -> None:
        """Stop the server."""
        if self.server:
            self.server.should_exit = True
        if self.thread:
            self.thread.join(timeout=5.0)


@pytest.fixture
def test_server(tmp_path: Path) -> Generator[TestServer, None, None]:
    """Create and start a test server on a seeded database."""
    db_path = tmp_path / "server" / "test.db"
    db = Database(db_path)
    world = seed(db)

    server = UvicornTestServer(create_app(db))
    port = server.start()

    yield TestServer(db=db, url=f"http://127.0.0.1:{port}", world=world)

    server.stop()
    db.close()


@pytest.fixture
def device_factory(
    tmp_path: Path, test_server: TestServer
) -> Generator[Callable[..., SyncDevice], None, None]:
    """Factory fixture to create multiple devices."""
    devices: list[SyncDevice] = []

    def _create_device(name: str, user_id: str, token: str | None = None) -> SyncDevice:
        state_db = tmp_path / "devices" / name / "state.db"
        token = token or test_server.create_token(user_id)
        config = ServerConfig(server_url=test_server.url, token=token)
        api_client = HTTPClient(config)
        store = LocalStore(state_db)
        queue = ChangeQueue(state_db)
        device = SyncDevice(
            name=name,
            user_id=user_id,
            store=store,
            queue=queue,
            api_client=api_client,
            orchestrator=SyncOrchestrator(api_client, store, queue, pending_threshold=0),
        )
        devices.append(device)
        return device

    yield _create_device

    for device in devices:
        device.close()


@pytest.fixture
def alice_laptop(
    device_factory: Callable[..., SyncDevice], test_server: TestServer
) -> SyncDevice:
    return device_factory("alice-laptop", test_server.world.alice)


@pytest.fixture
def alice_phone(
    device_factory: Callable[..., SyncDevice], test_server: TestServer
) -> SyncDevice:
    return device_factory("alice-phone", test_server.world.alice)


@pytest.fixture
def bob_laptop(
    device_factory: Callable[..., SyncDevice], test_server: TestServer
) -> SyncDevice:
    return device_factory("bob-laptop", test_server.world.bob)
