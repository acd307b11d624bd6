"""Sync commands for the tasksync CLI.

Commands:
- login: Store the server URL and bearer token
- sync: Run one sync cycle, or keep syncing with --watch
- status: Show queue and watermark state
- retry-failed: Re-queue changes parked after repeated rejections
- reset: Drop local records, sync state and queued changes
"""

from __future__ import annotations

import sys
import time
from datetime import datetime
from typing import TYPE_CHECKING

import click

from tasksync.client.cli.config import (
    get_server_config,
    get_state_db,
    load_config,
    save_config,
)

if TYPE_CHECKING:
    from tasksync.client.api import HTTPClient
    from tasksync.client.state import LocalStore
    from tasksync.client.sync import ChangeQueue, SyncOrchestrator


def _open_orchestrator() -> tuple[HTTPClient, LocalStore, ChangeQueue, SyncOrchestrator]:
    """Build the sync stack from the stored configuration."""
    from tasksync.client.api import HTTPClient
    from tasksync.client.state import LocalStore
    from tasksync.client.sync import ChangeQueue, SyncOrchestrator

    server_config = get_server_config()
    if server_config is None:
        click.echo("Error: Not logged in. Run 'tasksync login' first.", err=True)
        sys.exit(1)

    state_db = get_state_db()
    client = HTTPClient(server_config)
    store = LocalStore(state_db)
    queue = ChangeQueue(state_db)
    return client, store, queue, SyncOrchestrator(client, store, queue)


@click.command()
@click.option("--server", required=True, help="Server URL (e.g., http://localhost:8000).")
@click.option("--token", required=True, help="Bearer token issued by the server admin.")
def login(server: str, token: str) -> None:
    """Store the server URL and token, after checking the server is up."""
    from tasksync.client.api import HTTPClient
    from tasksync.core.config import ServerConfig

    server_config = ServerConfig(server_url=server, token=token)
    with HTTPClient(server_config) as client:
        if not client.health_check():
            click.echo(f"Error: Could not connect to server at {server}", err=True)
            click.echo("Make sure the server is running and accessible.")
            sys.exit(1)

    config = load_config()
    config["server_url"] = server_config.server_url
    config["auth_token"] = token
    save_config(config)
    click.echo(f"Logged in to {server_config.server_url}")


@click.command()
@click.option("--watch", "-w", is_flag=True, help="Keep syncing in the background.")
@click.option(
    "--interval",
    type=float,
    default=300.0,
    show_default=True,
    help="Seconds between periodic syncs with --watch.",
)
def sync(watch: bool, interval: float) -> None:
    """Push local changes, then pull remote changes."""
    from tasksync.client.api import AuthenticationError

    client, store, queue, orchestrator = _open_orchestrator()
    try:
        if watch:
            orchestrator.start(interval=interval)
            click.echo(f"Syncing every {interval:.0f}s. Press Ctrl+C to stop.")
            try:
                while True:
                    time.sleep(1)
            except KeyboardInterrupt:
                click.echo("\nStopping...")
            finally:
                orchestrator.stop()
            return

        try:
            report = orchestrator.sync_now()
        except AuthenticationError:
            click.echo("Error: Token refused by server. Run 'tasksync login' again.", err=True)
            sys.exit(1)

        if report is None or report.ok:
            pushed = report.pushed if report else 0
            pulled = report.pulled if report else 0
            click.echo(f"Sync complete: {pushed} pushed, {pulled} pulled.")
            if report and report.rejected:
                click.echo(f"  {report.rejected} changes rejected (will retry).")
            if report and report.deleted:
                click.echo(f"  {report.deleted} records deleted on server.")
        else:
            click.echo(f"Sync failed: {report.error}", err=True)
            sys.exit(1)
    finally:
        client.close()
        queue.close()
        store.close()


@click.command()
def status() -> None:
    """Show pending changes and sync state."""
    client, store, queue, orchestrator = _open_orchestrator()
    try:
        current = orchestrator.status
        click.echo(f"Server:    {client.config.server_url}")
        click.echo(f"Records:   {store.count()}")
        click.echo(f"Pending:   {current.pending_count}")
        click.echo(f"Failed:    {current.failed_count}")
        if current.watermark is not None:
            click.echo(f"Watermark: {current.watermark}")
        if current.last_sync_at is not None:
            last = datetime.fromtimestamp(current.last_sync_at).strftime("%Y-%m-%d %H:%M:%S")
            click.echo(f"Last sync: {last}")
        else:
            click.echo("Last sync: never")

        for change in queue.list():
            marker = "!" if change.status.value == "failed" else " "
            click.echo(
                f" {marker} {change.operation.value:<8} {change.table}:{change.id}"
                f" (attempts: {change.attempts})"
            )
    finally:
        client.close()
        queue.close()
        store.close()


@click.command("retry-failed")
def retry_failed() -> None:
    """Re-queue changes parked after repeated rejections."""
    from tasksync.client.sync import ChangeQueue

    queue = ChangeQueue(get_state_db())
    try:
        count = queue.retry_failed()
    finally:
        queue.close()
    click.echo(f"Re-queued {count} changes.")


@click.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def reset(yes: bool) -> None:
    """Drop local records, the watermark and queued changes.

    The next sync pulls everything again.
    """
    from tasksync.client.state import LocalStore
    from tasksync.client.sync import ChangeQueue

    if not yes and not click.confirm("Unsynced local changes will be lost. Continue?"):
        sys.exit(0)

    state_db = get_state_db()
    store = LocalStore(state_db)
    queue = ChangeQueue(state_db)
    try:
        store.reset()
        queue.clear()
    finally:
        queue.close()
        store.close()
    click.echo("Local state reset.")
