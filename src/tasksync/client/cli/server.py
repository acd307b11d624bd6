"""Server administration commands for the tasksync CLI.

Commands:
- server serve: Run the sync server
- server create-token: Issue a bearer token for a user
- server purge-tombstones: Purge old deletion markers
"""

from __future__ import annotations

import os
import sys
from datetime import timedelta
from pathlib import Path

import click


def _resolve_db_path(db_path: str | None) -> Path:
    return Path(db_path or os.environ.get("TASKSYNC_DB_PATH", "tasksync.db"))


@click.group()
def server() -> None:
    """Server management commands.

    These commands are for server administrators to manage the tasksync server.
    """


@server.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, type=int, show_default=True, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the sync server (configured through TASKSYNC_* variables)."""
    import uvicorn

    uvicorn.run("tasksync.server.app:app_factory", factory=True, host=host, port=port)


@server.command("create-token")
@click.argument("user_id")
@click.option(
    "--expires-in-days",
    type=int,
    default=None,
    help="Token lifetime in days (default: no expiry).",
)
@click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: TASKSYNC_DB_PATH or ./tasksync.db).",
)
def create_token_cmd(user_id: str, expires_in_days: int | None, db_path: str | None) -> None:
    """Issue a bearer token resolving to USER_ID.

    The raw token is printed once; only its hash is stored.
    """
    from tasksync.server.database import Database

    db = Database(_resolve_db_path(db_path))
    try:
        expires_in = timedelta(days=expires_in_days) if expires_in_days else None
        raw_token, token = db.create_token(user_id, expires_in=expires_in)
    finally:
        db.close()

    click.echo(f"Token for {user_id} (id {token.id}):")
    click.echo(raw_token)


@server.command("purge-tombstones")
@click.option(
    "--older-than-days",
    "-d",
    type=int,
    default=None,
    help="Delete tombstones older than N days (default: use server config).",
)
@click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: TASKSYNC_DB_PATH or ./tasksync.db).",
)
def purge_tombstones_cmd(older_than_days: int | None, db_path: str | None) -> None:
    """Purge deletion markers older than the retention period.

    Clients that have not pulled since then miss those deletions and need a
    'tasksync reset'.

    Examples:

        # Purge using server defaults (30 days)
        tasksync server purge-tombstones

        # Purge tombstones older than 7 days
        tasksync server purge-tombstones --older-than-days 7
    """
    from tasksync.server.database import Database
    from tasksync.server.scheduler import purge_tombstones

    default_days = int(os.environ.get("TASKSYNC_TOMBSTONE_RETENTION_DAYS", "30"))
    days = older_than_days if older_than_days is not None else default_days

    db_file = _resolve_db_path(db_path)
    if not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)

    click.echo(f"Database: {db_file}")
    click.echo(f"Purging tombstones older than {days} days...")

    db = Database(db_file)
    try:
        deleted = purge_tombstones(db, days)
    finally:
        db.close()

    if deleted > 0:
        click.echo(f"Purged {deleted} tombstones.")
    else:
        click.echo("No tombstones to purge.")
