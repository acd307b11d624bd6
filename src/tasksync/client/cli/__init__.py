"""Command-line interface for tasksync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- login: Store the server URL and token
- sync: Push local changes and pull remote ones
- status: Show pending changes and sync state
- retry-failed: Re-queue parked changes
- reset: Reset local state
- server: Server administration commands
"""

from __future__ import annotations

import logging

import click

from tasksync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_server_config,
    get_state_db,
    load_config,
    save_config,
)
from tasksync.client.cli.server import server
from tasksync.client.cli.sync import login, reset, retry_failed, status, sync


@click.group()
@click.version_option(package_name="tasksync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """tasksync - Offline-first sync for workspaces, projects and tasks."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Sync commands
cli.add_command(login)
cli.add_command(sync)
cli.add_command(status)
cli.add_command(retry_failed)
cli.add_command(reset)

# Server admin commands
cli.add_command(server)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
    "get_config_dir",
    "get_config_file",
    "get_server_config",
    "get_state_db",
    "load_config",
    "save_config",
]
