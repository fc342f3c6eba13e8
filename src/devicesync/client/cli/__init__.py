"""Command-line interface for DeviceSync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- pair: Pair this device with a remote account
- unpair: Revoke and forget this device's session
- status: Show pairing and sync status
- run: Keep the local store in sync until interrupted
- server: Relay server commands
"""

from __future__ import annotations

import click

from devicesync.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    sanitize_device_label,
    save_config,
    setup_cli_logging,
)
from devicesync.client.cli.pairing import pair, unpair
from devicesync.client.cli.run import run
from devicesync.client.cli.server import server
from devicesync.client.cli.status import status


@click.group()
@click.version_option(package_name="devicesync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """DeviceSync - keep this device in sync with your remote assistant."""
    setup_cli_logging(verbose)


# Pairing commands
cli.add_command(pair)
cli.add_command(unpair)

# Sync commands
cli.add_command(status)
cli.add_command(run)

# Server commands
cli.add_command(server)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "sanitize_device_label",
    "save_config",
]
