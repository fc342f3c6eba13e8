"""Pairing commands for the DeviceSync CLI.

Commands:
- pair: Pair this device with a remote account
- unpair: Revoke and forget this device's session
"""

from __future__ import annotations

import socket
import sys

import click

from devicesync.client.cli.config import (
    get_config_dir,
    get_engine_config,
    get_local_db_path,
    get_passphrase,
    get_server_config,
    load_config,
    sanitize_device_label,
    save_config,
)


@click.command()
@click.argument("code")
@click.option(
    "--server",
    default=None,
    help="Server URL (e.g., http://localhost:8000). Saved for later commands.",
)
@click.option(
    "--label",
    default=None,
    help="Device label shown on the remote side (default: hostname).",
)
def pair(code: str, server: str | None, label: str | None) -> None:
    """Pair this device using a CODE from the remote channel."""
    from devicesync.client.api import BackendClient
    from devicesync.client.engine import SyncEngine
    from devicesync.client.pairing import PairingError, PairingFailure
    from devicesync.client.session_store import SessionStoreError, open_session_store
    from devicesync.client.store import SQLiteLocalStore

    config = load_config()
    if server:
        config["server_url"] = server.rstrip("/")

    server_config = get_server_config(config)
    if server_config is None:
        click.echo("Error: No server configured. Use --server URL.", err=True)
        sys.exit(1)

    device_label = sanitize_device_label(label or socket.gethostname())
    if label and device_label != label:
        click.echo(f"Note: Device label sanitized to '{device_label}'")

    try:
        session_store = open_session_store(get_config_dir(), get_passphrase())
    except SessionStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"Pairing '{device_label}' with {server_config.server_url}...")

    store = SQLiteLocalStore(get_local_db_path())
    try:
        with BackendClient(server_config) as backend:
            engine = SyncEngine(store, session_store, backend, get_engine_config(config))
            session = engine.pair(code, device_label)
    except PairingError as e:
        if e.reason == PairingFailure.INVALID_CODE:
            click.echo("Error: Invalid or expired pairing code.", err=True)
        else:
            click.echo(f"Error: Could not reach server: {e}", err=True)
        sys.exit(1)
    except SessionStoreError as e:
        click.echo(f"Error: Could not save session: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()

    config["device_label"] = device_label
    save_config(config)

    click.echo("\nDevice paired successfully!")
    click.echo(f"Device ID: {session.device_id}")
    if session.expires_at:
        click.echo(f"Session valid until: {session.expires_at.isoformat()}")
    click.echo("Run 'devicesync run' to start syncing.")


@click.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
def unpair(yes: bool) -> None:
    """Revoke this device's session and forget it locally."""
    from devicesync.client.api import BackendClient
    from devicesync.client.engine import SyncEngine
    from devicesync.client.session_store import SessionStoreError, open_session_store
    from devicesync.client.store import SQLiteLocalStore

    config = load_config()
    server_config = get_server_config(config)
    if server_config is None:
        click.echo("Error: No server configured. Nothing to unpair.", err=True)
        sys.exit(1)

    try:
        session_store = open_session_store(get_config_dir(), get_passphrase())
        session = session_store.load()
    except SessionStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if session is None:
        click.echo("This device is not paired.")
        return

    if not yes and not click.confirm("Unpair this device?"):
        sys.exit(0)

    store = SQLiteLocalStore(get_local_db_path())
    try:
        with BackendClient(server_config) as backend:
            engine = SyncEngine(store, session_store, backend, get_engine_config(config))
            engine.unpair()
            failures = engine.signals.sink.counts.get("unpair", 0)
    finally:
        store.close()

    if failures:
        click.echo("Warning: Server could not be notified; session removed locally.", err=True)
    click.echo("Device unpaired.")
