"""Status command for the DeviceSync CLI.

Commands:
- status: Show pairing, local store, and server state
"""

from __future__ import annotations

import sys
from datetime import UTC, datetime

import click

from devicesync.client.cli.config import (
    get_config_dir,
    get_local_db_path,
    get_passphrase,
    get_server_config,
    load_config,
)


@click.command()
@click.option("--offline", is_flag=True, help="Do not contact the server.")
def status(offline: bool) -> None:
    """Show pairing and sync status."""
    from devicesync.client.api import BackendClient
    from devicesync.client.session_store import SessionStoreError, open_session_store
    from devicesync.client.store import SQLiteLocalStore

    config = load_config()
    server_config = get_server_config(config)

    click.echo(f"Config dir:   {get_config_dir()}")
    click.echo(f"Server:       {server_config.server_url if server_config else '(none)'}")
    click.echo(f"Device label: {config.get('device_label') or '(none)'}")

    try:
        session_store = open_session_store(get_config_dir(), get_passphrase())
        session = session_store.load()
    except SessionStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if session is None:
        click.echo("Paired:       no")
    else:
        click.echo(f"Paired:       {'yes' if session.paired else 'no'}")
        click.echo(f"Device ID:    {session.device_id}")
        if session.expires_at:
            state = "expired" if session.is_expired(datetime.now(UTC)) else "valid"
            click.echo(f"Session:      {state} until {session.expires_at.isoformat()}")

    db_path = get_local_db_path()
    if db_path.exists():
        store = SQLiteLocalStore(db_path)
        try:
            click.echo(f"Tasks:        {len(store.list_tasks())}")
            click.echo(f"Projects:     {len(store.list_projects())}")
            click.echo(f"Transactions: {len(store.list_transactions())}")
            click.echo(f"Applied events: {store.count_applied_events()}")
        finally:
            store.close()

    if server_config and not offline:
        with BackendClient(server_config) as backend:
            healthy = backend.health_check()
        label = click.style("reachable", fg="green") if healthy else click.style(
            "unreachable", fg="red"
        )
        click.echo(f"Server health: {label}")
