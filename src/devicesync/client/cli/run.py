"""Run command for the DeviceSync CLI.

Commands:
- run: Keep the local store in sync until interrupted
"""

from __future__ import annotations

import sys
import threading

import click

from devicesync.client.cli.config import (
    get_config_dir,
    get_engine_config,
    get_local_db_path,
    get_passphrase,
    get_server_config,
    load_config,
)

STATE_COLORS = {
    "connected": "green",
    "connecting": "yellow",
    "recovering": "yellow",
    "disconnected": "red",
}


@click.command()
@click.option("--notify/--no-notify", default=False, help="Show desktop notifications.")
def run(notify: bool) -> None:
    """Connect to the server and apply remote events until Ctrl-C."""
    from devicesync.client.api import BackendClient
    from devicesync.client.engine import SyncEngine
    from devicesync.client.notifications import attach_notifications
    from devicesync.client.session_store import SessionStoreError, open_session_store
    from devicesync.client.store import SQLiteLocalStore
    from devicesync.core.types import ConnectionState

    config = load_config()
    server_config = get_server_config(config)
    if server_config is None:
        click.echo("Error: No server configured. Run 'devicesync pair' first.", err=True)
        sys.exit(1)

    try:
        session_store = open_session_store(get_config_dir(), get_passphrase())
        session = session_store.load()
    except SessionStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if session is None or not session.paired:
        click.echo("Error: Device not paired. Run 'devicesync pair CODE' first.", err=True)
        sys.exit(1)

    store = SQLiteLocalStore(get_local_db_path())
    backend = BackendClient(server_config)
    engine = SyncEngine(store, session_store, backend, get_engine_config(config))
    gave_up = threading.Event()

    def on_status(state: ConnectionState) -> None:
        click.echo(click.style(f"● {state.value}", fg=STATE_COLORS.get(state.value)))

    def on_data_changed() -> None:
        click.echo("  ✓ Remote change applied")

    def on_session_recovered() -> None:
        click.echo("  Session renewed")

    def on_session_expired(recoverable: bool) -> None:
        if not recoverable:
            click.echo(
                click.style("Session expired. Run 'devicesync pair CODE' again.", fg="red"),
                err=True,
            )
            gave_up.set()

    def on_connection_failed(attempts: int) -> None:
        click.echo(
            click.style(f"Server unreachable after {attempts} attempts.", fg="red"),
            err=True,
        )
        gave_up.set()

    engine.signals.status_changed.connect(on_status)
    engine.signals.data_changed.connect(on_data_changed)
    engine.signals.session_recovered.connect(on_session_recovered)
    engine.signals.session_expired.connect(on_session_expired)
    engine.signals.connection_failed.connect(on_connection_failed)
    if notify:
        attach_notifications(engine.signals)

    click.echo(f"Syncing with {server_config.server_url} (Ctrl-C to stop)")
    engine.start()
    try:
        while not gave_up.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        engine.stop()
        backend.close()
        store.close()

    counts = engine.signals.sink.counts
    if counts:
        summary = ", ".join(f"{count} {category}" for category, count in sorted(counts.items()))
        click.echo(click.style(f"Swallowed errors: {summary}", fg="yellow"))

    if gave_up.is_set():
        sys.exit(1)
