"""Relay server commands for the DeviceSync CLI.

Commands:
- server serve: Run the reference relay server
- server issue-code: Issue a pairing code for a remote user
"""

from __future__ import annotations

import os
from pathlib import Path

import click


def _resolve_db_path(db_path: str | None) -> Path:
    return Path(db_path or os.environ.get("DEVICESYNC_DB_PATH", "devicesync.db"))


@click.group()
def server() -> None:
    """Relay server commands.

    The relay is a development stand-in for the coordination backend.
    """


@server.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port.")
@click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: DEVICESYNC_DB_PATH or ./devicesync.db).",
)
@click.option(
    "--log-path",
    type=click.Path(),
    default=None,
    help="Also write logs to this file.",
)
def serve(host: str, port: int, db_path: str | None, log_path: str | None) -> None:
    """Run the relay server with uvicorn."""
    import uvicorn

    from devicesync.server.app import RELAY_KEY, create_app, setup_logging
    from devicesync.server.database import Database

    setup_logging(Path(log_path) if log_path else None)
    resolved_db_path = _resolve_db_path(db_path)
    click.echo(f"Serving relay on http://{host}:{port} (database: {resolved_db_path})")

    app = create_app(db=Database(resolved_db_path), relay_key=RELAY_KEY)
    uvicorn.run(app, host=host, port=port)


@server.command("issue-code")
@click.argument("remote_user_id")
@click.option(
    "--db-path",
    type=click.Path(),
    default=None,
    help="Path to database file (default: DEVICESYNC_DB_PATH or ./devicesync.db).",
)
def issue_code(remote_user_id: str, db_path: str | None) -> None:
    """Issue a pairing code for REMOTE_USER_ID.

    Examples:

        devicesync server issue-code telegram:12345
    """
    from devicesync.server.database import Database

    db = Database(_resolve_db_path(db_path))
    try:
        raw_code, pairing_code = db.create_pairing_code(remote_user_id)
    finally:
        db.close()

    click.echo(f"Pairing code: {raw_code}")
    click.echo(f"Expires at:   {pairing_code.expires_at.isoformat()}")
