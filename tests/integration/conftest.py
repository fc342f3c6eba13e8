"""Pytest fixtures for integration tests.

This module provides fixtures for end-to-end testing with a real relay
server and real sync engines talking to it over HTTP and WebSocket.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Generator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import uvicorn
from httpx import Client

from devicesync.client.api import BackendClient
from devicesync.client.engine import SyncEngine
from devicesync.client.session_store import SessionStore
from devicesync.client.store import SQLiteLocalStore
from devicesync.core.config import EngineConfig, ServerConfig
from devicesync.core.crypto import generate_key
from devicesync.server.app import create_app
from devicesync.server.database import Database

E2E_CONFIG = EngineConfig(
    heartbeat_interval=0.5,
    reconnect_min_delay=0.05,
    reconnect_max_delay=0.2,
    max_reconnect_attempts=5,
    handshake_timeout=5.0,
    recovery_timeout=5.0,
    push_debounce=0.05,
    receive_timeout=0.1,
)


@dataclass
class TestServer:
    """Container for test server resources."""

    db: Database
    url: str
    thread: threading.Thread

    def issue_code(self, remote_user_id: str = "user-1") -> str:
        """Issue a pairing code for a remote user."""
        raw_code, _ = self.db.create_pairing_code(remote_user_id)
        return raw_code

    def publish(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        remote_user_id: str = "user-1",
    ) -> dict[str, Any]:
        """Publish an event the way the messaging bot does."""
        with Client() as http_client:
            response = http_client.post(
                f"{self.url}/api/events",
                json={
                    "remoteUserId": remote_user_id,
                    "eventId": event_id,
                    "eventType": event_type,
                    "payload": payload,
                },
            )
            response.raise_for_status()
            return dict(response.json())


@dataclass
class EngineTestClient:
    """Container for a simulated device."""

    name: str
    engine: SyncEngine
    store: SQLiteLocalStore
    session_store: SessionStore
    backend: BackendClient


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
        import socket

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

        # Wait for server to be ready
        self._wait_for_ready()

        return self.port

    def _wait_for_ready(self, timeout: float = 5.0) -> None:
        """Wait for the server to be ready to accept connections."""
        start = time.time()
        while time.time() - start < timeout:
            try:
                with Client() as client:
                    response = client.get(f"http://{self.host}:{self.port}/health")
                    if response.status_code == 200:
                        return
            except Exception:
                pass
            time.sleep(0.1)
        raise RuntimeError("Server failed to start in time")

    def stop(self) -> None:
        """Stop the server and wait for its thread."""
        if self.server:
            self.server.should_exit = True
        if self.thread:
            self.thread.join(timeout=5.0)


@pytest.fixture
def test_server(tmp_path: Path) -> Generator[TestServer, None, None]:
    """Create and start a relay server with its own database."""
    db_path = tmp_path / "server" / "relay.db"
    db = Database(db_path)

    server = UvicornTestServer(create_app(db))
    port = server.start()

    yield TestServer(
        db=db,
        url=f"http://127.0.0.1:{port}",
        thread=server.thread,  # type: ignore[arg-type]
    )

    # Cleanup
    server.stop()
    db.close()


@pytest.fixture
def engine_factory(tmp_path: Path, test_server: TestServer) -> Generator[Any, None, None]:
    """Factory fixture to create devices with real engines."""
    clients: list[EngineTestClient] = []

    def _create_client(name: str | None = None) -> EngineTestClient:
        if name is None:
            name = f"device-{len(clients) + 1}"

        device_dir = tmp_path / "clients" / name
        device_dir.mkdir(parents=True, exist_ok=True)

        store = SQLiteLocalStore(device_dir / "local.db")
        session_store = SessionStore(device_dir, generate_key())
        backend = BackendClient(ServerConfig(server_url=test_server.url))
        engine = SyncEngine(store, session_store, backend, E2E_CONFIG)

        client = EngineTestClient(
            name=name,
            engine=engine,
            store=store,
            session_store=session_store,
            backend=backend,
        )
        clients.append(client)
        return client

    yield _create_client

    # Cleanup
    for client in clients:
        client.engine.stop()
        client.backend.close()
        client.store.close()
