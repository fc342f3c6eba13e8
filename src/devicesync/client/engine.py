"""Sync engine facade.

This module provides:
- SyncEngine: Wires the session store, local store, backend client and
  connection manager into one object the UI talks to

Architecture:
    ┌──────────────────────────── SyncEngine ─────────────────────────────┐
    │                                                                     │
    │  PairingProtocol ──► SessionStore ◄── SessionRecovery               │
    │        │                  │                 ▲                       │
    │        ▼                  ▼                 │                       │
    │  ConnectionManager ──► DuplexTransport ──► EventIngestionPipeline   │
    │        │                                          │                 │
    │        └──► OutboundSyncPusher ◄── LocalStore ◄───┘                 │
    │                                                                     │
    │  EngineSignals ──► UI observers                                     │
    └─────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

from devicesync.client.connection import ConnectionManager
from devicesync.client.handlers import build_dispatch_table
from devicesync.client.ingest import EventIngestionPipeline
from devicesync.client.pairing import PairingProtocol
from devicesync.client.pusher import OutboundSyncPusher
from devicesync.client.recovery import SessionRecovery
from devicesync.client.signals import EngineSignals
from devicesync.client.transport import WebSocketTransport
from devicesync.core.config import EngineConfig
from devicesync.core.types import ConnectionState

if TYPE_CHECKING:
    from devicesync.client.api import BackendClient
    from devicesync.client.handlers import EventHandler
    from devicesync.client.session_store import SessionStore, SyncSession
    from devicesync.client.store import LocalStore
    from devicesync.client.transport import DuplexTransport
    from devicesync.client.types import EventType

logger = logging.getLogger(__name__)


class SyncEngine:
    """Keeps the local store in sync with the coordination backend.

    Usage:
        engine = SyncEngine(store, session_store, backend)
        engine.signals.status_changed.connect(on_status)
        with engine:
            engine.pair("AB12CD", "Laptop")
            ...
    """

    def __init__(
        self,
        store: LocalStore,
        session_store: SessionStore,
        backend: BackendClient,
        config: EngineConfig | None = None,
        transport_factory: Callable[[], DuplexTransport] | None = None,
        handlers: Mapping[EventType, EventHandler] | None = None,
        signals: EngineSignals | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Local domain store.
            session_store: Durable session storage.
            backend: HTTP client for pairing and recovery.
            config: Timing configuration.
            transport_factory: Creates duplex transports (defaults to
                WebSocketTransport on the backend's server config).
            handlers: Handlers replacing or adding to the defaults.
            signals: Signals to emit on (a fresh set by default).
        """
        self._store = store
        self._session_store = session_store
        self._backend = backend
        self._config = config or EngineConfig()
        self.signals = signals or EngineSignals()

        if transport_factory is None:
            server_config = backend.config

            def transport_factory() -> DuplexTransport:
                return WebSocketTransport(server_config)

        self._handlers = build_dispatch_table(handlers)
        self._pusher = OutboundSyncPusher(
            store, self.signals.sink, debounce=self._config.push_debounce
        )
        self._recovery = SessionRecovery(
            session_store, backend, self.signals, timeout=self._config.recovery_timeout
        )
        self._connection = ConnectionManager(
            session_store=session_store,
            recovery=self._recovery,
            transport_factory=transport_factory,
            pipeline_factory=self._create_pipeline,
            pusher=self._pusher,
            signals=self.signals,
            config=self._config,
        )
        self._pairing = PairingProtocol(
            backend, session_store, self._connection, self.signals.sink
        )

    def _create_pipeline(self, transport: DuplexTransport) -> EventIngestionPipeline:
        return EventIngestionPipeline(self._store, transport, self._handlers, self.signals)

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._connection.state

    @property
    def session(self) -> SyncSession | None:
        """Stored session, if any."""
        return self._session_store.load()

    @property
    def pusher(self) -> OutboundSyncPusher:
        """Snapshot pusher (push statistics)."""
        return self._pusher

    @property
    def needs_repair(self) -> bool:
        """Check if the device is paired but can only resume via a new code.

        True after recovery failed: the session is still marked paired but
        the engine gave up and sits in disconnected.
        """
        if self.state != ConnectionState.DISCONNECTED or not self._connection.session_expired:
            return False
        session = self.session
        return session is not None and session.paired

    def start(self) -> None:
        """Start the engine; connects right away when paired."""
        logger.info("Starting sync engine")
        self._connection.start()

    def stop(self) -> None:
        """Stop the engine and close the connection."""
        logger.info("Stopping sync engine")
        self._connection.stop()

    def pair(self, code: str, device_label: str | None = None) -> SyncSession:
        """Pair this device with a code (see PairingProtocol.pair)."""
        return self._pairing.pair(code, device_label)

    def unpair(self) -> None:
        """Unpair this device (see PairingProtocol.unpair)."""
        self._pairing.unpair()

    def reconnect(self) -> None:
        """Retry connecting, e.g. after connection_failed."""
        self._connection.reconnect()

    def request_push(self) -> None:
        """Push a snapshot after a sync-relevant local mutation."""
        self._connection.request_push()

    def __enter__(self) -> SyncEngine:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
