"""Connection lifecycle for the sync engine.

This module provides:
- ConnectionManager: Owns the duplex connection and the ConnectionState

State machine:

    disconnected ──start/reconnect──► connecting ──accepted──► connected
         ▲                             │   ▲  ▲                    │
         │        token rejected       │   │  └──── drop ──────────┘
         │                             ▼   │ (backoff)
         └──── recovery failed ─── recovering
                                       │
                                       └──── recovered ──► connecting

    connecting ──attempt ceiling──► disconnected  (connection_failed)

The manager runs on its own thread with its own asyncio loop; every
public method is thread-safe and returns immediately.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from devicesync.client.api import AuthenticationError, TransportError
from devicesync.client.session_store import SessionStoreError
from devicesync.client.signals import ErrorCategory
from devicesync.client.transport import ConnectionLost
from devicesync.client.types import InvalidEventError, RemoteEvent
from devicesync.core.config import EngineConfig
from devicesync.core.types import ConnectionState

if TYPE_CHECKING:
    from devicesync.client.ingest import EventIngestionPipeline
    from devicesync.client.pusher import OutboundSyncPusher
    from devicesync.client.recovery import SessionRecovery
    from devicesync.client.session_store import SessionStore, SyncSession
    from devicesync.client.signals import EngineSignals
    from devicesync.client.transport import DuplexTransport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], "DuplexTransport"]
PipelineFactory = Callable[["DuplexTransport"], "EventIngestionPipeline"]


class ConnectionManager:
    """Keeps the duplex connection up for as long as the process runs.

    Usage:
        manager = ConnectionManager(
            session_store=store,
            recovery=recovery,
            transport_factory=lambda: WebSocketTransport(server_config),
            pipeline_factory=make_pipeline,
            pusher=pusher,
            signals=signals,
        )
        manager.start()
        # ... state changes arrive through signals.status_changed
        manager.stop()
    """

    def __init__(
        self,
        session_store: SessionStore,
        recovery: SessionRecovery,
        transport_factory: TransportFactory,
        pipeline_factory: PipelineFactory,
        pusher: OutboundSyncPusher,
        signals: EngineSignals,
        config: EngineConfig | None = None,
    ) -> None:
        """Initialize the connection manager.

        Args:
            session_store: Source of the session token.
            recovery: Invoked when the backend rejects the token.
            transport_factory: Creates a fresh transport per connection.
            pipeline_factory: Creates the ingestion pipeline of a connection.
            pusher: Snapshot pusher triggered on every connect.
            signals: Engine signals.
            config: Timing configuration.
        """
        self._session_store = session_store
        self._recovery = recovery
        self._transport_factory = transport_factory
        self._pipeline_factory = pipeline_factory
        self._pusher = pusher
        self._signals = signals
        self._config = config or EngineConfig()

        self._state = ConnectionState.DISCONNECTED
        self._transport: DuplexTransport | None = None

        # Control flags, only touched on the engine loop
        self._active = False
        self._stopping = False
        self._reconnect_requested = False
        self._session_expired = False

        # Thread and loop
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake_event: asyncio.Event | None = None  # For interruptible sleep
        self._ready = threading.Event()

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def session_expired(self) -> bool:
        """Check if the last session was given up after failed recovery."""
        return self._session_expired

    @property
    def running(self) -> bool:
        """Check if the engine thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    # === Public, thread-safe API ===

    def start(self) -> None:
        """Start the manager in a background thread.

        Connects right away when a paired session is stored; otherwise
        stays disconnected until reconnect() is called.
        """
        if self.running:
            logger.warning("ConnectionManager already running")
            return

        self._stopping = False
        self._ready.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="ConnectionManager",
            daemon=True,
        )
        self._thread.start()
        self._ready.wait(timeout=5.0)
        logger.info("ConnectionManager started")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the manager.

        Timers are cancelled and the transport is closed without any
        further reconnect. An event being applied is allowed to finish.
        """
        if self._loop and not self._loop.is_closed():
            with contextlib.suppress(RuntimeError):
                self._loop.call_soon_threadsafe(self._signal_stop)

        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("ConnectionManager did not stop within %.0fs", timeout)
            self._thread = None

        logger.info("ConnectionManager stopped")

    def reconnect(self) -> None:
        """(Re)connect with the currently stored credentials.

        From disconnected this starts connecting; while connected it drops
        the current connection and handshakes again (new pairing).
        """
        self._call_soon(self._signal_reconnect)

    def disconnect(self) -> None:
        """Drop the connection and stay disconnected (e.g. after unpair)."""
        self._call_soon(self._signal_disconnect)

    def request_push(self) -> None:
        """Ask for a snapshot push after a sync-relevant local mutation."""
        self._call_soon(self._pusher.trigger)

    def _call_soon(self, callback: Callable[[], Any]) -> None:
        if self._loop is None or self._loop.is_closed():
            logger.debug("ConnectionManager not running, ignoring %s", callback.__name__)
            return
        with contextlib.suppress(RuntimeError):
            self._loop.call_soon_threadsafe(callback)

    # === Loop-side control ===

    def _signal_stop(self) -> None:
        self._stopping = True
        self._active = False
        self._wake()

    def _signal_reconnect(self) -> None:
        self._active = True
        self._session_expired = False
        if self._state == ConnectionState.CONNECTED:
            self._reconnect_requested = True
        self._wake()

    def _signal_disconnect(self) -> None:
        self._active = False
        self._reconnect_requested = self._state == ConnectionState.CONNECTED
        self._wake()

    def _wake(self) -> None:
        if self._wake_event:
            self._wake_event.set()

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.info("Connection state: %s -> %s", self._state.value, state.value)
        self._state = state
        self._signals.status_changed.emit(state)

    def _consume_wake(self) -> None:
        """Forget wake-ups whose flags the caller has just checked."""
        if self._wake_event:
            self._wake_event.clear()

    async def _sleep(self, delay: float) -> None:
        """Sleep that wakes early on stop/reconnect/disconnect.

        A wake-up that arrived since the last _consume_wake() ends the
        sleep at once, so a stop() sent mid-handshake is never lost.
        """
        assert self._wake_event is not None
        if self._stopping:
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wake_event.wait(), timeout=delay)

    # === Engine loop ===

    def _run_loop(self) -> None:
        """Run the async event loop in a thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._wake_event = asyncio.Event()

        try:
            self._loop.run_until_complete(self._main())
        finally:
            self._loop.run_until_complete(self._loop.shutdown_default_executor())
            self._loop.close()
            self._loop = None
            self._wake_event = None
            self._ready.set()

    async def _main(self) -> None:
        session = await self._load_session()
        self._active = session is not None and session.paired
        self._ready.set()

        failures = 0
        while not self._stopping:
            if not self._active:
                self._consume_wake()
                self._set_state(ConnectionState.DISCONNECTED)
                await self._sleep(3600.0)
                continue
            try:
                await self._connection_cycle()
            except Exception as e:
                # Last resort: keep the engine alive and retry after a backoff
                failures += 1
                self._signals.sink.report(ErrorCategory.CONNECTION, e, self._state.value)
                self._set_state(ConnectionState.DISCONNECTED)
                await self._sleep(self._config.backoff_delay(failures))
            else:
                failures = 0

        self._set_state(ConnectionState.DISCONNECTED)

    async def _load_session(self) -> SyncSession | None:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._session_store.load)
        except SessionStoreError as e:
            logger.error("Cannot read session: %s", e)
            return None

    async def _connection_cycle(self) -> None:
        """Connect, stay connected, reconnect; returns when deactivated."""
        attempt = 0
        recovered_since_connect = False

        while self._active and not self._stopping:
            self._consume_wake()
            session = await self._load_session()
            if session is None or not session.paired or not session.session_token:
                logger.info("No paired session, staying disconnected")
                self._active = False
                return

            self._set_state(ConnectionState.CONNECTING)
            try:
                transport = await self._handshake(session.session_token)
            except AuthenticationError as e:
                logger.warning("Session token rejected: %s", e)
                if recovered_since_connect:
                    # A freshly recovered token was rejected too
                    self._give_up_session()
                    return
                self._set_state(ConnectionState.RECOVERING)
                result = await self._recovery.recover()
                if self._stopping:
                    return
                if not result.recovered:
                    self._give_up_session()
                    return
                recovered_since_connect = True
                attempt = 0
                continue
            except TransportError as e:
                attempt += 1
                logger.debug("Connection error: %s", e)
                if attempt >= self._config.max_reconnect_attempts:
                    logger.error("Giving up after %d connection attempts", attempt)
                    self._active = False
                    self._set_state(ConnectionState.DISCONNECTED)
                    self._signals.connection_failed.emit(attempt)
                    return
                delay = self._config.backoff_delay(attempt)
                logger.info(
                    "Connection attempt %d/%d failed, retrying in %.1fs...",
                    attempt,
                    self._config.max_reconnect_attempts,
                    delay,
                )
                await self._sleep(delay)
                continue

            if self._stopping or not self._active:
                await transport.close()
                return

            attempt = 0
            recovered_since_connect = False
            await self._run_connected(transport)
            reconnect_now = self._reconnect_requested
            self._reconnect_requested = False
            self._consume_wake()

            if self._stopping or not self._active:
                return
            if reconnect_now:
                continue

            # Transport dropped: back off before the next handshake
            self._set_state(ConnectionState.CONNECTING)
            attempt = 1
            delay = self._config.backoff_delay(attempt)
            logger.info("Connection lost, reconnecting in %.1fs...", delay)
            await self._sleep(delay)

    def _give_up_session(self) -> None:
        self._active = False
        self._session_expired = True
        self._set_state(ConnectionState.DISCONNECTED)
        logger.warning("Session expired, re-pairing required")
        self._signals.session_expired.emit(False)

    async def _handshake(self, token: str) -> DuplexTransport:
        """Connect and authenticate within the handshake timeout."""
        transport = self._transport_factory()
        try:
            await asyncio.wait_for(
                transport.connect(token), timeout=self._config.handshake_timeout
            )
        except TimeoutError as e:
            await transport.close()
            raise TransportError(
                f"Handshake timed out after {self._config.handshake_timeout:.0f}s"
            ) from e
        except (AuthenticationError, TransportError):
            await transport.close()
            raise
        except (OSError, ConnectionLost) as e:
            await transport.close()
            raise TransportError(f"Connection failed: {e}") from e
        except Exception:
            await transport.close()
            raise
        return transport

    async def _run_connected(self, transport: DuplexTransport) -> None:
        """Run while connected: heartbeat, snapshot push, event intake."""
        self._transport = transport
        self._set_state(ConnectionState.CONNECTED)

        heartbeat_task = asyncio.create_task(self._heartbeat_loop(transport))
        self._pusher.attach(transport)
        self._pusher.trigger()
        pipeline = self._pipeline_factory(transport)

        try:
            while not self._stopping and not self._reconnect_requested:
                try:
                    message = await asyncio.wait_for(
                        transport.recv(),
                        timeout=self._config.receive_timeout,  # Check flags periodically
                    )
                except TimeoutError:
                    continue
                except ConnectionLost as e:
                    logger.warning("Connection lost: %s", e)
                    break
                await self._handle_message(message, pipeline)
        finally:
            heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task
            self._pusher.detach()
            await transport.close()
            self._transport = None

    async def _handle_message(
        self,
        message: dict[str, Any],
        pipeline: EventIngestionPipeline,
    ) -> None:
        """Handle one frame from the backend.

        Supported frame types:
        - event: {"type": "event", "event": {"eventId", "eventType", "payload", ...}}
        - heartbeat_ack: reply to our heartbeat
        """
        msg_type = message.get("type")

        if msg_type == "event":
            try:
                event = RemoteEvent.from_message(message.get("event") or {})
            except InvalidEventError as e:
                self._signals.sink.report(ErrorCategory.MESSAGE, e)
                return
            await pipeline.handle(event)
        elif msg_type == "heartbeat_ack":
            logger.debug("Heartbeat acknowledged")
        else:
            logger.debug("Ignoring message type %r", msg_type)

    async def _heartbeat_loop(self, transport: DuplexTransport) -> None:
        """Send periodic heartbeats."""
        while True:
            await asyncio.sleep(self._config.heartbeat_interval)
            try:
                await transport.send({"type": "heartbeat"})
            except ConnectionLost:
                break
