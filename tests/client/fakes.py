"""In-memory stand-ins for the backend side of the duplex connection."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from devicesync.client.api import AuthenticationError, TokenGrant
from devicesync.client.session_store import SyncSession
from devicesync.client.transport import ConnectionLost

_DROP = object()


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_session(
    token: str = "tok-1",
    device_id: str = "dev-1",
    remote_user_id: str = "user-1",
    paired: bool = True,
) -> SyncSession:
    """Create a paired session valid for a day."""
    return SyncSession(
        device_id=device_id,
        remote_user_id=remote_user_id,
        session_token=token,
        expires_at=datetime.now(UTC) + timedelta(days=1),
        paired=paired,
    )


def event_frame(event_id: str, event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Build an inbound event frame."""
    return {
        "type": "event",
        "event": {"eventId": event_id, "eventType": event_type, "payload": payload},
    }


class FakeBackend:
    """Scripted backend: accepts known tokens and delivers events at least once.

    Unacknowledged events are replayed on every connect, like the relay.
    """

    def __init__(self, valid_tokens: set[str] | None = None) -> None:
        self._lock = threading.Lock()
        self.valid_tokens: set[str] = set(valid_tokens or ())
        self.connect_errors: list[Exception] = []
        self.unreachable = False
        self.hang_connect = False
        self.connect_count = 0
        self.transports: list[FakeTransport] = []
        self.pending: dict[str, dict[str, Any]] = {}
        self.acks: list[str] = []
        self.sent: list[dict[str, Any]] = []

    def factory(self) -> FakeTransport:
        """Transport factory for the ConnectionManager."""
        transport = FakeTransport(self)
        with self._lock:
            self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport | None:
        """Most recent connected transport."""
        with self._lock:
            connected = [t for t in self.transports if t.is_open]
        return connected[-1] if connected else None

    @property
    def snapshots(self) -> list[dict[str, Any]]:
        """Snapshot frames received."""
        with self._lock:
            return [m for m in self.sent if m.get("type") == "snapshot"]

    @property
    def heartbeats(self) -> list[dict[str, Any]]:
        """Heartbeat frames received."""
        with self._lock:
            return [m for m in self.sent if m.get("type") == "heartbeat"]

    def publish(self, frame: dict[str, Any]) -> None:
        """Queue an event and push it to the connected transport, if any."""
        with self._lock:
            self.pending[frame["event"]["eventId"]] = frame
        transport = self.current
        if transport:
            transport.deliver(frame)

    def redeliver(self, event_id: str) -> None:
        """Push an already queued event again."""
        transport = self.current
        if transport:
            transport.deliver(self.pending[event_id])

    def drop(self) -> None:
        """Simulate a network drop of the current connection."""
        transport = self.current
        if transport:
            transport.deliver(_DROP)

    def _on_connect(self, transport: FakeTransport, token: str) -> None:
        with self._lock:
            self.connect_count += 1
            if self.connect_errors:
                raise self.connect_errors.pop(0)
            if self.unreachable:
                raise OSError("Connection refused")
            if token not in self.valid_tokens:
                raise AuthenticationError("Session token rejected", 401)
            replay = list(self.pending.values())
        for frame in replay:
            transport.deliver(frame)

    def _on_send(self, message: dict[str, Any]) -> None:
        with self._lock:
            self.sent.append(message)
            if message.get("type") == "ack":
                self.acks.append(message["eventId"])
                self.pending.pop(message["eventId"], None)


class FakeTransport:
    """DuplexTransport bound to a FakeBackend."""

    def __init__(self, backend: FakeBackend) -> None:
        self._backend = backend
        self._loop: asyncio.AbstractEventLoop | None = None
        self._inbox: asyncio.Queue[Any] | None = None
        self.is_open = False
        self.closed = False

    async def connect(self, token: str) -> None:
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        if self._backend.hang_connect:
            await asyncio.sleep(3600)
        self.is_open = True
        try:
            self._backend._on_connect(self, token)
        except Exception:
            self.is_open = False
            raise

    def deliver(self, frame: Any) -> None:
        """Thread-safe: enqueue a frame for recv()."""
        if self._loop is None or self._inbox is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._inbox.put_nowait, frame)

    async def recv(self) -> dict[str, Any]:
        if self._inbox is None or not self.is_open:
            raise ConnectionLost("Not connected")
        frame = await self._inbox.get()
        if frame is _DROP:
            self.is_open = False
            raise ConnectionLost("Connection dropped")
        return dict(frame)

    async def send(self, message: dict[str, Any]) -> None:
        if not self.is_open:
            raise ConnectionLost("Not connected")
        self._backend._on_send(message)

    async def acknowledge(self, event_id: str) -> None:
        await self.send({"type": "ack", "eventId": event_id})

    async def close(self) -> None:
        self.is_open = False
        self.closed = True


class RecordingTransport:
    """Minimal in-loop transport recording what is sent."""

    def __init__(self, fail_sends: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_sends = fail_sends

    @property
    def acks(self) -> list[str]:
        return [m["eventId"] for m in self.sent if m.get("type") == "ack"]

    async def connect(self, token: str) -> None:
        return None

    async def recv(self) -> dict[str, Any]:
        raise ConnectionLost("Not used")

    async def send(self, message: dict[str, Any]) -> None:
        if self.fail_sends:
            raise ConnectionLost("Connection closed")
        self.sent.append(message)

    async def acknowledge(self, event_id: str) -> None:
        await self.send({"type": "ack", "eventId": event_id})

    async def close(self) -> None:
        return None


def recovering_backend_client(
    backend: FakeBackend,
    new_token: str = "tok-recovered",
    succeed: bool = True,
) -> Any:
    """MagicMock BackendClient whose recover_session installs new_token."""
    from unittest.mock import MagicMock

    client = MagicMock()

    def recover_session(device_id: str, remote_user_id: str, timeout: float | None = None) -> TokenGrant:
        if not succeed:
            raise AuthenticationError("Device cannot be recovered", 401)
        with backend._lock:
            backend.valid_tokens.add(new_token)
        return TokenGrant(
            session_token=new_token,
            expires_at=datetime.now(UTC) + timedelta(days=30),
        )

    client.recover_session.side_effect = recover_session
    return client
