"""Duplex connection to the coordination backend.

This module provides:
- DuplexTransport: Interface the ConnectionManager drives
- WebSocketTransport: WebSocket implementation
- ConnectionLost: Raised when an established connection drops

Handshake:
    Client ──upgrade + Bearer token──► Server
    Client ◄──────── welcome ───────── Server   (token accepted)

    A rejected token is signalled either by an HTTP 401/403 on the
    upgrade or by close code 4401 before the welcome frame. Both surface
    as AuthenticationError; every other failure is a TransportError.
"""

from __future__ import annotations

import contextlib
import json
import logging
import ssl
from typing import TYPE_CHECKING, Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from devicesync.client.api import AuthenticationError, TransportError

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from devicesync.core.config import ServerConfig

logger = logging.getLogger(__name__)

AUTH_FAILED_CLOSE_CODE = 4401


class ConnectionLost(Exception):
    """The duplex connection dropped."""


class DuplexTransport(Protocol):
    """Interface of an authenticated duplex connection."""

    async def connect(self, token: str) -> None:
        """Open and authenticate. Raises AuthenticationError or TransportError."""
        ...

    async def recv(self) -> dict[str, Any]:
        """Receive the next frame. Raises ConnectionLost."""
        ...

    async def send(self, message: dict[str, Any]) -> None:
        """Send a frame. Raises ConnectionLost."""
        ...

    async def acknowledge(self, event_id: str) -> None:
        """Acknowledge an inbound event. Raises ConnectionLost."""
        ...

    async def close(self) -> None:
        """Close the connection (idempotent)."""
        ...


def _is_auth_close(error: ConnectionClosed) -> bool:
    return error.rcvd is not None and error.rcvd.code == AUTH_FAILED_CLOSE_CODE


class WebSocketTransport:
    """WebSocket connection to the backend's device endpoint.

    Usage:
        transport = WebSocketTransport(server_config)
        await transport.connect(session_token)
        frame = await transport.recv()
        await transport.acknowledge(frame["event"]["eventId"])
        await transport.close()
    """

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the transport.

        Args:
            config: Server configuration with URL and SSL settings.
        """
        self._config = config
        self._ws: ClientConnection | None = None

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL."""
        return self._config.ws_url

    @property
    def connected(self) -> bool:
        """Check if a connection is open."""
        return self._ws is not None

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not self.ws_url.startswith("wss://"):
            return None
        ssl_context = ssl.create_default_context()
        if not self._config.verify_ssl:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
        return ssl_context

    async def connect(self, token: str) -> None:
        """Establish and authenticate the WebSocket connection."""
        try:
            self._ws = await websockets.connect(
                self.ws_url,
                ssl=self._ssl_context(),
                additional_headers={"Authorization": f"Bearer {token}"},
                open_timeout=None,  # ConnectionManager bounds the whole handshake
                close_timeout=5,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise AuthenticationError("Session token rejected", status) from e
            raise TransportError(f"Handshake failed with HTTP {status}", status) from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Connection failed: {e}") from e

        try:
            welcome = await self._recv_frame()
        except ConnectionClosed as e:
            self._ws = None
            if _is_auth_close(e):
                raise AuthenticationError("Session token rejected", 401) from e
            raise TransportError(f"Connection closed during handshake: {e}") from e

        if welcome.get("type") == "auth_error":
            await self.close()
            raise AuthenticationError(str(welcome.get("detail", "Session token rejected")), 401)
        if welcome.get("type") != "welcome":
            await self.close()
            raise TransportError(f"Unexpected handshake frame: {welcome.get('type')}")

        logger.info("Connected to %s", self.ws_url)

    async def _recv_frame(self) -> dict[str, Any]:
        if self._ws is None:
            raise ConnectionLost("Not connected")
        message = await self._ws.recv()
        try:
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            data = json.loads(message)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Invalid message received: %r", message[:100])
            return {}
        if not isinstance(data, dict):
            logger.warning("Unexpected message received: %s", message[:100])
            return {}
        return data

    async def recv(self) -> dict[str, Any]:
        """Receive the next frame as a dict (empty for unparseable frames)."""
        try:
            return await self._recv_frame()
        except ConnectionClosed as e:
            self._ws = None
            raise ConnectionLost(f"Connection closed: {e}") from e

    async def send(self, message: dict[str, Any]) -> None:
        """Send a frame as JSON."""
        if self._ws is None:
            raise ConnectionLost("Not connected")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            self._ws = None
            raise ConnectionLost(f"Connection closed: {e}") from e

    async def acknowledge(self, event_id: str) -> None:
        """Acknowledge an event to the backend."""
        await self.send({"type": "ack", "eventId": event_id})

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if self._ws:
            with contextlib.suppress(WebSocketException, OSError):
                await self._ws.close()
            self._ws = None
