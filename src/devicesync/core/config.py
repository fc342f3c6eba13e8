"""Shared configuration classes for devicesync.

This module defines configuration classes used by both client and server components.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any


@dataclass
class ServerConfig:
    """Configuration for connecting to a coordination backend.

    Used by both the HTTP client (BackendClient) and the duplex
    transport (WebSocketTransport) to ensure consistent connection settings.

    Attributes:
        server_url: Base URL of the server (e.g., "https://sync.example.com").
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def ws_url(self) -> str:
        """Get WebSocket URL for the device event stream.

        The session token is sent as a bearer header, never in the URL.

        Returns:
            WebSocket URL of the device endpoint.
        """
        url = self.server_url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/ws/device"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS.

        Returns:
            True if server uses HTTPS.
        """
        return self.server_url.startswith("https://")


@dataclass
class EngineConfig:
    """Timing configuration for the sync engine.

    Attributes:
        heartbeat_interval: Seconds between heartbeats while connected.
        reconnect_min_delay: First backoff delay after a transport failure.
        reconnect_max_delay: Upper bound for the backoff delay.
        reconnect_backoff: Multiplier applied after each failed attempt.
        max_reconnect_attempts: Consecutive failures before giving up and
            surfacing a persistent-failure signal.
        handshake_timeout: Bound on connect + authenticate.
        recovery_timeout: Bound on the session recovery request.
        push_debounce: Quiet period used to coalesce snapshot pushes.
        receive_timeout: Poll interval for the receive loop.
    """

    heartbeat_interval: float = 15.0
    reconnect_min_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_backoff: float = 2.0
    max_reconnect_attempts: int = 10
    handshake_timeout: float = 10.0
    recovery_timeout: float = 10.0
    push_debounce: float = 0.5
    receive_timeout: float = 1.0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt`` (1-based)."""
        delay = self.reconnect_min_delay * (self.reconnect_backoff ** max(attempt - 1, 0))
        return float(min(delay, self.reconnect_max_delay))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Build from a config mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            values[key] = int(value) if key == "max_reconnect_attempts" else float(value)
        return cls(**values)
