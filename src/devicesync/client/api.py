"""HTTP client for the coordination backend.

This module provides:
- BackendClient: Request/response calls that do not go over the duplex
  connection (pairing, device registration, session recovery, unpair)
- Error classes mapping HTTP failures to engine error kinds
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

import httpx

from devicesync.client.session_store import parse_timestamp
from devicesync.core.config import ServerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Credential rejected (invalid/expired token or code)."""


class InvalidRequestError(APIError):
    """Request rejected as invalid (unknown code, bad payload)."""


class TransportError(APIError):
    """Backend unreachable or request timed out."""


@dataclass
class PairingGrant:
    """Credentials returned by a successful pairing exchange."""

    session_token: str
    device_id: str
    remote_user_id: str
    expires_at: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PairingGrant:
        """Create from API response dictionary."""
        return cls(
            session_token=data["sessionToken"],
            device_id=data["deviceId"],
            remote_user_id=data["remoteUserId"],
            expires_at=parse_timestamp(data["expiresAt"]),
        )


@dataclass
class TokenGrant:
    """Fresh token returned by session recovery."""

    session_token: str
    expires_at: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenGrant:
        """Create from API response dictionary."""
        return cls(
            session_token=data["sessionToken"],
            expires_at=parse_timestamp(data["expiresAt"]),
        )


def _detail(response: httpx.Response, default: str) -> str:
    try:
        return str(response.json().get("detail", default))
    except ValueError:
        return default


def _decode(response: httpx.Response, build: Callable[[dict[str, Any]], T]) -> T:
    """Build a grant from a 2xx body; a malformed body becomes APIError."""
    try:
        return build(response.json())
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise APIError(
            f"Malformed response from {response.request.url.path}: {e!r}", response.status_code
        ) from e


class BackendClient:
    """HTTP client for the coordination backend."""

    def __init__(
        self,
        config: ServerConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the backend client.

        Args:
            config: Server configuration (URL, timeout, SSL verification).
            transport: Optional httpx transport (used by tests).
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            transport=transport,
        )

    @property
    def config(self) -> ServerConfig:
        """Server configuration in use."""
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> BackendClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code in (401, 403):
            raise AuthenticationError(
                _detail(response, "Invalid or expired credentials"), response.status_code
            )
        if response.status_code in (400, 404, 410, 422):
            raise InvalidRequestError(_detail(response, "Invalid request"), response.status_code)
        if response.status_code >= 400:
            raise APIError(_detail(response, "Unknown error"), response.status_code)
        return response

    def _post(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        token: str | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """POST with error mapping; network failures become TransportError."""
        headers = {"Authorization": f"Bearer {token}"} if token else None
        kwargs: dict[str, Any] = {"json": json, "headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = self._client.post(path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request to {path} timed out") from e
        except httpx.RequestError as e:
            raise TransportError(f"Request to {path} failed: {e}") from e
        return self._handle_response(response)

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Session operations ===

    def pair(
        self,
        code: str,
        device_label: str | None = None,
        platform: str | None = None,
    ) -> PairingGrant:
        """Exchange a pairing code for a session.

        Args:
            code: Short-lived code entered by the user.
            device_label: Human-readable label of this device.
            platform: Operating system of this device.

        Returns:
            Session credentials.

        Raises:
            AuthenticationError: Code rejected or expired.
            InvalidRequestError: Code unknown or malformed.
            TransportError: Backend unreachable.
        """
        response = self._post(
            "/api/pair",
            json={"code": code, "deviceLabel": device_label, "platform": platform},
        )
        return _decode(response, PairingGrant.from_dict)

    def register_device(
        self,
        token: str,
        device_id: str,
        label: str,
        platform: str | None = None,
    ) -> None:
        """Associate a human-readable label with this device."""
        self._post(
            "/api/devices/register",
            json={"deviceId": device_id, "label": label, "platform": platform},
            token=token,
        )

    def recover_session(
        self,
        device_id: str,
        remote_user_id: str,
        timeout: float | None = None,
    ) -> TokenGrant:
        """Reissue a session token from the stored device/user identity.

        Raises:
            AuthenticationError: Backend refused recovery.
            TransportError: Backend unreachable or timed out.
        """
        response = self._post(
            "/api/session/recover",
            json={"deviceId": device_id, "remoteUserId": remote_user_id},
            timeout=timeout,
        )
        return _decode(response, TokenGrant.from_dict)

    def unpair(self, token: str) -> None:
        """Revoke this device's session on the backend."""
        self._post("/api/session/unpair", token=token)
