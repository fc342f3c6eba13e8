"""Pairing protocol.

This module provides:
- PairingProtocol: Turns a one-time code into a stored session
- PairingError: Pairing failure with a machine-readable reason

Flow:
    code ──► POST /api/pair ──► SessionStore.save
                                      │
                                      ├─► POST /api/devices/register (best effort)
                                      │
                                      └─► ConnectionManager.reconnect()
"""

from __future__ import annotations

import logging
import platform
from enum import Enum
from typing import TYPE_CHECKING

from devicesync.client.api import (
    APIError,
    AuthenticationError,
    InvalidRequestError,
)
from devicesync.client.session_store import SyncSession
from devicesync.client.signals import ErrorCategory

if TYPE_CHECKING:
    from devicesync.client.api import BackendClient
    from devicesync.client.connection import ConnectionManager
    from devicesync.client.session_store import SessionStore
    from devicesync.client.signals import ErrorSink

logger = logging.getLogger(__name__)


class PairingFailure(str, Enum):
    """Why a pairing attempt failed."""

    INVALID_CODE = "invalid-code"
    TRANSPORT_ERROR = "transport-error"


class PairingError(Exception):
    """Pairing failed; the session store was left untouched."""

    def __init__(self, reason: PairingFailure, message: str | None = None) -> None:
        super().__init__(message or reason.value)
        self.reason = reason


def normalize_code(code: str) -> str:
    """Normalize a user-entered pairing code.

    Raises:
        PairingError: If the code is empty.
    """
    normalized = "".join(code.split()).upper()
    if not normalized:
        raise PairingError(PairingFailure.INVALID_CODE, "Pairing code is empty")
    return normalized


class PairingProtocol:
    """Pairs and unpairs this installation with a remote account."""

    def __init__(
        self,
        backend: BackendClient,
        session_store: SessionStore,
        connection: ConnectionManager,
        sink: ErrorSink,
    ) -> None:
        self._backend = backend
        self._session_store = session_store
        self._connection = connection
        self._sink = sink

    def pair(self, code: str, device_label: str | None = None) -> SyncSession:
        """Exchange a pairing code for a session.

        Args:
            code: Code shown by the remote channel.
            device_label: Human-readable label for this device.

        Returns:
            The stored session.

        Raises:
            PairingError: invalid-code when the backend rejects the code,
                transport-error when it cannot be reached.
        """
        code = normalize_code(code)
        device_platform = platform.system() or None

        try:
            grant = self._backend.pair(code, device_label, device_platform)
        except (AuthenticationError, InvalidRequestError) as e:
            logger.warning("Pairing code rejected: %s", e)
            raise PairingError(PairingFailure.INVALID_CODE, str(e)) from e
        except APIError as e:
            logger.warning("Pairing failed: %s", e)
            raise PairingError(PairingFailure.TRANSPORT_ERROR, str(e)) from e

        session = SyncSession(
            device_id=grant.device_id,
            remote_user_id=grant.remote_user_id,
            session_token=grant.session_token,
            expires_at=grant.expires_at,
            paired=True,
            device_label=device_label,
        )
        self._session_store.save(session)
        logger.info("Paired as device %s", session.device_id)

        if device_label:
            try:
                self._backend.register_device(
                    grant.session_token, grant.device_id, device_label, device_platform
                )
            except APIError as e:
                self._sink.report(ErrorCategory.REGISTRATION, e, grant.device_id)

        self._connection.reconnect()
        return session

    def unpair(self) -> None:
        """Revoke the session (best effort), clear it, and disconnect."""
        session = self._session_store.load()
        if session is not None and session.session_token:
            try:
                self._backend.unpair(session.session_token)
            except APIError as e:
                self._sink.report(ErrorCategory.UNPAIR, e, session.device_id)

        self._session_store.clear()
        self._connection.disconnect()
        logger.info("Unpaired")
