"""Encrypted persistence of pairing credentials.

This module provides:
- SyncSession: Pairing credentials of this installation
- SessionStore: Durable, encrypted key-value storage of the session
- open_session_store: Key provisioning via the OS keyring or a passphrase

The session file holds AES-256-GCM encrypted JSON. The store key is a
random 256-bit key kept in the OS keyring, or an Argon2id key derived
from a passphrase when no keyring is available.
"""

from __future__ import annotations

import base64
import dataclasses
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import keyring
from cryptography.exceptions import InvalidTag
from keyring.errors import KeyringError

from devicesync.core.crypto import (
    KEY_SIZE,
    derive_key,
    generate_key,
    generate_salt,
    seal,
    unseal,
)

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "session.json"
SALT_FILE_NAME = "session.salt"
KEYRING_SERVICE = "devicesync"
KEYRING_KEY_NAME = "session-store-key"
FILE_FORMAT_VERSION = 1
# Associated data binding the sealed document to its purpose
SEAL_CONTEXT = "devicesync-session-v1"


class SessionStoreError(Exception):
    """Exception raised for session store errors."""


@dataclass
class SyncSession:
    """Pairing credentials of this installation.

    Attributes:
        device_id: Opaque id of this installation.
        remote_user_id: Opaque id of the paired remote account.
        session_token: Bearer credential for the backend.
        expires_at: When the session token expires.
        paired: Whether this installation is paired.
        device_label: Human-readable label registered for the device.
    """

    device_id: str
    remote_user_id: str
    session_token: str | None = None
    expires_at: datetime | None = None
    paired: bool = True
    device_label: str | None = None

    def __post_init__(self) -> None:
        """Enforce that a paired session carries its credentials."""
        if self.paired and (not self.session_token or self.expires_at is None):
            raise SessionStoreError("A paired session requires a token and an expiry")

    @property
    def has_identity(self) -> bool:
        """Check if device and remote user identity are both known."""
        return bool(self.device_id) and bool(self.remote_user_id)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the session token has expired."""
        if self.expires_at is None:
            return True
        return (now or datetime.now(UTC)) >= self.expires_at

    def with_token(self, session_token: str, expires_at: datetime) -> SyncSession:
        """Return a copy with a fresh token; identity is left untouched."""
        return dataclasses.replace(
            self, session_token=session_token, expires_at=expires_at
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "device_id": self.device_id,
            "remote_user_id": self.remote_user_id,
            "session_token": self.session_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "paired": self.paired,
            "device_label": self.device_label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSession:
        """Create from a stored dictionary."""
        expires_at = data.get("expires_at")
        return cls(
            device_id=data["device_id"],
            remote_user_id=data["remote_user_id"],
            session_token=data.get("session_token"),
            expires_at=parse_timestamp(expires_at) if expires_at else None,
            paired=bool(data.get("paired", False)),
            device_label=data.get("device_label"),
        )


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class SessionStore:
    """Durable encrypted storage for the SyncSession.

    Thread-safe. Writes go to a temporary file that atomically replaces
    the session file, so a crash never leaves a half-written session.
    """

    def __init__(self, config_dir: Path, key: bytes) -> None:
        """Initialize the store (use open_session_store to provision the key).

        Args:
            config_dir: Directory holding the session file.
            key: 32-byte store key.
        """
        if len(key) != KEY_SIZE:
            raise SessionStoreError(f"Invalid store key: must be {KEY_SIZE} bytes, got {len(key)}")
        self._config_dir = Path(config_dir)
        self._key = key
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        """Path of the encrypted session file."""
        return self._config_dir / SESSION_FILE_NAME

    def load(self) -> SyncSession | None:
        """Load the stored session.

        Returns:
            The stored SyncSession, or None if nothing is stored.

        Raises:
            SessionStoreError: If the file is corrupted or the key is wrong.
        """
        with self._lock:
            if not self.path.exists():
                return None
            try:
                envelope = json.loads(self.path.read_text())
                plaintext = unseal(envelope["data"], self._key, SEAL_CONTEXT)
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                raise SessionStoreError(f"Corrupted session file: {e}") from e
            except InvalidTag as e:
                raise SessionStoreError("Invalid store key or corrupted session file") from e

        try:
            return SyncSession.from_dict(json.loads(plaintext))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise SessionStoreError(f"Invalid session format: {e}") from e

    def save(self, session: SyncSession) -> None:
        """Persist a session, replacing any stored one."""
        plaintext = json.dumps(session.to_dict()).encode("utf-8")
        envelope = {
            "version": FILE_FORMAT_VERSION,
            "data": seal(plaintext, self._key, SEAL_CONTEXT),
        }
        with self._lock:
            self._config_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(envelope, indent=2))
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        logger.debug("Session saved for device %s", session.device_id)

    def update_token(self, session_token: str, expires_at: datetime) -> SyncSession:
        """Install a fresh token, keeping device and user identity.

        Raises:
            SessionStoreError: If no session is stored.
        """
        with self._lock:
            session = self.load()
            if session is None:
                raise SessionStoreError("No session to update")
            updated = session.with_token(session_token, expires_at)
            self.save(updated)
        return updated

    def clear(self) -> None:
        """Remove the stored session."""
        with self._lock:
            self.path.unlink(missing_ok=True)
        logger.debug("Session cleared")


def _load_keyring_key() -> bytes:
    """Get the store key from the OS keyring, creating it on first use."""
    try:
        cached = keyring.get_password(KEYRING_SERVICE, KEYRING_KEY_NAME)
        if cached:
            return base64.b64decode(cached)
        key = generate_key()
        keyring.set_password(KEYRING_SERVICE, KEYRING_KEY_NAME, base64.b64encode(key).decode())
        return key
    except KeyringError as e:
        raise SessionStoreError(
            "OS keyring unavailable; provide a passphrase to protect the session"
        ) from e


def _derive_passphrase_key(config_dir: Path, passphrase: str) -> bytes:
    """Derive the store key from a passphrase and the persisted salt."""
    salt_file = config_dir / SALT_FILE_NAME
    if salt_file.exists():
        try:
            salt = base64.b64decode(salt_file.read_text())
        except ValueError as e:
            raise SessionStoreError(f"Corrupted salt file: {e}") from e
    else:
        salt = generate_salt()
        config_dir.mkdir(parents=True, exist_ok=True)
        salt_file.write_text(base64.b64encode(salt).decode())
    return derive_key(passphrase, salt)


def open_session_store(config_dir: Path, passphrase: str | None = None) -> SessionStore:
    """Open the session store of a config directory.

    Args:
        config_dir: Directory holding the session file.
        passphrase: Optional passphrase; when given the key is derived
            with Argon2id instead of being read from the OS keyring.

    Returns:
        SessionStore ready for use.

    Raises:
        SessionStoreError: If no key can be provisioned.
    """
    config_dir = Path(config_dir)
    if passphrase is not None:
        key = _derive_passphrase_key(config_dir, passphrase)
    else:
        key = _load_keyring_key()
    return SessionStore(config_dir, key)
