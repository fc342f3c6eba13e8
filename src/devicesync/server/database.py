"""Server database using SQLAlchemy with SQLite.

This module provides:
- Pairing code issue and redemption
- Device registration and revocation
- Token-based authentication
- Per-device event queue (at-least-once delivery)
- Latest snapshot per device
"""

from __future__ import annotations

import json
import secrets
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from devicesync.core.crypto import hash_token
from devicesync.server.models import (
    Base,
    Device,
    DeviceSnapshot,
    PairingCode,
    PendingEvent,
    Token,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

# Unambiguous characters for human-typed codes (no 0/O, 1/I)
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8

PAIRING_CODE_TTL = timedelta(minutes=10)
SESSION_TOKEN_TTL = timedelta(days=30)


def _as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo; stored values are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def generate_pairing_code() -> str:
    """Generate a random human-typeable pairing code."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class Database:
    """SQLAlchemy database for relay metadata.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Create engine with check_same_thread=False for multi-threaded access
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )

        # Enable WAL mode
        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)

    @property
    def db_path(self) -> Path:
        """Path of the database file."""
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    # === Pairing codes ===

    def create_pairing_code(
        self,
        remote_user_id: str,
        expires_in: timedelta = PAIRING_CODE_TTL,
    ) -> tuple[str, PairingCode]:
        """Issue a one-time pairing code for a remote user.

        Args:
            remote_user_id: Account the paired device will belong to.
            expires_in: Code lifetime.

        Returns:
            Tuple of (raw_code, PairingCode object).
        """
        raw_code = generate_pairing_code()
        now = datetime.now(UTC)

        with self._session() as session:
            pairing_code = PairingCode(
                code_hash=hash_token(raw_code),
                remote_user_id=remote_user_id,
                created_at=now,
                expires_at=now + expires_in,
            )
            session.add(pairing_code)
            session.commit()
            session.refresh(pairing_code)
            session.expunge(pairing_code)
            return raw_code, pairing_code

    def redeem_pairing_code(
        self,
        raw_code: str,
        label: str | None = None,
        platform: str | None = None,
    ) -> Device | None:
        """Consume a pairing code and create the device it pairs.

        Args:
            raw_code: Code entered on the device.
            label: Device label.
            platform: Device operating system.

        Returns:
            The new Device, or None if the code is unknown, used or expired.
        """
        code_hash = hash_token(raw_code.strip().upper())
        now = datetime.now(UTC)

        with self._session() as session:
            stmt = select(PairingCode).where(
                PairingCode.code_hash == code_hash,
                PairingCode.used_by_device_id.is_(None),
            )
            pairing_code = session.execute(stmt).scalar_one_or_none()
            if pairing_code is None or _as_utc(pairing_code.expires_at) < now:
                return None

            device = Device(
                id="dev_" + uuid.uuid4().hex,
                remote_user_id=pairing_code.remote_user_id,
                label=label,
                platform=platform,
                created_at=now,
                last_seen=now,
            )
            session.add(device)
            session.flush()
            pairing_code.used_by_device_id = device.id
            pairing_code.used_at = now
            session.commit()
            session.refresh(device)
            session.expunge(device)
            return device

    # === Devices ===

    def get_device(self, device_id: str) -> Device | None:
        """Get a device by ID."""
        with self._session() as session:
            device = session.get(Device, device_id)
            if device:
                session.expunge(device)
            return device

    def list_devices(self, remote_user_id: str, include_revoked: bool = False) -> list[Device]:
        """List the devices paired with a remote user."""
        with self._session() as session:
            stmt = select(Device).where(Device.remote_user_id == remote_user_id)
            if not include_revoked:
                stmt = stmt.where(Device.revoked == False)  # noqa: E712
            devices = list(session.execute(stmt.order_by(Device.created_at)).scalars().all())
            for device in devices:
                session.expunge(device)
            return devices

    def update_device(
        self,
        device_id: str,
        label: str | None = None,
        platform: str | None = None,
    ) -> Device | None:
        """Update a device's label and platform."""
        with self._session() as session:
            device = session.get(Device, device_id)
            if device is None:
                return None
            if label is not None:
                device.label = label
            if platform is not None:
                device.platform = platform
            session.commit()
            session.refresh(device)
            session.expunge(device)
            return device

    def update_device_last_seen(self, device_id: str) -> None:
        """Update device's last seen timestamp."""
        with self._session() as session:
            device = session.get(Device, device_id)
            if device:
                device.last_seen = datetime.now(UTC)
                session.commit()

    def revoke_device(self, device_id: str) -> bool:
        """Revoke a device and all of its tokens.

        Returns:
            True if the device existed.
        """
        with self._session() as session:
            device = session.get(Device, device_id)
            if device is None:
                return False
            device.revoked = True
            for token in device.tokens:
                token.revoked = True
            session.commit()
            return True

    # === Tokens ===

    def create_token(
        self,
        device_id: str,
        expires_in: timedelta = SESSION_TOKEN_TTL,
    ) -> tuple[str, Token]:
        """Create a new session token.

        Args:
            device_id: Device to associate with the token.
            expires_in: Token lifetime.

        Returns:
            Tuple of (raw_token, Token object).
        """
        raw_token = "ds_" + secrets.token_urlsafe(32)
        now = datetime.now(UTC)

        with self._session() as session:
            token = Token(
                device_id=device_id,
                token_hash=hash_token(raw_token),
                created_at=now,
                expires_at=now + expires_in,
            )
            session.add(token)
            session.commit()
            session.refresh(token)
            session.expunge(token)
            return raw_token, token

    def validate_token(self, raw_token: str) -> Token | None:
        """Validate a token and return it if valid.

        Args:
            raw_token: Raw token string.

        Returns:
            Token if valid (not revoked, not expired, device not revoked).
        """
        token_hash = hash_token(raw_token)
        with self._session() as session:
            stmt = select(Token).where(Token.token_hash == token_hash, Token.revoked == False)  # noqa: E712
            token = session.execute(stmt).scalar_one_or_none()

            if token is None or token.device.revoked:
                return None
            if _as_utc(token.expires_at) < datetime.now(UTC):
                return None

            session.expunge(token)
            return token

    def revoke_token(self, token_id: int) -> None:
        """Revoke a token."""
        with self._session() as session:
            token = session.get(Token, token_id)
            if token:
                token.revoked = True
                session.commit()

    # === Event queue ===

    def queue_event(
        self,
        remote_user_id: str,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        source: str = "remote",
        timestamp: str | None = None,
    ) -> list[str]:
        """Queue an event for every paired device of a remote user.

        Devices that already hold the event id are skipped.

        Returns:
            IDs of the devices the event was queued for.
        """
        queued: list[str] = []
        with self._session() as session:
            devices = session.execute(
                select(Device).where(
                    Device.remote_user_id == remote_user_id,
                    Device.revoked == False,  # noqa: E712
                )
            ).scalars().all()

            for device in devices:
                existing = session.execute(
                    select(PendingEvent.id).where(
                        PendingEvent.device_id == device.id,
                        PendingEvent.event_id == event_id,
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    continue
                session.add(
                    PendingEvent(
                        device_id=device.id,
                        event_id=event_id,
                        event_type=event_type,
                        payload=json.dumps(payload),
                        source=source,
                        timestamp=timestamp,
                    )
                )
                queued.append(device.id)
            session.commit()
        return queued

    def list_pending_events(self, device_id: str) -> list[PendingEvent]:
        """List unacknowledged events of a device, oldest first."""
        with self._session() as session:
            stmt = (
                select(PendingEvent)
                .where(PendingEvent.device_id == device_id, PendingEvent.acked_at.is_(None))
                .order_by(PendingEvent.id)
            )
            events = list(session.execute(stmt).scalars().all())
            for event in events:
                session.expunge(event)
            return events

    def get_pending_event(self, device_id: str, event_id: str) -> PendingEvent | None:
        """Get a queued event of a device (acknowledged or not)."""
        with self._session() as session:
            stmt = select(PendingEvent).where(
                PendingEvent.device_id == device_id,
                PendingEvent.event_id == event_id,
            )
            event = session.execute(stmt).scalar_one_or_none()
            if event:
                session.expunge(event)
            return event

    def ack_event(self, device_id: str, event_id: str) -> bool:
        """Mark an event acknowledged by a device.

        Returns:
            True if an unacknowledged event was found.
        """
        with self._session() as session:
            stmt = select(PendingEvent).where(
                PendingEvent.device_id == device_id,
                PendingEvent.event_id == event_id,
                PendingEvent.acked_at.is_(None),
            )
            event = session.execute(stmt).scalar_one_or_none()
            if event is None:
                return False
            event.acked_at = datetime.now(UTC)
            session.commit()
            return True

    # === Snapshots ===

    def save_snapshot(
        self,
        device_id: str,
        data: dict[str, Any],
        generated_at: str | None = None,
    ) -> None:
        """Store the latest snapshot of a device, replacing the previous one."""
        with self._session() as session:
            snapshot = session.get(DeviceSnapshot, device_id)
            if snapshot is None:
                snapshot = DeviceSnapshot(device_id=device_id, data="{}")
                session.add(snapshot)
            snapshot.data = json.dumps(data)
            snapshot.generated_at = generated_at
            snapshot.received_at = datetime.now(UTC)
            session.commit()

    def get_snapshot(self, device_id: str) -> DeviceSnapshot | None:
        """Get the latest snapshot of a device."""
        with self._session() as session:
            snapshot = session.get(DeviceSnapshot, device_id)
            if snapshot:
                session.expunge(snapshot)
            return snapshot
