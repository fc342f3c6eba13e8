"""Pydantic schemas for API request/response models.

Wire names are camelCase; Python attributes are snake_case.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from devicesync.server.models import Device


class CamelModel(BaseModel):
    """Base model serialized with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# === Pairing schemas ===


class PairingCodeRequest(CamelModel):
    """Request body for issuing a pairing code."""

    remote_user_id: str = Field(min_length=1)


class PairingCodeResponse(CamelModel):
    """Issued pairing code."""

    code: str
    expires_at: datetime


class PairRequest(CamelModel):
    """Request body for redeeming a pairing code."""

    code: str = Field(min_length=1)
    device_label: str | None = None
    platform: str | None = None


class PairResponse(CamelModel):
    """Session created by a successful pairing."""

    session_token: str
    device_id: str
    remote_user_id: str
    expires_at: datetime


# === Session schemas ===


class RecoverRequest(CamelModel):
    """Request body for session recovery."""

    device_id: str = Field(min_length=1)
    remote_user_id: str = Field(min_length=1)


class TokenResponse(CamelModel):
    """Freshly issued session token."""

    session_token: str
    expires_at: datetime


# === Device schemas ===


class DeviceRegisterRequest(CamelModel):
    """Request body for device registration."""

    device_id: str
    label: str
    platform: str | None = None


class DeviceResponse(CamelModel):
    """Device data in responses."""

    id: str
    remote_user_id: str
    label: str | None
    platform: str | None
    created_at: datetime
    last_seen: datetime
    revoked: bool


def device_to_response(device: Device) -> DeviceResponse:
    """Convert a Device model to a response schema."""
    return DeviceResponse(
        id=device.id,
        remote_user_id=device.remote_user_id,
        label=device.label,
        platform=device.platform,
        created_at=device.created_at,
        last_seen=device.last_seen,
        revoked=device.revoked,
    )


class SnapshotResponse(CamelModel):
    """Latest snapshot of a device."""

    device_id: str
    generated_at: str | None
    received_at: datetime
    snapshot: dict[str, Any]


# === Event schemas ===


class EventPublishRequest(CamelModel):
    """Request body for publishing an event to a remote user's devices."""

    remote_user_id: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str = "bot"
    timestamp: str | None = None


class EventPublishResponse(CamelModel):
    """Delivery summary of a published event."""

    event_id: str
    queued: int
    delivered: int


# === Health schemas ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
