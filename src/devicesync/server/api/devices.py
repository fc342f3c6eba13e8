"""Device API routes."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, status

from devicesync.server.api.deps import get_current_token, get_db, require_relay_key
from devicesync.server.database import Database
from devicesync.server.models import Token
from devicesync.server.schemas import (
    DeviceRegisterRequest,
    DeviceResponse,
    SnapshotResponse,
    device_to_response,
)

router = APIRouter(prefix="/api", tags=["devices"])


@router.post("/devices/register", response_model=DeviceResponse)
def register_device(
    request: DeviceRegisterRequest,
    db: Database = Depends(get_db),
    token: Token = Depends(get_current_token),
) -> DeviceResponse:
    """Set the label and platform of the calling device."""
    if request.device_id != token.device_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not belong to this device",
        )
    device = db.update_device(token.device_id, request.label, request.platform)
    if device is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found",
        )
    return device_to_response(device)


@router.get(
    "/users/{remote_user_id}/devices",
    response_model=list[DeviceResponse],
    dependencies=[Depends(require_relay_key)],
)
def list_user_devices(
    remote_user_id: str,
    db: Database = Depends(get_db),
) -> list[DeviceResponse]:
    """List the paired devices of a remote user."""
    return [device_to_response(d) for d in db.list_devices(remote_user_id)]


@router.get(
    "/devices/{device_id}/snapshot",
    response_model=SnapshotResponse,
    dependencies=[Depends(require_relay_key)],
)
def get_device_snapshot(
    device_id: str,
    db: Database = Depends(get_db),
) -> SnapshotResponse:
    """Get the latest snapshot pushed by a device."""
    snapshot = db.get_snapshot(device_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No snapshot for this device",
        )
    return SnapshotResponse(
        device_id=device_id,
        generated_at=snapshot.generated_at,
        received_at=snapshot.received_at,
        snapshot=json.loads(snapshot.data),
    )
