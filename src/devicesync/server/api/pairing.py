"""Pairing API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from devicesync.server.api.deps import get_db, require_relay_key
from devicesync.server.database import Database
from devicesync.server.schemas import (
    PairingCodeRequest,
    PairingCodeResponse,
    PairRequest,
    PairResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["pairing"])


@router.post(
    "/pairing-codes",
    response_model=PairingCodeResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_relay_key)],
)
def issue_pairing_code(
    request: PairingCodeRequest,
    db: Database = Depends(get_db),
) -> PairingCodeResponse:
    """Issue a one-time pairing code for a remote user."""
    raw_code, pairing_code = db.create_pairing_code(request.remote_user_id)
    logger.info("Pairing code issued for %s", request.remote_user_id)
    return PairingCodeResponse(code=raw_code, expires_at=pairing_code.expires_at)


@router.post("/pair", response_model=PairResponse)
def pair_device(
    request: PairRequest,
    db: Database = Depends(get_db),
) -> PairResponse:
    """Redeem a pairing code and open a session for the new device."""
    device = db.redeem_pairing_code(request.code, request.device_label, request.platform)
    if device is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired pairing code",
        )

    raw_token, token = db.create_token(device.id)
    logger.info("Device %s paired with %s", device.id, device.remote_user_id)
    return PairResponse(
        session_token=raw_token,
        device_id=device.id,
        remote_user_id=device.remote_user_id,
        expires_at=token.expires_at,
    )
