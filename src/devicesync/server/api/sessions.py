"""Session API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from devicesync.server.api.deps import get_current_token, get_db, get_hub
from devicesync.server.database import Database
from devicesync.server.models import Token
from devicesync.server.schemas import RecoverRequest, TokenResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session", tags=["session"])


@router.post("/recover", response_model=TokenResponse)
def recover_session(
    request: RecoverRequest,
    db: Database = Depends(get_db),
) -> TokenResponse:
    """Reissue a session token for a known, still-paired device."""
    device = db.get_device(request.device_id)
    if (
        device is None
        or device.revoked
        or device.remote_user_id != request.remote_user_id
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Device cannot be recovered",
        )

    raw_token, token = db.create_token(device.id)
    logger.info("Session recovered for device %s", device.id)
    return TokenResponse(session_token=raw_token, expires_at=token.expires_at)


@router.post("/unpair", status_code=status.HTTP_204_NO_CONTENT)
async def unpair_device(
    request: Request,
    token: Token = Depends(get_current_token),
) -> Response:
    """Revoke the calling device and close its connection."""
    db = get_db(request)
    db.revoke_device(token.device_id)
    await get_hub(request).kick_device(token.device_id)
    logger.info("Device %s unpaired", token.device_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
