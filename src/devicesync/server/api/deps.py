"""FastAPI dependencies for API routes."""

from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from devicesync.server.database import Database
from devicesync.server.models import Token
from devicesync.server.ws import DeviceHub

# Security scheme
security = HTTPBearer(auto_error=False)


def get_db(request: Request) -> Database:
    """Get database from app state."""
    db: Database = request.app.state.db
    return db


def get_hub(request: Request) -> DeviceHub:
    """Get the device hub from app state."""
    hub: DeviceHub = request.app.state.hub
    return hub


def get_current_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Token:
    """Validate bearer token and return Token object."""
    db = get_db(request)
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = db.validate_token(credentials.credentials)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # Update last_seen for the device
    db.update_device_last_seen(token.device_id)
    return token


def require_relay_key(
    request: Request,
    x_relay_key: str | None = Header(default=None),
) -> None:
    """Guard the bot-facing endpoints with the shared relay key, if configured."""
    expected: str | None = request.app.state.relay_key
    if expected is None:
        return
    if x_relay_key is None or not secrets.compare_digest(x_relay_key, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid relay key",
        )
