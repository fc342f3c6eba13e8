"""Event publishing API routes.

Stands in for the messaging bot: events published here are queued for
every paired device of the remote user and pushed live to connected ones.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, status

from devicesync.server.api.deps import get_db, get_hub, require_relay_key
from devicesync.server.database import Database
from devicesync.server.schemas import EventPublishRequest, EventPublishResponse
from devicesync.server.ws import DeviceHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])


@router.post(
    "",
    response_model=EventPublishResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_relay_key)],
)
async def publish_event(
    request: EventPublishRequest,
    db: Database = Depends(get_db),
    hub: DeviceHub = Depends(get_hub),
) -> EventPublishResponse:
    """Queue an event for a remote user's devices and push it to connected ones."""
    device_ids = db.queue_event(
        remote_user_id=request.remote_user_id,
        event_id=request.event_id,
        event_type=request.event_type,
        payload=request.payload,
        source=request.source,
        timestamp=request.timestamp,
    )

    body: dict[str, Any] = {
        "eventId": request.event_id,
        "eventType": request.event_type,
        "payload": request.payload,
        "source": request.source,
    }
    if request.timestamp:
        body["timestamp"] = request.timestamp
    delivered = await hub.publish(device_ids, {"type": "event", "event": body})

    logger.info(
        "Event %s (%s) queued for %d devices, %d delivered live",
        request.event_id,
        request.event_type,
        len(device_ids),
        delivered,
    )
    return EventPublishResponse(
        event_id=request.event_id,
        queued=len(device_ids),
        delivered=delivered,
    )
