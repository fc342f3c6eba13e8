"""WebSocket hub for device connections.

This module provides:
- DeviceHub: Tracks connected devices and delivers queued events
- /ws/device endpoint

Architecture:
    Bot ──POST /api/events──► Database (pending_events)
                                   │
                              DeviceHub ──ws──► Device (engine)
                                   ▲                │
                                   └── ack/snapshot ┘

Delivery is at-least-once: every unacknowledged event of a device is
replayed each time it connects, and live events are pushed as they are
published. Only an ``ack`` frame removes an event from the replay set.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

if TYPE_CHECKING:
    from devicesync.server.database import Database
    from devicesync.server.models import PendingEvent

logger = logging.getLogger(__name__)

# Close code telling the client its token was rejected
AUTH_FAILED_CLOSE_CODE = 4401


def event_frame(event: PendingEvent) -> dict[str, Any]:
    """Build the wire frame of a queued event."""
    body: dict[str, Any] = {
        "eventId": event.event_id,
        "eventType": event.event_type,
        "payload": json.loads(event.payload),
        "source": event.source,
    }
    if event.timestamp:
        body["timestamp"] = event.timestamp
    return {"type": "event", "event": body}


class DeviceHub:
    """Central hub for device WebSocket connections.

    Thread-safe for use with asyncio.
    """

    def __init__(self, db: Database) -> None:
        """Initialize the hub.

        Args:
            db: Database holding the event queue and snapshots.
        """
        self._db = db
        self._connections: dict[str, WebSocket] = {}  # device_id -> ws
        self._lock = asyncio.Lock()

    @property
    def connected_devices(self) -> list[str]:
        """IDs of the currently connected devices."""
        return list(self._connections)

    async def connect_device(self, websocket: WebSocket, device_id: str) -> None:
        """Accept a device connection, greet it and replay its queue.

        Args:
            websocket: The WebSocket connection.
            device_id: ID of the authenticated device.
        """
        await websocket.accept()

        async with self._lock:
            # Close old connection if exists
            old_ws = self._connections.get(device_id)
            if old_ws and old_ws.client_state == WebSocketState.CONNECTED:
                with contextlib.suppress(Exception):
                    await old_ws.close()
            self._connections[device_id] = websocket

        await websocket.send_json({"type": "welcome", "deviceId": device_id})
        logger.info("Device connected: %s", device_id)

        pending = self._db.list_pending_events(device_id)
        if pending:
            logger.info("Replaying %d pending events to %s", len(pending), device_id)
        for event in pending:
            await websocket.send_json(event_frame(event))

    async def disconnect_device(self, device_id: str, websocket: WebSocket | None = None) -> None:
        """Forget a device connection.

        Args:
            device_id: ID of the device that disconnected.
            websocket: Only forget the connection if it is still this one.
        """
        async with self._lock:
            current = self._connections.get(device_id)
            if current is not None and (websocket is None or current is websocket):
                self._connections.pop(device_id, None)

        logger.info("Device disconnected: %s", device_id)

    async def kick_device(self, device_id: str) -> None:
        """Close a device's connection (e.g. after unpair)."""
        async with self._lock:
            websocket = self._connections.pop(device_id, None)
        if websocket and websocket.client_state == WebSocketState.CONNECTED:
            with contextlib.suppress(Exception):
                await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason="Device unpaired")
            logger.info("Device %s kicked", device_id)

    async def handle_device_message(self, device_id: str, data: dict[str, Any]) -> dict[str, Any] | None:
        """Handle incoming message from a device.

        Expected message formats:
            {"type": "ack", "eventId": "evt-1"}
            {"type": "heartbeat"}
            {"type": "snapshot", "generatedAt": "...", "snapshot": {...}}

        Args:
            device_id: ID of the device.
            data: Message data.

        Returns:
            Reply frame, if any.
        """
        msg_type = data.get("type")

        if msg_type == "ack":
            event_id = data.get("eventId")
            if isinstance(event_id, str) and self._db.ack_event(device_id, event_id):
                logger.debug("Device %s acknowledged %s", device_id, event_id)
            else:
                logger.debug("Ack for unknown event from %s: %r", device_id, event_id)
        elif msg_type == "heartbeat":
            self._db.update_device_last_seen(device_id)
            return {"type": "heartbeat_ack"}
        elif msg_type == "snapshot":
            snapshot = data.get("snapshot")
            if isinstance(snapshot, dict):
                self._db.save_snapshot(device_id, snapshot, data.get("generatedAt"))
                logger.info("Snapshot received from %s", device_id)
            else:
                logger.warning("Malformed snapshot from %s", device_id)
        else:
            logger.warning("Unknown message type from device %s: %s", device_id, msg_type)
        return None

    async def publish(self, device_ids: list[str], frame: dict[str, Any]) -> int:
        """Push a freshly queued event to the connected devices.

        Args:
            device_ids: Devices the event was queued for.
            frame: Event frame to send.

        Returns:
            Number of devices the event was sent to.
        """
        sent = 0
        async with self._lock:
            targets = [(d, self._connections.get(d)) for d in device_ids]

        for device_id, ws in targets:
            if ws is None or ws.client_state != WebSocketState.CONNECTED:
                continue
            try:
                await ws.send_json(frame)
                sent += 1
            except Exception:
                logger.debug("Live push to %s failed, will replay on reconnect", device_id)
                await self.disconnect_device(device_id, ws)
        return sent


# WebSocket router
router = APIRouter(tags=["websocket"])


def _bearer_token(websocket: WebSocket) -> str | None:
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "bearer" or not credentials:
        return None
    return credentials.strip()


@router.websocket("/ws/device")
async def websocket_device(websocket: WebSocket) -> None:
    """WebSocket endpoint for device engines.

    Devices authenticate with ``Authorization: Bearer <session token>``.
    A rejected token closes the socket with code 4401 before accept.

    Message format (server -> device):
        {"type": "welcome", "deviceId": "..."}
        {"type": "event", "event": {...}}
        {"type": "heartbeat_ack"}

    Args:
        websocket: The WebSocket connection.
    """
    db: Database = websocket.app.state.db
    hub: DeviceHub = websocket.app.state.hub

    raw_token = _bearer_token(websocket)
    token = db.validate_token(raw_token) if raw_token else None
    if token is None:
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason="Invalid or expired token")
        return

    device_id = token.device_id
    db.update_device_last_seen(device_id)
    await hub.connect_device(websocket, device_id)

    try:
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                continue
            reply = await hub.handle_device_message(device_id, data)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        await hub.disconnect_device(device_id, websocket)
    except Exception as e:
        logger.exception("Error in device WebSocket: %s", e)
        await hub.disconnect_device(device_id, websocket)
