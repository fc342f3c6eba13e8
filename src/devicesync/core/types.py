"""Shared types for devicesync.

This module defines types and enums used by both client and server.
"""

from __future__ import annotations

from enum import Enum


class ConnectionState(str, Enum):
    """Connection state of a device.

    Owned by the ConnectionManager on the client side and mirrored by
    the server's DeviceHub for connected devices.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECOVERING = "recovering"
