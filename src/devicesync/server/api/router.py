"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from devicesync.server.api import devices, events, health, pairing, sessions

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(pairing.router)
router.include_router(sessions.router)
router.include_router(devices.router)
router.include_router(events.router)
