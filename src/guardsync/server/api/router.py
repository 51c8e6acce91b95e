"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from guardsync.server.api import (
    catalog,
    devices,
    enforcement,
    families,
    health,
    links,
    policies,
    sources,
    webhooks,
)

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(families.router)
router.include_router(policies.router)
router.include_router(catalog.router)
router.include_router(links.router)
router.include_router(enforcement.router)
router.include_router(sources.router)
router.include_router(devices.router)
router.include_router(devices.device_router)
router.include_router(webhooks.router)
