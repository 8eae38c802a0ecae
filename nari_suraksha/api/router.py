"""Main API router combining all v1 route modules under ``/api/v1``."""

from __future__ import annotations

from fastapi import APIRouter

from nari_suraksha.api.v1 import config, health, incidents, reports, trips, users

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health.router)
api_router.include_router(config.router)
api_router.include_router(users.router)
api_router.include_router(trips.router)
api_router.include_router(incidents.router)
api_router.include_router(reports.router)
