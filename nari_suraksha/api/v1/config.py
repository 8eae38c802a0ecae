"""Client bootstrap configuration."""

from __future__ import annotations

from fastapi import APIRouter

from config.settings import settings
from nari_suraksha.models import ReportCategory

router = APIRouter(prefix="/config", tags=["config"])


@router.get("")
async def client_config() -> dict:
    """Mode and the ETA choices the client should offer."""
    return {
        "mode": settings.mode,
        "etaPresets": settings.eta_presets,
        "siteUrl": settings.site_url,
        "reportCategories": [c.value for c in ReportCategory],
        "locationIntervalSeconds": settings.demo_location_interval_seconds if settings.is_demo else None,
    }
