"""Unsafe-location reports shown on the safety map.

Reports are immutable once created; the geohash is derived from the
coordinates when the caller does not supply one.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import ConfigDict, Field, model_validator

from nari_suraksha.models.base import WireModel, new_id, utcnow
from nari_suraksha.models.enums import ReportCategory
from nari_suraksha.services.geo import GEOHASH_PRECISION, encode_geohash


class Report(WireModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    category: ReportCategory
    text: str | None = Field(default=None, max_length=1000)
    anonymous: bool = False
    geohash: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _fill_geohash(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("geohash"):
            lat, lng = data.get("lat"), data.get("lng")
            if isinstance(lat, int | float) and isinstance(lng, int | float):
                data = {**data, "geohash": encode_geohash(lat, lng, GEOHASH_PRECISION)}
        return data
