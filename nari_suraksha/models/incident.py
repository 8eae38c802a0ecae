"""Incident record: the emergency escalation raised for a trip."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from nari_suraksha.models.base import WireModel, new_id, utcnow
from nari_suraksha.models.enums import EscalationTrigger, IncidentStatus


class Incident(WireModel):
    id: str = Field(default_factory=new_id)
    trip_id: str
    owner_id: str
    lat: float
    lng: float
    status: IncidentStatus = IncidentStatus.PENDING
    trigger: EscalationTrigger = EscalationTrigger.MANUAL
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is not IncidentStatus.RESOLVED

    @property
    def maps_url(self) -> str:
        return f"https://maps.google.com/?q={self.lat},{self.lng}"
