"""Trip and location sample records."""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import Field

from nari_suraksha.models.base import WireModel, new_id, utcnow


class LocationSample(WireModel):
    """A single position fix, from a device sensor or the simulator."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0)  # metres
    timestamp: datetime | None = None

    def is_newer_than(self, other: LocationSample | None) -> bool:
        """Whether this sample may overwrite *other* as the latest fix.

        Samples without a timestamp cannot be ordered, so an untimed
        stored sample is always replaceable and an untimed incoming
        sample never replaces a timed one.
        """
        if other is None or other.timestamp is None:
            return True
        if self.timestamp is None:
            return False
        return self.timestamp > other.timestamp


class Trip(WireModel):
    """A monitored interval tracked against an expected-arrival deadline.

    ``active=False`` is terminal: a trip is soft-deactivated, never
    reactivated and never deleted.
    """

    id: str = Field(default_factory=new_id)
    owner_id: str
    started_at: datetime = Field(default_factory=utcnow)
    eta_minutes: int = Field(..., gt=0)
    active: bool = True
    last_location: LocationSample | None = None
    last_update_at: datetime | None = None

    @property
    def deadline(self) -> datetime:
        return self.started_at + timedelta(minutes=self.eta_minutes)
