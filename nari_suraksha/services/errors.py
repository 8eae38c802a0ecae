"""Domain exceptions raised by the trip monitoring core.

Routers translate these to HTTP status codes; transient collaborator
failures (location, push) never surface as exceptions to callers.
"""

from __future__ import annotations


class SurakshaError(Exception):
    """Base class for all domain errors."""


class TripNotFoundError(SurakshaError):
    def __init__(self, trip_id: str) -> None:
        super().__init__(f"trip {trip_id!r} not found")
        self.trip_id = trip_id


class IncidentNotFoundError(SurakshaError):
    def __init__(self, incident_id: str) -> None:
        super().__init__(f"incident {incident_id!r} not found")
        self.incident_id = incident_id


class PermissionDeniedError(SurakshaError):
    """The caller does not own the record it tried to act on."""


class TripPermissionError(PermissionDeniedError):
    def __init__(self, trip_id: str, caller_id: str) -> None:
        super().__init__(f"user {caller_id!r} does not own trip {trip_id!r}")
        self.trip_id = trip_id
        self.caller_id = caller_id


class IncidentPermissionError(PermissionDeniedError):
    def __init__(self, incident_id: str, caller_id: str) -> None:
        super().__init__(f"user {caller_id!r} does not own incident {incident_id!r}")
        self.incident_id = incident_id
        self.caller_id = caller_id


class InvalidTransitionError(SurakshaError):
    """The requested action is not available from the current state."""


class LocationUnavailableError(SurakshaError):
    """No position fix could be obtained."""


class PersistenceError(SurakshaError):
    """The core record could not be written at all."""
