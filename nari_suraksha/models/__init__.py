from nari_suraksha.models.enums import (
    DeliveryState,
    EscalationTrigger,
    IncidentStatus,
    LanguageCode,
    ReportCategory,
    SessionState,
    UserRole,
)
from nari_suraksha.models.incident import Incident
from nari_suraksha.models.report import Report
from nari_suraksha.models.trip import LocationSample, Trip
from nari_suraksha.models.user import Guardian, UserProfile, normalise_phone

__all__ = [
    "DeliveryState",
    "EscalationTrigger",
    "Guardian",
    "Incident",
    "IncidentStatus",
    "LanguageCode",
    "LocationSample",
    "Report",
    "ReportCategory",
    "SessionState",
    "Trip",
    "UserProfile",
    "UserRole",
    "normalise_phone",
]
