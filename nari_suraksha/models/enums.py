from __future__ import annotations

from enum import StrEnum


class IncidentStatus(StrEnum):
    """Incident lifecycle; statuses only ever move forward."""

    __slots__ = ()

    PENDING = "pending"
    BROADCASTING = "broadcasting"
    RESOLVED = "resolved"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_advance_to(self, target: IncidentStatus) -> bool:
        return target.rank > self.rank


_STATUS_ORDER: tuple[IncidentStatus, ...] = (
    IncidentStatus.PENDING,
    IncidentStatus.BROADCASTING,
    IncidentStatus.RESOLVED,
)


class EscalationTrigger(StrEnum):
    __slots__ = ()

    MANUAL = "manual"
    TIMER = "timer"


class SessionState(StrEnum):
    """Per-trip monitoring state held by the escalation engine."""

    __slots__ = ()

    MONITORING = "monitoring"
    ESCALATED = "escalated"
    CLOSED = "closed"


class ReportCategory(StrEnum):
    __slots__ = ()

    HARASSMENT = "harassment"
    POOR_LIGHTING = "poor_lighting"
    STRAY_DOGS = "stray_dogs"
    OTHER = "other"


class UserRole(StrEnum):
    __slots__ = ()

    COMMUTER = "commuter"
    GUARDIAN = "guardian"
    BOTH = "both"


class LanguageCode(StrEnum):
    __slots__ = ()

    en = "en"  # English
    hi = "hi"  # Hindi


class DeliveryState(StrEnum):
    """Outcome of a single push delivery attempt."""

    __slots__ = ()

    DELIVERED = "delivered"
    FAILED = "failed"
    MOCK = "mock"

    @property
    def ok(self) -> bool:
        return self is not DeliveryState.FAILED
