"""Guardian notification fan-out for raised incidents.

Given an incident, :class:`NotificationFanOut` resolves the owner's
guardians, looks up the push tokens of guardians who are registered
users, and attempts one delivery per token through the configured
:class:`~nari_suraksha.services.push.NotificationChannel`.

Attempts run concurrently and are isolated from each other: a failing
or raising attempt is recorded as ``failed`` and never stops the rest,
and the fan-out as a whole never raises into the escalation path.
Retrying is left to the push transport; this layer attempts once per
known token and reports each outcome.

Guardians without any push token are listed as unreachable; the
fallback link (built locally, no server round trip) covers them.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from nari_suraksha.models import DeliveryState, Guardian, Incident

if TYPE_CHECKING:
    from nari_suraksha.services.push import NotificationChannel
    from nari_suraksha.services.storage import Storage

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class DeliveryAttempt(BaseModel):
    """Outcome of one push to one guardian token."""

    guardian_name: str
    guardian_phone: str
    token: str
    state: DeliveryState
    error: str | None = None
    attempted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FanOutReport(BaseModel):
    incident_id: str
    attempts: list[DeliveryAttempt] = Field(default_factory=list)
    unreachable: list[Guardian] = Field(default_factory=list)
    fallback_link: str
    completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def delivered(self) -> int:
        return sum(1 for a in self.attempts if a.state.ok)

    @property
    def failed(self) -> int:
        return sum(1 for a in self.attempts if not a.state.ok)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class NotificationFanOut:
    """Dispatch one notification per guardian token for an incident."""

    __slots__ = ("_channel", "_storage")

    def __init__(self, storage: Storage, channel: NotificationChannel) -> None:
        self._storage = storage
        self._channel = channel

    def fallback_link(self, incident_id: str) -> str:
        return self._channel.build_fallback_link(incident_id)

    async def resolve_recipients(self, owner_id: str) -> tuple[list[tuple[Guardian, str]], list[Guardian]]:
        """Return ``(guardian, token)`` pairs plus guardians with no token."""
        owner = await self._storage.get_user(owner_id)
        if owner is None:
            logger.warning("fanout.owner_not_found", owner_id=owner_id)
            return [], []

        targets: list[tuple[Guardian, str]] = []
        unreachable: list[Guardian] = []
        for guardian in owner.guardians:
            guardian_user = None
            if guardian.user_id:
                guardian_user = await self._storage.get_user(guardian.user_id)
            if guardian_user is None:
                guardian_user = await self._storage.get_user_by_phone(guardian.phone)

            tokens = guardian_user.push_tokens if guardian_user is not None else []
            if not tokens:
                unreachable.append(guardian)
                continue
            targets.extend((guardian, token) for token in dict.fromkeys(tokens))
        return targets, unreachable

    @staticmethod
    def compose(incident: Incident, owner_name: str) -> tuple[str, str, dict[str, str]]:
        title = "\U0001f6a8 Emergency alert"
        body = f"{owner_name} needs help. Last known location: {incident.maps_url}"
        data = {
            "incidentId": incident.id,
            "tripId": incident.trip_id,
            "link": f"/incident/{incident.id}",
            "priority": "high",
        }
        return title, body, data

    async def _attempt(
        self,
        guardian: Guardian,
        token: str,
        title: str,
        body: str,
        data: dict[str, str],
    ) -> DeliveryAttempt:
        try:
            state = await self._channel.send(token, title, body, data)
        except Exception as exc:
            logger.warning(
                "fanout.delivery_raised",
                guardian_phone=guardian.phone,
                error=str(exc),
            )
            return DeliveryAttempt(
                guardian_name=guardian.name,
                guardian_phone=guardian.phone,
                token=token,
                state=DeliveryState.FAILED,
                error=str(exc),
            )
        return DeliveryAttempt(
            guardian_name=guardian.name,
            guardian_phone=guardian.phone,
            token=token,
            state=state,
        )

    async def broadcast(self, incident: Incident) -> FanOutReport:
        """Notify every reachable guardian of *incident*.

        Never raises: a failure to resolve recipients yields an empty
        report carrying only the fallback link.
        """
        fallback = self.fallback_link(incident.id)
        try:
            owner = await self._storage.get_user(incident.owner_id)
            targets, unreachable = await self.resolve_recipients(incident.owner_id)
        except Exception:
            logger.error("fanout.recipient_resolution_failed", incident_id=incident.id, exc_info=True)
            return FanOutReport(incident_id=incident.id, fallback_link=fallback)

        owner_name = owner.name if owner is not None else "Someone"
        title, body, data = self.compose(incident, owner_name)

        attempts = await asyncio.gather(
            *(self._attempt(guardian, token, title, body, data) for guardian, token in targets),
        )
        report = FanOutReport(
            incident_id=incident.id,
            attempts=list(attempts),
            unreachable=unreachable,
            fallback_link=fallback,
        )

        logger.info(
            "fanout.completed",
            incident_id=incident.id,
            attempted=len(report.attempts),
            delivered=report.delivered,
            failed=report.failed,
            unreachable=len(report.unreachable),
        )
        return report
