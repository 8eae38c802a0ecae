"""Trip lifecycle and incident escalation.

The :class:`EscalationEngine` is the only writer of trip and incident
records. Per trip it tracks a session moving through::

    MONITORING --(SOS | deadline)--> ESCALATED --(owner resolves)--> CLOSED
        `-------------------(owner marks safe)---------------------------^

Both escalation triggers, the owner's SOS and the timer's deadline
event, go through :meth:`EscalationEngine._escalate`. It runs under a
per-trip lock, re-reads the persisted incidents for the trip, and
claims the storage-level escalation latch before writing. However the
triggers interleave, a trip gets at most one open incident; losing
triggers receive the existing incident back.

Escalation favours timely notification over completeness: a failed
location fix falls back to the last known position, and fan-out runs in
the background so a slow or failing push transport never blocks or
rolls back the incident.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import timedelta
from functools import partial
from typing import TYPE_CHECKING

import structlog

from nari_suraksha.models import (
    EscalationTrigger,
    Incident,
    IncidentStatus,
    LocationSample,
    SessionState,
    Trip,
)
from nari_suraksha.services.clock import Clock, SystemClock
from nari_suraksha.services.errors import (
    IncidentNotFoundError,
    IncidentPermissionError,
    InvalidTransitionError,
    PersistenceError,
    TripNotFoundError,
    TripPermissionError,
)
from nari_suraksha.services.trip_timer import TripTimer

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from nari_suraksha.services.events import ChangeCallback, ChangeFeed, Unsubscribe
    from nari_suraksha.services.location import LocationProvider, LocationSource
    from nari_suraksha.services.notifications import FanOutReport, NotificationFanOut
    from nari_suraksha.services.storage import Storage

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Session and outcome types
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TripSession:
    """Transient, in-memory monitoring state for one active trip.

    Holds only what storage does not: the timer, the location watch and
    the latest sample seen. Persisted fields stay in storage.
    """

    trip_id: str
    owner_id: str
    state: SessionState
    source: LocationSource
    watch_handle: int
    timer: TripTimer | None = None
    latest_sample: LocationSample | None = None
    incident_id: str | None = None
    fanout_task: asyncio.Task | None = None  # type: ignore[type-arg]


@dataclass(frozen=True, slots=True)
class EscalationOutcome:
    incident: Incident
    created: bool


@dataclass(frozen=True, slots=True)
class ResolutionOutcome:
    incident: Incident
    already_resolved: bool


@dataclass(slots=True)
class _KeyedLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class EscalationEngine:
    """Owns trip sessions and the trip → incident transition.

    Parameters
    ----------
    storage:
        Persistence adapter; the source of truth for trips and incidents.
    locations:
        Provider of per-trip location sources.
    fanout:
        Guardian notification fan-out.
    clock:
        Time source shared with the trip timers.
    tick_seconds:
        Trip timer resolution.
    sample_timeout_seconds:
        How long escalation waits for a fresh fix before falling back to
        the last known location.
    """

    def __init__(
        self,
        storage: Storage,
        locations: LocationProvider,
        fanout: NotificationFanOut,
        *,
        clock: Clock | None = None,
        tick_seconds: float = 1.0,
        sample_timeout_seconds: float = 2.0,
    ) -> None:
        self._storage = storage
        self._locations = locations
        self._fanout = fanout
        self._clock = clock or SystemClock()
        self._tick_seconds = tick_seconds
        self._sample_timeout = sample_timeout_seconds
        self._sessions: dict[str, TripSession] = {}
        self._locks: dict[str, _KeyedLock] = {}
        self._rehydrate_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._fanout_reports: dict[str, FanOutReport] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def feed(self) -> ChangeFeed:
        return self._storage.feed

    @property
    def clock(self) -> Clock:
        return self._clock

    def subscribe(self, record_id: str, on_change: ChangeCallback) -> Unsubscribe:
        """Receive every persisted change to a trip or incident."""
        return self._storage.feed.subscribe(record_id, on_change)

    def session(self, trip_id: str) -> TripSession | None:
        return self._sessions.get(trip_id)

    async def session_state(self, trip_id: str) -> SessionState:
        """Current state of a trip, derived from storage."""
        trip = await self._require_trip(trip_id)
        incidents = await self._storage.list_incidents_by_trip(trip_id)
        if any(i.is_open for i in incidents):
            return SessionState.ESCALATED
        if trip.active and not any(i.status is IncidentStatus.RESOLVED for i in incidents):
            return SessionState.MONITORING
        return SessionState.CLOSED

    async def remaining_seconds(self, trip_id: str) -> float:
        session = self._sessions.get(trip_id)
        if session is not None and session.timer is not None and not session.timer.stopped:
            return session.timer.remaining_seconds()
        trip = await self._require_trip(trip_id)
        return max(trip.deadline - self._clock.now(), timedelta(0)).total_seconds()

    def last_fanout_report(self, incident_id: str) -> FanOutReport | None:
        return self._fanout_reports.get(incident_id)

    def fallback_link(self, incident_id: str) -> str:
        return self._fanout.fallback_link(incident_id)

    # ------------------------------------------------------------------
    # Trip start and location
    # ------------------------------------------------------------------

    async def start_trip(
        self,
        owner_id: str,
        eta_minutes: int,
        initial_location: LocationSample | None = None,
    ) -> Trip:
        """Create an active trip and start monitoring it.

        Raises :class:`PersistenceError` only when the trip record itself
        cannot be written.
        """
        if eta_minutes <= 0:
            raise ValueError("eta_minutes must be positive")

        if initial_location is not None:
            initial_location = self._stamp(initial_location)

        trip = Trip(
            owner_id=owner_id,
            started_at=self._clock.now(),
            eta_minutes=eta_minutes,
            last_location=initial_location,
        )
        trip = await self._write("create_trip", self._storage.create_trip(trip))

        self._open_session(trip, SessionState.MONITORING)
        logger.info(
            "escalation.trip_started",
            trip_id=trip.id,
            owner_id=owner_id,
            eta_minutes=eta_minutes,
            deadline=trip.deadline.isoformat(),
        )
        return trip

    async def record_location(
        self,
        trip_id: str,
        sample: LocationSample,
        *,
        caller_id: str | None = None,
    ) -> Trip:
        """Accept a device-reported fix for a trip.

        The trip's ``last_location`` only ever moves forward by sample
        instant; stale or out-of-order fixes are ignored, as are fixes
        for inactive trips.
        """
        trip = await self._require_trip(trip_id)
        if caller_id is not None and trip.owner_id != caller_id:
            raise TripPermissionError(trip_id, caller_id)

        sample = self._stamp(sample)
        session = await self._session_for(trip_id)
        if session is not None:
            session.source.push(sample)
        return await self._persist_sample(trip_id, sample)

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    async def trigger_sos(self, trip_id: str, caller_id: str) -> EscalationOutcome:
        """Manual SOS from the trip owner."""
        trip = await self._require_trip(trip_id)
        if trip.owner_id != caller_id:
            raise TripPermissionError(trip_id, caller_id)
        return await self._escalate(trip_id, EscalationTrigger.MANUAL)

    async def _on_deadline(self, trip_id: str) -> None:
        try:
            await self._escalate(trip_id, EscalationTrigger.TIMER)
        except InvalidTransitionError:
            logger.info("escalation.deadline_ignored", trip_id=trip_id)
            # No-op once the trip is closed; an active trip keeps trying.
            self._rearm_timer(trip_id)
        except Exception:
            logger.error("escalation.auto_raise_failed", trip_id=trip_id, exc_info=True)
            self._rearm_timer(trip_id)

    async def _escalate(self, trip_id: str, trigger: EscalationTrigger) -> EscalationOutcome:
        session = await self._session_for(trip_id)

        async with self._locked(trip_id):
            trip = await self._require_trip(trip_id)

            existing = await self._open_incident(trip_id)
            if existing is not None:
                logger.info(
                    "escalation.duplicate_trigger",
                    trip_id=trip_id,
                    trigger=trigger,
                    incident_id=existing.id,
                )
                return EscalationOutcome(incident=existing, created=False)

            if not trip.active:
                raise InvalidTransitionError(f"trip {trip_id!r} is no longer active")

            location = await self._capture_location(trip, session)
            incident = Incident(
                trip_id=trip_id,
                owner_id=trip.owner_id,
                lat=location.lat,
                lng=location.lng,
                status=IncidentStatus.PENDING,
                trigger=trigger,
                created_at=self._clock.now(),
            )

            if not await self._write("claim_escalation", self._acquire_claim(trip_id, incident.id)):
                existing = await self._open_incident(trip_id)
                if existing is not None:
                    return EscalationOutcome(incident=existing, created=False)
                raise InvalidTransitionError(f"escalation for trip {trip_id!r} is already in progress")

            try:
                incident = await self._write("create_incident", self._storage.create_incident(incident))
            except PersistenceError:
                await self._release_claim(trip_id)
                raise

            if session is not None:
                session.state = SessionState.ESCALATED
                session.incident_id = incident.id
                if session.timer is not None:
                    session.timer.stop()
                    session.timer = None

            try:
                broadcasting = await self._storage.update_incident(
                    incident.id, {"status": IncidentStatus.BROADCASTING},
                )
                if broadcasting is not None:
                    incident = broadcasting
            except Exception:
                logger.error("escalation.broadcast_status_failed", incident_id=incident.id, exc_info=True)

            self._start_fanout(session, incident)

        logger.warning(
            "escalation.incident_raised",
            trip_id=trip_id,
            incident_id=incident.id,
            trigger=trigger,
            lat=incident.lat,
            lng=incident.lng,
        )
        return EscalationOutcome(incident=incident, created=True)

    async def _capture_location(self, trip: Trip, session: TripSession | None) -> LocationSample:
        """Best available position at the instant of escalation."""
        if session is not None:
            try:
                sample = await asyncio.wait_for(session.source.sample(), timeout=self._sample_timeout)
            except Exception as exc:
                logger.warning("escalation.location_capture_failed", trip_id=trip.id, error=str(exc))
            else:
                self._spawn(self._persist_sample(trip.id, self._stamp(sample)))
                return sample

            if session.latest_sample is not None:
                return session.latest_sample

        if trip.last_location is not None:
            logger.info("escalation.using_last_persisted_location", trip_id=trip.id)
            return trip.last_location

        logger.error("escalation.no_location_known", trip_id=trip.id)
        return LocationSample(lat=0.0, lng=0.0)

    # ------------------------------------------------------------------
    # Closing transitions
    # ------------------------------------------------------------------

    async def mark_safe(self, trip_id: str, caller_id: str) -> Trip:
        """Owner ends the trip before any escalation.

        Only available while monitoring; an escalated trip is ended by
        resolving its incident. Marking an already closed trip is a no-op.
        """
        trip = await self._require_trip(trip_id)
        if trip.owner_id != caller_id:
            raise TripPermissionError(trip_id, caller_id)

        async with self._locked(trip_id):
            trip = await self._require_trip(trip_id)
            if not trip.active:
                return trip

            open_incident = await self._open_incident(trip_id)
            if open_incident is not None:
                raise InvalidTransitionError(
                    f"trip {trip_id!r} has open incident {open_incident.id!r}; resolve it instead",
                )

            updated = await self._write("update_trip", self._storage.update_trip(trip_id, {"active": False}))
            trip = updated or trip
            self._close_session(trip_id)

        logger.info("escalation.trip_marked_safe", trip_id=trip_id, owner_id=caller_id)
        return trip

    async def resolve_incident(self, incident_id: str, caller_id: str) -> ResolutionOutcome:
        """Owner closes an incident.

        Idempotent: resolving a resolved incident returns it unchanged
        with ``already_resolved=True``. An in-flight fan-out is left to
        finish on its own.
        """
        incident = await self._storage.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        if incident.owner_id != caller_id:
            raise IncidentPermissionError(incident_id, caller_id)

        async with self._locked(incident.trip_id):
            incident = await self._storage.get_incident(incident_id) or incident
            if not incident.status.can_advance_to(IncidentStatus.RESOLVED):
                return ResolutionOutcome(incident=incident, already_resolved=True)

            resolved = await self._write(
                "update_incident",
                self._storage.update_incident(
                    incident_id,
                    {"status": IncidentStatus.RESOLVED, "resolved_at": self._clock.now()},
                ),
            )
            incident = resolved or incident

            try:
                await self._storage.update_trip(incident.trip_id, {"active": False})
            except Exception:
                # Finished on the next rehydration of the trip.
                logger.error("escalation.trip_left_active", trip_id=incident.trip_id, exc_info=True)
            await self._release_claim(incident.trip_id)
            self._close_session(incident.trip_id)
            self._fanout_reports.pop(incident_id, None)

        logger.info("escalation.incident_resolved", incident_id=incident_id, trip_id=incident.trip_id)
        return ResolutionOutcome(incident=incident, already_resolved=False)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def retry_notifications(self, incident_id: str, caller_id: str) -> FanOutReport:
        """Run the guardian fan-out again for a broadcasting incident."""
        incident = await self._storage.get_incident(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        if incident.owner_id != caller_id:
            raise IncidentPermissionError(incident_id, caller_id)
        if incident.status is not IncidentStatus.BROADCASTING:
            raise InvalidTransitionError(f"incident {incident_id!r} is {incident.status}, not broadcasting")

        report = await self._fanout.broadcast(incident)
        await self._keep_report(report)
        return report

    def _start_fanout(self, session: TripSession | None, incident: Incident) -> None:
        task = self._spawn(self._run_fanout(incident))
        if session is not None:
            session.fanout_task = task

    async def _keep_report(self, report: FanOutReport) -> None:
        # Reports are kept only while the incident is open; resolve drops them.
        current = await self._storage.get_incident(report.incident_id)
        if current is not None and current.is_open:
            self._fanout_reports[report.incident_id] = report

    async def _run_fanout(self, incident: Incident) -> None:
        try:
            await self._keep_report(await self._fanout.broadcast(incident))
        except Exception:
            # The incident stays broadcasting; delivery can be retried.
            logger.error("escalation.fanout_failed", incident_id=incident.id, exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def resume(self) -> int:
        """Rebuild sessions for active trips found in storage.

        Timers are rebuilt from the persisted start time, so a deadline
        that passed while the process was down escalates on the first
        tick. Returns the number of sessions resumed.
        """
        resumed = 0
        for trip in await self._storage.list_active_trips():
            if await self._session_for(trip.id) is not None:
                resumed += 1
        logger.info("escalation.sessions_resumed", count=resumed)
        return resumed

    async def shutdown(self) -> None:
        for trip_id in list(self._sessions):
            self._close_session(trip_id)
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("escalation.shutdown_complete", cancelled_tasks=len(tasks))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for *key*; the entry is dropped once nobody waits on it."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyedLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def _stamp(self, sample: LocationSample) -> LocationSample:
        if sample.timestamp is None:
            return sample.model_copy(update={"timestamp": self._clock.now()})
        return sample

    def _spawn(self, coro) -> asyncio.Task:  # type: ignore[no-untyped-def,type-arg]
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    async def _write(op: str, awaitable):  # type: ignore[no-untyped-def]
        try:
            return await awaitable
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error("escalation.persistence_failed", op=op, exc_info=True)
            raise PersistenceError(f"{op} failed") from exc

    async def _require_trip(self, trip_id: str) -> Trip:
        trip = await self._storage.get_trip(trip_id)
        if trip is None:
            raise TripNotFoundError(trip_id)
        return trip

    async def _open_incident(self, trip_id: str) -> Incident | None:
        incidents = await self._storage.list_incidents_by_trip(trip_id)
        return next((i for i in incidents if i.is_open), None)

    async def _acquire_claim(self, trip_id: str, incident_id: str) -> bool:
        """Take the escalation latch, replacing one left behind with no open incident.

        Called with the trip lock held and after confirming the trip has
        no open incident, so a holder that names a missing or resolved
        incident is an orphan from a failed write or release.
        """
        if await self._storage.claim_escalation(trip_id, incident_id):
            return True
        held_by = await self._storage.escalation_claim(trip_id)
        if held_by is None:
            return await self._storage.claim_escalation(trip_id, incident_id)
        holder = await self._storage.get_incident(held_by)
        if holder is not None and holder.is_open:
            return False
        logger.warning("escalation.stale_claim_replaced", trip_id=trip_id, held_by=held_by, incident_id=incident_id)
        return await self._storage.replace_escalation_claim(trip_id, held_by, incident_id)

    async def _release_claim(self, trip_id: str) -> None:
        try:
            await self._storage.release_escalation(trip_id)
        except Exception:
            # A leftover claim is taken over by the next trigger.
            logger.error("escalation.claim_release_failed", trip_id=trip_id, exc_info=True)

    def _open_session(self, trip: Trip, state: SessionState, incident_id: str | None = None) -> TripSession:
        source = self._locations.for_trip(trip.id, origin=trip.last_location)
        handle = source.watch(
            partial(self._on_sample, trip.id),
            partial(self._on_location_error, trip.id),
        )
        session = TripSession(
            trip_id=trip.id,
            owner_id=trip.owner_id,
            state=state,
            source=source,
            watch_handle=handle,
            latest_sample=trip.last_location,
            incident_id=incident_id,
        )
        if state is SessionState.MONITORING:
            session.timer = self._new_timer(trip)
            session.timer.start()
        self._sessions[trip.id] = session
        return session

    def _new_timer(self, trip: Trip) -> TripTimer:
        return TripTimer(
            trip.started_at,
            trip.eta_minutes,
            on_deadline=partial(self._on_deadline, trip.id),
            clock=self._clock,
            tick_seconds=self._tick_seconds,
            trip_id=trip.id,
        )

    def _rearm_timer(self, trip_id: str) -> None:
        session = self._sessions.get(trip_id)
        if session is None or session.state is not SessionState.MONITORING:
            return
        if session.timer is not None:
            session.timer.stop()
        self._spawn(self._rearm(session))

    async def _rearm(self, session: TripSession) -> None:
        await asyncio.sleep(self._tick_seconds)
        trip = await self._storage.get_trip(session.trip_id)
        if trip is None or not trip.active or session.state is not SessionState.MONITORING:
            return
        session.timer = self._new_timer(trip)
        session.timer.start()
        logger.info("escalation.timer_rearmed", trip_id=trip.id)

    async def _session_for(self, trip_id: str) -> TripSession | None:
        """Return the live session for an active trip, rebuilding it if needed."""
        session = self._sessions.get(trip_id)
        if session is not None:
            return session

        async with self._rehydrate_lock:
            session = self._sessions.get(trip_id)
            if session is not None:
                return session
            trip = await self._storage.get_trip(trip_id)
            if trip is None or not trip.active:
                return None
            incidents = await self._storage.list_incidents_by_trip(trip_id)
            incident = next((i for i in incidents if i.is_open), None)
            if incident is None and any(i.status is IncidentStatus.RESOLVED for i in incidents):
                await self._finish_resolved_trip(trip_id)
                return None
            if incident is not None:
                session = self._open_session(trip, SessionState.ESCALATED, incident.id)
            else:
                session = self._open_session(trip, SessionState.MONITORING)
            logger.info("escalation.session_rehydrated", trip_id=trip_id, state=session.state)
            return session

    async def _finish_resolved_trip(self, trip_id: str) -> None:
        """Deactivate a trip whose incident was resolved but whose own update was lost."""
        try:
            await self._storage.update_trip(trip_id, {"active": False})
        except Exception:
            logger.error("escalation.trip_left_active", trip_id=trip_id, exc_info=True)
            return
        await self._release_claim(trip_id)
        logger.info("escalation.resolved_trip_closed", trip_id=trip_id)

    def _close_session(self, trip_id: str) -> None:
        session = self._sessions.pop(trip_id, None)
        if session is None:
            return
        session.state = SessionState.CLOSED
        if session.timer is not None:
            session.timer.stop()
            session.timer = None
        session.source.cancel(session.watch_handle)
        self._locations.release(trip_id)
        logger.debug("escalation.session_closed", trip_id=trip_id)

    def _on_sample(self, trip_id: str, sample: LocationSample) -> None:
        session = self._sessions.get(trip_id)
        if session is None:
            return
        if sample.is_newer_than(session.latest_sample):
            session.latest_sample = sample
        self._spawn(self._persist_sample(trip_id, sample))

    def _on_location_error(self, trip_id: str, exc: Exception) -> None:
        logger.warning("escalation.location_error", trip_id=trip_id, error=str(exc))

    async def _persist_sample(self, trip_id: str, sample: LocationSample) -> Trip:
        async with self._locked(f"location:{trip_id}"):
            session = self._sessions.get(trip_id)
            trip = await self._require_trip(trip_id)
            if not trip.active:
                return trip
            if session is not None and sample.is_newer_than(session.latest_sample):
                session.latest_sample = sample
            if not sample.is_newer_than(trip.last_location):
                return trip
            updated = await self._storage.update_trip(trip_id, {"last_location": sample.model_dump()})
            return updated or trip
