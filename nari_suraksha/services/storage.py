"""Persistence adapter for trips, incidents, reports and user profiles.

Two interchangeable backends implement the :class:`Storage` capability
interface: an ``asyncio.Lock`` guarded in-memory store (demo mode and
tests) and a Redis store (live mode) holding each record as an orjson
blob with small index sets for owner/trip lookups.

Writes are idempotent keyed by the record id: creating a record whose
id already exists returns the stored record untouched. Every successful
write is published on the shared :class:`ChangeFeed`.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from typing import Any, Protocol, TypeVar, runtime_checkable

import orjson
import structlog
from pydantic import BaseModel

from nari_suraksha.models import Incident, Report, ReportCategory, Trip, UserProfile
from nari_suraksha.models.base import utcnow
from nari_suraksha.services.errors import PersistenceError
from nari_suraksha.services.events import ChangeFeed
from nari_suraksha.services.geo import within_radius

logger = structlog.get_logger(__name__)

_M = TypeVar("_M", bound=BaseModel)

# Swap the escalation latch only if it still names the expected holder.
_REPLACE_CLAIM_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[2])
    return 1
end
return 0
"""


# ---------------------------------------------------------------------------
# Storage protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Storage(Protocol):
    """Async persistence capability consumed by the escalation engine."""

    @property
    def feed(self) -> ChangeFeed: ...

    # -- users ---------------------------------------------------------------
    async def create_user(self, user: UserProfile) -> UserProfile: ...

    async def get_user(self, user_id: str) -> UserProfile | None: ...

    async def get_user_by_phone(self, phone: str) -> UserProfile | None: ...

    async def update_user(self, user_id: str, updates: dict[str, Any]) -> UserProfile | None: ...

    # -- trips ---------------------------------------------------------------
    async def create_trip(self, trip: Trip) -> Trip: ...

    async def get_trip(self, trip_id: str) -> Trip | None: ...

    async def update_trip(self, trip_id: str, updates: dict[str, Any]) -> Trip | None: ...

    async def list_trips_by_owner(self, owner_id: str) -> list[Trip]: ...

    async def list_active_trips(self) -> list[Trip]: ...

    # -- incidents -----------------------------------------------------------
    async def create_incident(self, incident: Incident) -> Incident: ...

    async def get_incident(self, incident_id: str) -> Incident | None: ...

    async def update_incident(self, incident_id: str, updates: dict[str, Any]) -> Incident | None: ...

    async def list_incidents_by_owner(self, owner_id: str) -> list[Incident]: ...

    async def list_incidents_by_trip(self, trip_id: str) -> list[Incident]: ...

    # -- escalation latch ----------------------------------------------------
    async def claim_escalation(self, trip_id: str, incident_id: str) -> bool: ...

    async def release_escalation(self, trip_id: str) -> None: ...

    async def escalation_claim(self, trip_id: str) -> str | None: ...

    async def replace_escalation_claim(self, trip_id: str, held_by: str, incident_id: str) -> bool: ...

    # -- reports -------------------------------------------------------------
    async def create_report(self, report: Report) -> Report: ...

    async def get_report(self, report_id: str) -> Report | None: ...

    async def list_reports(
        self,
        *,
        category: ReportCategory | str | None = None,
        lat: float | None = None,
        lng: float | None = None,
        radius_m: float | None = None,
    ) -> list[Report]: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _merge(model: _M, updates: dict[str, Any]) -> _M:
    """Partial merge that re-validates the result."""
    return type(model).model_validate({**model.model_dump(), **updates})


def _filter_reports(
    reports: list[Report],
    category: ReportCategory | str | None,
    lat: float | None,
    lng: float | None,
    radius_m: float | None,
) -> list[Report]:
    if category:
        reports = [r for r in reports if r.category == category]
    if lat is not None and lng is not None and radius_m:
        reports = [r for r in reports if within_radius(r.lat, r.lng, lat, lng, radius_m)]
    return sorted(reports, key=lambda r: r.created_at, reverse=True)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryStorage:
    """Dict-backed store guarded by a single :class:`asyncio.Lock`.

    Sufficient for single-process async workloads; used for demo mode
    and as the test substitute for the Redis store.
    """

    __slots__ = ("_claims", "_feed", "_incidents", "_lock", "_reports", "_trips", "_users")

    def __init__(self, *, feed: ChangeFeed | None = None) -> None:
        self._feed = feed or ChangeFeed()
        self._lock = asyncio.Lock()
        self._users: dict[str, UserProfile] = {}
        self._trips: dict[str, Trip] = {}
        self._incidents: dict[str, Incident] = {}
        self._reports: dict[str, Report] = {}
        self._claims: dict[str, str] = {}

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    # -- users ---------------------------------------------------------------

    async def create_user(self, user: UserProfile) -> UserProfile:
        async with self._lock:
            existing = self._users.get(user.id)
            if existing is not None:
                return existing
            self._users[user.id] = user
        self._feed.publish(user.id, user)
        return user

    async def get_user(self, user_id: str) -> UserProfile | None:
        return self._users.get(user_id)

    async def get_user_by_phone(self, phone: str) -> UserProfile | None:
        return next((u for u in self._users.values() if u.phone == phone), None)

    async def update_user(self, user_id: str, updates: dict[str, Any]) -> UserProfile | None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            user = _merge(user, updates)
            self._users[user_id] = user
        self._feed.publish(user_id, user)
        return user

    # -- trips ---------------------------------------------------------------

    async def create_trip(self, trip: Trip) -> Trip:
        async with self._lock:
            existing = self._trips.get(trip.id)
            if existing is not None:
                return existing
            self._trips[trip.id] = trip
        self._feed.publish(trip.id, trip)
        return trip

    async def get_trip(self, trip_id: str) -> Trip | None:
        return self._trips.get(trip_id)

    async def update_trip(self, trip_id: str, updates: dict[str, Any]) -> Trip | None:
        async with self._lock:
            trip = self._trips.get(trip_id)
            if trip is None:
                return None
            trip = _merge(trip, {**updates, "last_update_at": utcnow()})
            self._trips[trip_id] = trip
        self._feed.publish(trip_id, trip)
        return trip

    async def list_trips_by_owner(self, owner_id: str) -> list[Trip]:
        return [t for t in self._trips.values() if t.owner_id == owner_id]

    async def list_active_trips(self) -> list[Trip]:
        return [t for t in self._trips.values() if t.active]

    # -- incidents -----------------------------------------------------------

    async def create_incident(self, incident: Incident) -> Incident:
        async with self._lock:
            existing = self._incidents.get(incident.id)
            if existing is not None:
                return existing
            self._incidents[incident.id] = incident
        self._feed.publish(incident.id, incident)
        return incident

    async def get_incident(self, incident_id: str) -> Incident | None:
        return self._incidents.get(incident_id)

    async def update_incident(self, incident_id: str, updates: dict[str, Any]) -> Incident | None:
        async with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None:
                return None
            incident = _merge(incident, updates)
            self._incidents[incident_id] = incident
        self._feed.publish(incident_id, incident)
        return incident

    async def list_incidents_by_owner(self, owner_id: str) -> list[Incident]:
        return [i for i in self._incidents.values() if i.owner_id == owner_id]

    async def list_incidents_by_trip(self, trip_id: str) -> list[Incident]:
        return [i for i in self._incidents.values() if i.trip_id == trip_id]

    # -- escalation latch ----------------------------------------------------

    async def claim_escalation(self, trip_id: str, incident_id: str) -> bool:
        async with self._lock:
            if trip_id in self._claims:
                return False
            self._claims[trip_id] = incident_id
            return True

    async def release_escalation(self, trip_id: str) -> None:
        async with self._lock:
            self._claims.pop(trip_id, None)

    async def escalation_claim(self, trip_id: str) -> str | None:
        return self._claims.get(trip_id)

    async def replace_escalation_claim(self, trip_id: str, held_by: str, incident_id: str) -> bool:
        async with self._lock:
            if self._claims.get(trip_id) != held_by:
                return False
            self._claims[trip_id] = incident_id
            return True

    # -- reports -------------------------------------------------------------

    async def create_report(self, report: Report) -> Report:
        async with self._lock:
            existing = self._reports.get(report.id)
            if existing is not None:
                return existing
            self._reports[report.id] = report
        self._feed.publish(report.id, report)
        return report

    async def get_report(self, report_id: str) -> Report | None:
        return self._reports.get(report_id)

    async def list_reports(
        self,
        *,
        category: ReportCategory | str | None = None,
        lat: float | None = None,
        lng: float | None = None,
        radius_m: float | None = None,
    ) -> list[Report]:
        return _filter_reports(list(self._reports.values()), category, lat, lng, radius_m)


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisStorage:
    """Redis-backed store using ``redis.asyncio`` with connection pooling.

    Records live under ``{namespace}{kind}:{id}``; owner and trip indexes
    are Redis sets. The escalation latch is a ``SET NX`` key, which is the
    compare-and-set guard needed when more than one instance may try to
    escalate the same trip; a latch left naming a missing incident is
    swapped by a Lua script that checks the current holder first.
    """

    __slots__ = ("_feed", "_namespace", "_pool", "_redis")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        namespace: str = "nari:",
        max_connections: int = 20,
        feed: ChangeFeed | None = None,
    ) -> None:
        import redis.asyncio as aioredis

        self._namespace = namespace
        self._feed = feed or ChangeFeed()
        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    # -- Internal helpers ------------------------------------------------------

    def _key(self, *parts: str) -> str:
        return self._namespace + ":".join(parts)

    @contextlib.asynccontextmanager
    async def _guard(self, op: str) -> AsyncIterator[None]:
        from redis.exceptions import RedisError

        try:
            yield
        except RedisError as exc:
            logger.error("storage.redis_op_failed", op=op, error=str(exc))
            raise PersistenceError(f"storage operation {op!r} failed") from exc

    @staticmethod
    def _dump(model: BaseModel) -> bytes:
        return orjson.dumps(model.model_dump(mode="json", by_alias=True))

    async def _load(self, model_cls: type[_M], key: str) -> _M | None:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        return model_cls.model_validate(orjson.loads(raw))

    async def _load_many(self, model_cls: type[_M], keys: list[str]) -> list[_M]:
        if not keys:
            return []
        raws = await self._redis.mget(keys)
        return [model_cls.model_validate(orjson.loads(raw)) for raw in raws if raw is not None]

    async def _create(self, kind: str, model: _M, index_keys: tuple[str, ...] = ()) -> _M:
        key = self._key(kind, model.id)  # type: ignore[attr-defined]
        created = await self._redis.set(key, self._dump(model), nx=True)
        if not created:
            existing = await self._load(type(model), key)
            return existing if existing is not None else model
        for index_key in index_keys:
            await self._redis.sadd(index_key, model.id)  # type: ignore[attr-defined]
        self._feed.publish(model.id, model)  # type: ignore[attr-defined]
        return model

    async def _update(self, kind: str, model_cls: type[_M], record_id: str, updates: dict[str, Any]) -> _M | None:
        key = self._key(kind, record_id)
        current = await self._load(model_cls, key)
        if current is None:
            return None
        merged = _merge(current, updates)
        await self._redis.set(key, self._dump(merged))
        self._feed.publish(record_id, merged)
        return merged

    async def _members(self, kind: str, index_key: str) -> list[str]:
        ids = await self._redis.smembers(index_key)
        return [self._key(kind, i.decode() if isinstance(i, bytes) else i) for i in ids]

    # -- users ---------------------------------------------------------------

    async def create_user(self, user: UserProfile) -> UserProfile:
        async with self._guard("create_user"):
            created = await self._create("user", user)
            await self._redis.set(self._key("phone", created.phone), created.id, nx=True)
            return created

    async def get_user(self, user_id: str) -> UserProfile | None:
        async with self._guard("get_user"):
            return await self._load(UserProfile, self._key("user", user_id))

    async def get_user_by_phone(self, phone: str) -> UserProfile | None:
        async with self._guard("get_user_by_phone"):
            user_id = await self._redis.get(self._key("phone", phone))
            if user_id is None:
                return None
            if isinstance(user_id, bytes):
                user_id = user_id.decode()
            return await self._load(UserProfile, self._key("user", user_id))

    async def update_user(self, user_id: str, updates: dict[str, Any]) -> UserProfile | None:
        async with self._guard("update_user"):
            return await self._update("user", UserProfile, user_id, updates)

    # -- trips ---------------------------------------------------------------

    async def create_trip(self, trip: Trip) -> Trip:
        async with self._guard("create_trip"):
            return await self._create(
                "trip",
                trip,
                (self._key("owner", trip.owner_id, "trips"), self._key("trips", "active")),
            )

    async def get_trip(self, trip_id: str) -> Trip | None:
        async with self._guard("get_trip"):
            return await self._load(Trip, self._key("trip", trip_id))

    async def update_trip(self, trip_id: str, updates: dict[str, Any]) -> Trip | None:
        async with self._guard("update_trip"):
            trip = await self._update("trip", Trip, trip_id, {**updates, "last_update_at": utcnow()})
            if trip is not None and not trip.active:
                await self._redis.srem(self._key("trips", "active"), trip_id)
            return trip

    async def list_trips_by_owner(self, owner_id: str) -> list[Trip]:
        async with self._guard("list_trips_by_owner"):
            keys = await self._members("trip", self._key("owner", owner_id, "trips"))
            return await self._load_many(Trip, keys)

    async def list_active_trips(self) -> list[Trip]:
        async with self._guard("list_active_trips"):
            keys = await self._members("trip", self._key("trips", "active"))
            return [t for t in await self._load_many(Trip, keys) if t.active]

    # -- incidents -----------------------------------------------------------

    async def create_incident(self, incident: Incident) -> Incident:
        async with self._guard("create_incident"):
            return await self._create(
                "incident",
                incident,
                (
                    self._key("owner", incident.owner_id, "incidents"),
                    self._key("trip", incident.trip_id, "incidents"),
                ),
            )

    async def get_incident(self, incident_id: str) -> Incident | None:
        async with self._guard("get_incident"):
            return await self._load(Incident, self._key("incident", incident_id))

    async def update_incident(self, incident_id: str, updates: dict[str, Any]) -> Incident | None:
        async with self._guard("update_incident"):
            return await self._update("incident", Incident, incident_id, updates)

    async def list_incidents_by_owner(self, owner_id: str) -> list[Incident]:
        async with self._guard("list_incidents_by_owner"):
            keys = await self._members("incident", self._key("owner", owner_id, "incidents"))
            return await self._load_many(Incident, keys)

    async def list_incidents_by_trip(self, trip_id: str) -> list[Incident]:
        async with self._guard("list_incidents_by_trip"):
            keys = await self._members("incident", self._key("trip", trip_id, "incidents"))
            return await self._load_many(Incident, keys)

    # -- escalation latch ----------------------------------------------------

    async def claim_escalation(self, trip_id: str, incident_id: str) -> bool:
        async with self._guard("claim_escalation"):
            return bool(await self._redis.set(self._key("escalation", trip_id), incident_id, nx=True))

    async def release_escalation(self, trip_id: str) -> None:
        async with self._guard("release_escalation"):
            await self._redis.delete(self._key("escalation", trip_id))

    async def escalation_claim(self, trip_id: str) -> str | None:
        async with self._guard("escalation_claim"):
            held = await self._redis.get(self._key("escalation", trip_id))
        if held is None:
            return None
        return held.decode() if isinstance(held, bytes) else held

    async def replace_escalation_claim(self, trip_id: str, held_by: str, incident_id: str) -> bool:
        async with self._guard("replace_escalation_claim"):
            replaced = await self._redis.eval(
                _REPLACE_CLAIM_SCRIPT, 1, self._key("escalation", trip_id), held_by, incident_id,
            )
        return bool(replaced)

    # -- reports -------------------------------------------------------------

    async def create_report(self, report: Report) -> Report:
        async with self._guard("create_report"):
            return await self._create("report", report, (self._key("reports"),))

    async def get_report(self, report_id: str) -> Report | None:
        async with self._guard("get_report"):
            return await self._load(Report, self._key("report", report_id))

    async def list_reports(
        self,
        *,
        category: ReportCategory | str | None = None,
        lat: float | None = None,
        lng: float | None = None,
        radius_m: float | None = None,
    ) -> list[Report]:
        async with self._guard("list_reports"):
            keys = await self._members("report", self._key("reports"))
            reports = await self._load_many(Report, keys)
        return _filter_reports(reports, category, lat, lng, radius_m)

    # -- Lifecycle -------------------------------------------------------------

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()
