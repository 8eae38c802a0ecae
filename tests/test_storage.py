"""Tests for the persistence adapter (in-memory and Redis backends)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import orjson
import pytest

from nari_suraksha.models import (
    Incident,
    IncidentStatus,
    LocationSample,
    Report,
    ReportCategory,
    Trip,
    UserProfile,
)
from nari_suraksha.services.errors import PersistenceError
from nari_suraksha.services.storage import InMemoryStorage, RedisStorage, Storage

T0 = datetime(2026, 3, 1, 18, 30, tzinfo=UTC)


# -----------------------------------------------------------------------
# InMemoryStorage
# -----------------------------------------------------------------------


class TestInMemoryStorage:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryStorage(), Storage)

    async def test_create_and_get_trip(self) -> None:
        storage = InMemoryStorage()
        trip = await storage.create_trip(Trip(owner_id="u1", eta_minutes=30))
        assert await storage.get_trip(trip.id) == trip

    async def test_get_unknown_returns_none(self) -> None:
        storage = InMemoryStorage()
        assert await storage.get_trip("missing") is None
        assert await storage.get_incident("missing") is None
        assert await storage.get_report("missing") is None

    async def test_create_is_idempotent_by_id(self) -> None:
        storage = InMemoryStorage()
        first = await storage.create_trip(Trip(id="t1", owner_id="u1", eta_minutes=30))
        second = await storage.create_trip(Trip(id="t1", owner_id="u2", eta_minutes=45))
        assert second == first, "re-creating an existing id should return the stored record"

    async def test_update_trip_merges_and_stamps(self) -> None:
        storage = InMemoryStorage()
        trip = await storage.create_trip(Trip(owner_id="u1", eta_minutes=30))
        assert trip.last_update_at is None

        sample = LocationSample(lat=28.6, lng=77.2, timestamp=T0)
        updated = await storage.update_trip(trip.id, {"last_location": sample.model_dump()})

        assert updated is not None
        assert updated.last_location == sample
        assert updated.eta_minutes == 30, "fields not in the update must be preserved"
        assert updated.last_update_at is not None

    async def test_update_unknown_returns_none(self) -> None:
        storage = InMemoryStorage()
        assert await storage.update_trip("missing", {"active": False}) is None
        assert await storage.update_incident("missing", {"status": "resolved"}) is None

    async def test_lists_by_owner_and_trip(self) -> None:
        storage = InMemoryStorage()
        t1 = await storage.create_trip(Trip(owner_id="u1", eta_minutes=30))
        await storage.create_trip(Trip(owner_id="u2", eta_minutes=30))
        inc = await storage.create_incident(Incident(trip_id=t1.id, owner_id="u1", lat=0, lng=0))

        assert [t.id for t in await storage.list_trips_by_owner("u1")] == [t1.id]
        assert [i.id for i in await storage.list_incidents_by_owner("u1")] == [inc.id]
        assert [i.id for i in await storage.list_incidents_by_trip(t1.id)] == [inc.id]
        assert await storage.list_incidents_by_owner("u2") == []

    async def test_list_active_trips(self) -> None:
        storage = InMemoryStorage()
        t1 = await storage.create_trip(Trip(owner_id="u1", eta_minutes=30))
        t2 = await storage.create_trip(Trip(owner_id="u1", eta_minutes=30))
        await storage.update_trip(t2.id, {"active": False})
        assert [t.id for t in await storage.list_active_trips()] == [t1.id]

    async def test_escalation_claim_is_compare_and_set(self) -> None:
        storage = InMemoryStorage()
        assert await storage.claim_escalation("t1", "i1") is True
        assert await storage.claim_escalation("t1", "i2") is False, "second claim must lose"
        await storage.release_escalation("t1")
        assert await storage.claim_escalation("t1", "i3") is True

    async def test_replace_claim_only_from_expected_holder(self) -> None:
        storage = InMemoryStorage()
        await storage.claim_escalation("t1", "i1")
        assert await storage.escalation_claim("t1") == "i1"

        assert await storage.replace_escalation_claim("t1", "other", "i2") is False
        assert await storage.replace_escalation_claim("t1", "i1", "i2") is True
        assert await storage.escalation_claim("t1") == "i2"
        assert await storage.escalation_claim("t9") is None

    async def test_user_lookup_by_phone(self) -> None:
        storage = InMemoryStorage()
        user = await storage.create_user(UserProfile(phone="9876543210", name="Asha"))
        assert await storage.get_user_by_phone("+919876543210") == user
        assert await storage.get_user_by_phone("+919999999999") is None

    async def test_writes_are_published(self) -> None:
        storage = InMemoryStorage()
        trip = await storage.create_trip(Trip(owner_id="u1", eta_minutes=30))
        seen: list[Trip] = []
        storage.feed.subscribe(trip.id, seen.append)

        await storage.update_trip(trip.id, {"active": False})
        assert len(seen) == 1
        assert seen[0].active is False


class TestReportQueries:
    @pytest.fixture
    async def storage(self) -> InMemoryStorage:
        storage = InMemoryStorage()
        await storage.create_report(
            Report(id="near-old", lat=28.6139, lng=77.2090, category="harassment", created_at=T0),
        )
        await storage.create_report(
            Report(
                id="near-new",
                lat=28.6145,
                lng=77.2095,
                category="poor_lighting",
                created_at=T0 + timedelta(hours=1),
            ),
        )
        await storage.create_report(Report(id="far", lat=19.07, lng=72.87, category="harassment", created_at=T0))
        return storage

    async def test_newest_first(self, storage: InMemoryStorage) -> None:
        ids = [r.id for r in await storage.list_reports()]
        assert ids[0] == "near-new"
        assert set(ids) == {"near-old", "near-new", "far"}

    async def test_filter_by_category(self, storage: InMemoryStorage) -> None:
        reports = await storage.list_reports(category=ReportCategory.HARASSMENT)
        assert {r.id for r in reports} == {"near-old", "far"}

    async def test_filter_by_radius(self, storage: InMemoryStorage) -> None:
        reports = await storage.list_reports(lat=28.6139, lng=77.2090, radius_m=500)
        assert [r.id for r in reports] == ["near-new", "near-old"]

    async def test_category_and_radius_combined(self, storage: InMemoryStorage) -> None:
        reports = await storage.list_reports(category="harassment", lat=28.6139, lng=77.2090, radius_m=500)
        assert [r.id for r in reports] == ["near-old"]


# -----------------------------------------------------------------------
# RedisStorage (client mocked)
# -----------------------------------------------------------------------


@pytest.fixture
def redis_storage() -> RedisStorage:
    storage = RedisStorage("redis://localhost:6379/0", namespace="test:")
    storage._redis = AsyncMock()
    return storage


class TestRedisStorage:
    def test_satisfies_protocol(self, redis_storage: RedisStorage) -> None:
        assert isinstance(redis_storage, Storage)

    async def test_create_trip_uses_set_nx_and_indexes(self, redis_storage: RedisStorage) -> None:
        redis_storage._redis.set.return_value = True
        trip = Trip(id="t1", owner_id="u1", eta_minutes=30)

        await redis_storage.create_trip(trip)

        key, payload = redis_storage._redis.set.await_args.args
        assert key == "test:trip:t1"
        assert redis_storage._redis.set.await_args.kwargs == {"nx": True}
        assert orjson.loads(payload)["ownerId"] == "u1", "records are stored with camelCase keys"
        indexed = {call.args[0] for call in redis_storage._redis.sadd.await_args_list}
        assert indexed == {"test:owner:u1:trips", "test:trips:active"}

    async def test_create_existing_returns_stored(self, redis_storage: RedisStorage) -> None:
        stored = Trip(id="t1", owner_id="u1", eta_minutes=30)
        redis_storage._redis.set.return_value = None
        redis_storage._redis.get.return_value = orjson.dumps(stored.to_wire())

        result = await redis_storage.create_trip(Trip(id="t1", owner_id="u2", eta_minutes=10))

        assert result == stored
        redis_storage._redis.sadd.assert_not_awaited()

    async def test_get_trip_decodes(self, redis_storage: RedisStorage) -> None:
        stored = Trip(id="t1", owner_id="u1", eta_minutes=30)
        redis_storage._redis.get.return_value = orjson.dumps(stored.to_wire())
        assert await redis_storage.get_trip("t1") == stored

    async def test_update_incident_read_modify_write(self, redis_storage: RedisStorage) -> None:
        stored = Incident(id="i1", trip_id="t1", owner_id="u1", lat=1, lng=2)
        redis_storage._redis.get.return_value = orjson.dumps(stored.to_wire())

        updated = await redis_storage.update_incident("i1", {"status": IncidentStatus.BROADCASTING})

        assert updated is not None and updated.status is IncidentStatus.BROADCASTING
        key, payload = redis_storage._redis.set.await_args.args
        assert key == "test:incident:i1"
        assert orjson.loads(payload)["status"] == "broadcasting"

    async def test_deactivated_trip_leaves_active_index(self, redis_storage: RedisStorage) -> None:
        stored = Trip(id="t1", owner_id="u1", eta_minutes=30)
        redis_storage._redis.get.return_value = orjson.dumps(stored.to_wire())

        await redis_storage.update_trip("t1", {"active": False})

        redis_storage._redis.srem.assert_awaited_once_with("test:trips:active", "t1")

    async def test_claim_escalation(self, redis_storage: RedisStorage) -> None:
        redis_storage._redis.set.return_value = True
        assert await redis_storage.claim_escalation("t1", "i1") is True
        redis_storage._redis.set.assert_awaited_with("test:escalation:t1", "i1", nx=True)

        redis_storage._redis.set.return_value = None
        assert await redis_storage.claim_escalation("t1", "i2") is False

    async def test_escalation_claim_holder(self, redis_storage: RedisStorage) -> None:
        redis_storage._redis.get.return_value = b"i1"
        assert await redis_storage.escalation_claim("t1") == "i1"
        redis_storage._redis.get.assert_awaited_with("test:escalation:t1")

        redis_storage._redis.get.return_value = None
        assert await redis_storage.escalation_claim("t1") is None

    async def test_replace_claim_is_scripted_compare_and_set(self, redis_storage: RedisStorage) -> None:
        redis_storage._redis.eval.return_value = 1
        assert await redis_storage.replace_escalation_claim("t1", "i1", "i2") is True
        script, numkeys, key, held_by, incident_id = redis_storage._redis.eval.await_args.args
        assert "GET" in script and numkeys == 1
        assert (key, held_by, incident_id) == ("test:escalation:t1", "i1", "i2")

        redis_storage._redis.eval.return_value = 0
        assert await redis_storage.replace_escalation_claim("t1", "i1", "i3") is False

    async def test_redis_errors_become_persistence_errors(self, redis_storage: RedisStorage) -> None:
        from redis.exceptions import ConnectionError as RedisConnectionError

        redis_storage._redis.get.side_effect = RedisConnectionError("down")
        with pytest.raises(PersistenceError):
            await redis_storage.get_trip("t1")

    async def test_ping_false_on_error(self, redis_storage: RedisStorage) -> None:
        redis_storage._redis.ping.side_effect = OSError("refused")
        assert await redis_storage.ping() is False
