"""Tests for guardian notification fan-out."""

from __future__ import annotations

from unittest.mock import AsyncMock

from nari_suraksha.models import DeliveryState, Guardian, Incident, UserProfile
from nari_suraksha.services.notifications import NotificationFanOut
from nari_suraksha.services.push import MockPushChannel
from nari_suraksha.services.storage import InMemoryStorage


def _incident(owner_id: str = "owner-1") -> Incident:
    return Incident(id="inc-1", trip_id="trip-1", owner_id=owner_id, lat=28.6139, lng=77.209)


class TestRecipientResolution:
    async def test_linked_and_phone_matched_guardians(self, storage: InMemoryStorage, owner: UserProfile) -> None:
        # Ravi is not linked by id but is registered under the same phone number.
        await storage.create_user(
            UserProfile(id="guardian-2", phone="9876500002", name="Ravi", push_tokens=["tok-ravi"]),
        )
        fanout = NotificationFanOut(storage, MockPushChannel())

        targets, unreachable = await fanout.resolve_recipients(owner.id)

        assert sorted(token for _, token in targets) == ["tok-meera", "tok-ravi"]
        assert unreachable == []

    async def test_guardian_without_tokens_is_unreachable(self, storage: InMemoryStorage, owner: UserProfile) -> None:
        fanout = NotificationFanOut(storage, MockPushChannel())
        targets, unreachable = await fanout.resolve_recipients(owner.id)
        assert [token for _, token in targets] == ["tok-meera"]
        assert [g.name for g in unreachable] == ["Ravi"]

    async def test_duplicate_tokens_sent_once(self, storage: InMemoryStorage) -> None:
        await storage.create_user(UserProfile(id="g", phone="9876500009", name="G", push_tokens=["t", "t"]))
        await storage.create_user(
            UserProfile(
                id="o",
                phone="9876500008",
                name="O",
                guardians=[Guardian(name="G", phone="9876500009", user_id="g")],
            ),
        )
        targets, _ = await NotificationFanOut(storage, MockPushChannel()).resolve_recipients("o")
        assert len(targets) == 1

    async def test_unknown_owner(self, storage: InMemoryStorage) -> None:
        targets, unreachable = await NotificationFanOut(storage, MockPushChannel()).resolve_recipients("ghost")
        assert targets == [] and unreachable == []


class TestBroadcast:
    async def test_payload(self, storage: InMemoryStorage, owner: UserProfile) -> None:
        channel = MockPushChannel()
        report = await NotificationFanOut(storage, channel).broadcast(_incident())

        assert report.delivered == 1
        sent = channel.sent[0]
        assert sent["token"] == "tok-meera"
        assert "Asha" in sent["body"]
        assert "https://maps.google.com/?q=28.6139,77.209" in sent["body"]
        assert sent["data"] == {
            "incidentId": "inc-1",
            "tripId": "trip-1",
            "link": "/incident/inc-1",
            "priority": "high",
        }
        assert report.fallback_link.startswith("https://wa.me/?text=")

    async def test_failures_are_isolated(self, storage: InMemoryStorage) -> None:
        tokens = ["ok-1", "bad", "boom", "ok-2"]
        await storage.create_user(UserProfile(id="g", phone="9876500009", name="G", push_tokens=tokens))
        await storage.create_user(
            UserProfile(
                id="o",
                phone="9876500008",
                name="O",
                guardians=[Guardian(name="G", phone="9876500009", user_id="g")],
            ),
        )
        channel = MockPushChannel(failing_tokens={"bad"}, raising_tokens={"boom"})

        report = await NotificationFanOut(storage, channel).broadcast(_incident("o"))

        states = {a.token: a.state for a in report.attempts}
        assert states == {
            "ok-1": DeliveryState.MOCK,
            "bad": DeliveryState.FAILED,
            "boom": DeliveryState.FAILED,
            "ok-2": DeliveryState.MOCK,
        }
        assert report.delivered == 2 and report.failed == 2
        boom = next(a for a in report.attempts if a.token == "boom")
        assert boom.error and "mock transport error" in boom.error

    async def test_no_guardians_still_reports_fallback(self, storage: InMemoryStorage) -> None:
        await storage.create_user(UserProfile(id="o", phone="9876500008", name="O"))
        report = await NotificationFanOut(storage, MockPushChannel()).broadcast(_incident("o"))
        assert report.attempts == []
        assert report.fallback_link

    async def test_storage_failure_never_raises(self) -> None:
        storage = AsyncMock()
        storage.get_user.side_effect = RuntimeError("storage down")
        report = await NotificationFanOut(storage, MockPushChannel()).broadcast(_incident())
        assert report.attempts == []
        assert report.incident_id == "inc-1"
