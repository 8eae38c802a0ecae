"""Shared fixtures: a manually advanced clock and an in-memory wiring."""

from __future__ import annotations

import asyncio
import inspect
from datetime import UTC, datetime, timedelta

import pytest

from nari_suraksha.models import Guardian, UserProfile
from nari_suraksha.services.escalation import EscalationEngine
from nari_suraksha.services.location import ReportedLocationProvider
from nari_suraksha.services.notifications import NotificationFanOut
from nari_suraksha.services.push import MockPushChannel
from nari_suraksha.services.storage import InMemoryStorage

T0 = datetime(2026, 3, 1, 18, 30, tzinfo=UTC)


class ManualClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, *, minutes: float = 0) -> datetime:
        self._now += timedelta(seconds=seconds, minutes=minutes)
        return self._now


async def settle(rounds: int = 5) -> None:
    """Let scheduled background tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(check, timeout: float = 1.0):
    """Poll *check* (sync or async) until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = check()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def channel() -> MockPushChannel:
    return MockPushChannel(site_url="https://suraksha.example")


@pytest.fixture
async def engine(storage, channel, clock):
    engine = EscalationEngine(
        storage,
        ReportedLocationProvider(clock=clock),
        NotificationFanOut(storage, channel),
        clock=clock,
        # Timers are driven by hand through TripTimer.tick().
        tick_seconds=3600,
        sample_timeout_seconds=0.5,
    )
    yield engine
    await engine.shutdown()


@pytest.fixture
async def owner(storage) -> UserProfile:
    guardian_user = await storage.create_user(
        UserProfile(id="guardian-1", phone="9876500001", name="Meera", push_tokens=["tok-meera"]),
    )
    return await storage.create_user(
        UserProfile(
            id="owner-1",
            phone="9876500000",
            name="Asha",
            guardians=[
                Guardian(name="Meera", phone="9876500001", user_id=guardian_user.id),
                Guardian(name="Ravi", phone="9876500002"),
            ],
        ),
    )
