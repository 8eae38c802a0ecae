"""Tests for the reported (live) and simulated (demo) location sources."""

from __future__ import annotations

import asyncio
import random
from datetime import timedelta

import pytest
from conftest import ManualClock

from nari_suraksha.models import LocationSample
from nari_suraksha.services.errors import LocationUnavailableError
from nari_suraksha.services.location import (
    DEMO_ORIGIN,
    LocationProvider,
    LocationSource,
    ReportedLocationProvider,
    ReportedLocationSource,
    SimulatedLocationProvider,
    SimulatedLocationSource,
)


class TestReportedLocationSource:
    def test_satisfies_protocol(self, clock: ManualClock) -> None:
        assert isinstance(ReportedLocationSource("t1", clock=clock), LocationSource)
        assert isinstance(ReportedLocationProvider(clock=clock), LocationProvider)

    async def test_sample_without_reports_raises(self, clock: ManualClock) -> None:
        source = ReportedLocationSource("t1", clock=clock)
        with pytest.raises(LocationUnavailableError):
            await source.sample()

    async def test_push_stamps_untimed_samples(self, clock: ManualClock) -> None:
        source = ReportedLocationSource("t1", clock=clock)
        source.push(LocationSample(lat=28.6, lng=77.2))
        sample = await source.sample()
        assert sample.timestamp == clock.now()

    async def test_stale_sample_is_unavailable(self, clock: ManualClock) -> None:
        source = ReportedLocationSource("t1", clock=clock, stale_after=timedelta(minutes=2))
        source.push(LocationSample(lat=28.6, lng=77.2))
        clock.advance(minutes=3)
        with pytest.raises(LocationUnavailableError):
            await source.sample()
        assert source.latest is not None, "the stale fix is still kept as last known"

    async def test_out_of_order_push_keeps_newest(self, clock: ManualClock) -> None:
        source = ReportedLocationSource("t1", clock=clock)
        newer = LocationSample(lat=2, lng=2, timestamp=clock.now())
        older = LocationSample(lat=1, lng=1, timestamp=clock.now() - timedelta(seconds=30))
        source.push(newer)
        source.push(older)
        assert source.latest == newer

    def test_watchers_receive_pushes_until_cancelled(self, clock: ManualClock) -> None:
        source = ReportedLocationSource("t1", clock=clock)
        seen: list[LocationSample] = []
        handle = source.watch(seen.append)

        source.push(LocationSample(lat=1, lng=1))
        source.cancel(handle)
        source.push(LocationSample(lat=2, lng=2))

        assert [s.lat for s in seen] == [1]
        assert source.watcher_count == 0

    def test_errors_go_to_error_callback(self, clock: ManualClock) -> None:
        source = ReportedLocationSource("t1", clock=clock)
        errors: list[Exception] = []
        source.watch(lambda _: None, errors.append)
        source.fail(PermissionError("location permission denied"))
        assert len(errors) == 1

    def test_raising_error_callback_is_contained(self, clock: ManualClock) -> None:
        source = ReportedLocationSource("t1", clock=clock)
        seen: list[LocationSample] = []

        def broken(_: LocationSample) -> None:
            raise RuntimeError("watcher bug")

        def also_broken(_: Exception) -> None:
            raise RuntimeError("error handler bug")

        source.watch(broken, also_broken)
        source.watch(seen.append)

        source.push(LocationSample(lat=1, lng=1))

        assert [s.lat for s in seen] == [1]

    def test_provider_seeds_origin(self, clock: ManualClock) -> None:
        provider = ReportedLocationProvider(clock=clock)
        source = provider.for_trip("t1", origin=LocationSample(lat=1, lng=1, timestamp=clock.now()))
        assert source.latest is not None and source.latest.lat == 1
        assert provider.for_trip("t1") is source
        provider.release("t1")
        assert provider.for_trip("t1") is not source


class TestSimulatedLocationSource:
    async def test_sample_generates_near_origin(self, clock: ManualClock) -> None:
        source = SimulatedLocationSource("t1", clock=clock, rng=random.Random(7))
        sample = await source.sample()
        assert abs(sample.lat - DEMO_ORIGIN.lat) <= 0.00005
        assert abs(sample.lng - DEMO_ORIGIN.lng) <= 0.00005
        assert sample.accuracy == 5.0

    async def test_watch_emits_at_interval_and_cancel_stops(self, clock: ManualClock) -> None:
        source = SimulatedLocationSource("t1", clock=clock, interval_seconds=0.01, rng=random.Random(1))
        seen: list[LocationSample] = []
        handle = source.watch(seen.append)
        assert source.is_generating

        await asyncio.sleep(0.05)
        source.cancel(handle)
        count = len(seen)
        await asyncio.sleep(0.03)

        assert count >= 2
        assert len(seen) == count, "no samples after the last watcher is cancelled"
        assert not source.is_generating

    async def test_device_fix_reanchors(self, clock: ManualClock) -> None:
        source = SimulatedLocationSource("t1", clock=clock, rng=random.Random(3))
        source.push(LocationSample(lat=19.07, lng=72.87))
        clock.advance(seconds=60)
        sample = await source.sample()
        assert abs(sample.lat - 19.07) < 0.001

    async def test_older_device_fix_does_not_reanchor(self, clock: ManualClock) -> None:
        source = SimulatedLocationSource("t1", clock=clock, rng=random.Random(3))
        fix_time = clock.now()
        source.push(LocationSample(lat=19.07, lng=72.87, timestamp=fix_time))
        source.push(LocationSample(lat=12.97, lng=77.59, timestamp=fix_time - timedelta(minutes=5)))

        clock.advance(seconds=60)
        sample = await source.sample()

        assert abs(sample.lat - 19.07) < 0.001
        assert source.latest is not None and source.latest.lat != 12.97

    async def test_provider_release_stops_generation(self, clock: ManualClock) -> None:
        provider = SimulatedLocationProvider(interval_seconds=0.01, clock=clock)
        source = provider.for_trip("t1")
        source.watch(lambda _: None)
        assert source.is_generating
        provider.release("t1")
        await asyncio.sleep(0)
        assert not source.is_generating
