"""Location sources for monitored trips.

A :class:`LocationProvider` hands out one :class:`LocationSource` per
trip. Two variants exist and are chosen at startup, never inside the
escalation engine:

* :class:`ReportedLocationProvider` (live): the device posts fixes to the
  API; ``sample()`` returns the freshest reported fix.
* :class:`SimulatedLocationProvider` (demo): a background task jitters a
  position around a starting point at a bounded interval.

Both sources also accept device-reported fixes via ``push`` so the same
API works in either mode.
"""

from __future__ import annotations

import asyncio
import itertools
import random
from collections.abc import Callable
from datetime import timedelta
from typing import Final, Protocol, runtime_checkable

import structlog

from nari_suraksha.models import LocationSample
from nari_suraksha.services.clock import Clock, SystemClock
from nari_suraksha.services.errors import LocationUnavailableError

logger = structlog.get_logger(__name__)

SampleCallback = Callable[[LocationSample], None]
ErrorCallback = Callable[[Exception], None]

# New Delhi, used when a simulated trip has no starting fix.
DEMO_ORIGIN: Final[LocationSample] = LocationSample(lat=28.6139, lng=77.2090, accuracy=5.0)
_DEMO_JITTER_DEG: Final[float] = 0.0001


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class LocationSource(Protocol):
    async def sample(self) -> LocationSample: ...

    def watch(self, on_sample: SampleCallback, on_error: ErrorCallback | None = None) -> int: ...

    def cancel(self, handle: int) -> None: ...

    def push(self, sample: LocationSample) -> None: ...


@runtime_checkable
class LocationProvider(Protocol):
    def for_trip(self, trip_id: str, origin: LocationSample | None = None) -> LocationSource: ...

    def release(self, trip_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Device-reported source (live)
# ---------------------------------------------------------------------------


class ReportedLocationSource:
    """Source fed by fixes the device reports to the API.

    ``sample()`` only returns a fix younger than *stale_after*; older
    fixes are still kept by the engine as last-known location.
    """

    __slots__ = ("_clock", "_handles", "_latest", "_stale_after", "_watchers", "trip_id")

    def __init__(
        self,
        trip_id: str,
        *,
        clock: Clock | None = None,
        stale_after: timedelta = timedelta(minutes=2),
    ) -> None:
        self.trip_id = trip_id
        self._clock = clock or SystemClock()
        self._stale_after = stale_after
        self._latest: LocationSample | None = None
        self._watchers: dict[int, tuple[SampleCallback, ErrorCallback | None]] = {}
        self._handles = itertools.count(1)

    @property
    def latest(self) -> LocationSample | None:
        return self._latest

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    def _stamp(self, sample: LocationSample) -> LocationSample:
        if sample.timestamp is None:
            return sample.model_copy(update={"timestamp": self._clock.now()})
        return sample

    async def sample(self) -> LocationSample:
        latest = self._latest
        if latest is None or latest.timestamp is None:
            raise LocationUnavailableError(f"no location reported for trip {self.trip_id!r}")
        if self._clock.now() - latest.timestamp > self._stale_after:
            raise LocationUnavailableError(f"last location for trip {self.trip_id!r} is stale")
        return latest

    def push(self, sample: LocationSample) -> None:
        sample = self._stamp(sample)
        if sample.is_newer_than(self._latest):
            self._latest = sample
        self._emit(sample)

    def fail(self, exc: Exception) -> None:
        """Report a sensor error to every watcher."""
        for handle, (_, on_error) in list(self._watchers.items()):
            if on_error is None:
                continue
            try:
                on_error(exc)
            except Exception:
                logger.warning("location.error_callback_failed", trip_id=self.trip_id, handle=handle, exc_info=True)

    def _emit(self, sample: LocationSample) -> None:
        for handle, (on_sample, on_error) in list(self._watchers.items()):
            try:
                on_sample(sample)
            except Exception as exc:
                logger.warning("location.watcher_failed", trip_id=self.trip_id, handle=handle, exc_info=True)
                if on_error is None:
                    continue
                try:
                    on_error(exc)
                except Exception:
                    logger.warning(
                        "location.error_callback_failed", trip_id=self.trip_id, handle=handle, exc_info=True,
                    )

    def watch(self, on_sample: SampleCallback, on_error: ErrorCallback | None = None) -> int:
        handle = next(self._handles)
        self._watchers[handle] = (on_sample, on_error)
        return handle

    def cancel(self, handle: int) -> None:
        self._watchers.pop(handle, None)


class ReportedLocationProvider:
    __slots__ = ("_clock", "_sources", "_stale_after")

    def __init__(self, *, clock: Clock | None = None, stale_after_seconds: float = 120.0) -> None:
        self._clock = clock or SystemClock()
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._sources: dict[str, ReportedLocationSource] = {}

    def for_trip(self, trip_id: str, origin: LocationSample | None = None) -> ReportedLocationSource:
        source = self._sources.get(trip_id)
        if source is None:
            source = ReportedLocationSource(trip_id, clock=self._clock, stale_after=self._stale_after)
            self._sources[trip_id] = source
        if origin is not None:
            source.push(origin)
        return source

    def release(self, trip_id: str) -> None:
        self._sources.pop(trip_id, None)


# ---------------------------------------------------------------------------
# Simulated source (demo)
# ---------------------------------------------------------------------------


class SimulatedLocationSource(ReportedLocationSource):
    """Generates a slowly wandering position for demo trips.

    The generator task runs only while at least one watcher is
    registered, emitting one fix per *interval_seconds*.
    """

    __slots__ = ("_interval", "_position", "_rng", "_task")

    def __init__(
        self,
        trip_id: str,
        *,
        origin: LocationSample | None = None,
        interval_seconds: float = 10.0,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(trip_id, clock=clock, stale_after=timedelta(seconds=interval_seconds * 3))
        self._position = origin or DEMO_ORIGIN
        self._interval = interval_seconds
        self._rng = rng or random.Random()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_generating(self) -> bool:
        return self._task is not None and not self._task.done()

    def _next_position(self) -> LocationSample:
        self._position = LocationSample(
            lat=self._position.lat + (self._rng.random() - 0.5) * _DEMO_JITTER_DEG,
            lng=self._position.lng + (self._rng.random() - 0.5) * _DEMO_JITTER_DEG,
            accuracy=self._position.accuracy,
            timestamp=self._clock.now(),
        )
        return self._position

    async def sample(self) -> LocationSample:
        try:
            return await super().sample()
        except LocationUnavailableError:
            sample = self._next_position()
            self._latest = sample
            return sample

    def push(self, sample: LocationSample) -> None:
        # A newer real fix from the device re-anchors the simulation.
        sample = self._stamp(sample)
        if sample.is_newer_than(self._latest):
            self._position = sample
        super().push(sample)

    def watch(self, on_sample: SampleCallback, on_error: ErrorCallback | None = None) -> int:
        handle = super().watch(on_sample, on_error)
        if not self.is_generating:
            self._task = asyncio.create_task(self._run(), name=f"demo-location:{self.trip_id}")
        return handle

    def cancel(self, handle: int) -> None:
        super().cancel(handle)
        if self.watcher_count == 0:
            self.stop()

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        try:
            while self.watcher_count:
                sample = self._next_position()
                self._latest = sample
                self._emit(sample)
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            logger.debug("location.simulation_cancelled", trip_id=self.trip_id)


class SimulatedLocationProvider:
    __slots__ = ("_clock", "_interval", "_rng", "_sources")

    def __init__(
        self,
        *,
        interval_seconds: float = 10.0,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._interval = interval_seconds
        self._clock = clock or SystemClock()
        self._rng = rng
        self._sources: dict[str, SimulatedLocationSource] = {}

    def for_trip(self, trip_id: str, origin: LocationSample | None = None) -> SimulatedLocationSource:
        source = self._sources.get(trip_id)
        if source is None:
            source = SimulatedLocationSource(
                trip_id,
                origin=origin,
                interval_seconds=self._interval,
                clock=self._clock,
                rng=self._rng,
            )
            self._sources[trip_id] = source
        return source

    def release(self, trip_id: str) -> None:
        source = self._sources.pop(trip_id, None)
        if source is not None:
            source.stop()
