"""ETA countdown for a single trip.

The timer derives everything from clock reads: ``deadline`` is
``started_at + eta_minutes`` and :meth:`TripTimer.remaining` is the
distance to it, floored at zero. A background ``asyncio`` task ticks at
a fixed resolution (one second by default); the first tick that sees
zero remaining fires the deadline callback exactly once. A stopped
timer never calls back again.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

import structlog

from nari_suraksha.services.clock import Clock, SystemClock

logger = structlog.get_logger(__name__)

DeadlineCallback = Callable[[], Awaitable[None] | None]
TickCallback = Callable[[timedelta], None]


class TripTimer:
    """Countdown against a trip's ETA deadline.

    Parameters
    ----------
    started_at:
        Instant the trip began (timezone-aware).
    eta_minutes:
        Planned trip duration.
    on_deadline:
        Called once, on the first tick at or past the deadline. May be a
        coroutine function; it is awaited inside the tick.
    on_tick:
        Optional observer called with the remaining time on every tick.
    clock:
        Time source; defaults to the system clock.
    tick_seconds:
        Tick resolution of the background loop.
    """

    __slots__ = (
        "_clock",
        "_deadline",
        "_fired",
        "_on_deadline",
        "_on_tick",
        "_stopped",
        "_task",
        "_tick_seconds",
        "trip_id",
    )

    def __init__(
        self,
        started_at: datetime,
        eta_minutes: int,
        *,
        on_deadline: DeadlineCallback,
        on_tick: TickCallback | None = None,
        clock: Clock | None = None,
        tick_seconds: float = 1.0,
        trip_id: str = "",
    ) -> None:
        self._deadline = started_at + timedelta(minutes=eta_minutes)
        self._on_deadline = on_deadline
        self._on_tick = on_tick
        self._clock = clock or SystemClock()
        self._tick_seconds = tick_seconds
        self._task: asyncio.Task[None] | None = None
        self._fired = False
        self._stopped = False
        self.trip_id = trip_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def deadline(self) -> datetime:
        return self._deadline

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def remaining(self) -> timedelta:
        return max(self._deadline - self._clock.now(), timedelta(0))

    def remaining_seconds(self) -> float:
        return self.remaining().total_seconds()

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    async def tick(self) -> None:
        """Evaluate the countdown once.

        The background loop calls this every ``tick_seconds``; tests call
        it directly against a manual clock.
        """
        if self._stopped:
            return

        remaining = self.remaining()
        if self._on_tick is not None:
            try:
                self._on_tick(remaining)
            except Exception:
                logger.warning("timer.tick_observer_failed", trip_id=self.trip_id, exc_info=True)

        if remaining > timedelta(0) or self._fired:
            return

        self._fired = True
        logger.info("timer.deadline_crossed", trip_id=self.trip_id, deadline=self._deadline.isoformat())
        result = self._on_deadline()
        if inspect.isawaitable(result):
            await result

    def start(self) -> None:
        """Start the background tick loop. Calling twice is a no-op."""
        if self._stopped or self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=f"trip-timer:{self.trip_id}")

    async def _run(self) -> None:
        try:
            while not self._stopped:
                await self.tick()
                if self._fired:
                    break
                await asyncio.sleep(self._tick_seconds)
        except asyncio.CancelledError:
            logger.debug("timer.cancelled", trip_id=self.trip_id)
        except Exception:
            logger.error("timer.loop_error", trip_id=self.trip_id, exc_info=True)

    def stop(self) -> None:
        """Tear the timer down; no further callbacks are made."""
        self._stopped = True
        task = self._task
        self._task = None
        # The deadline callback itself may stop the timer from inside the loop.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
