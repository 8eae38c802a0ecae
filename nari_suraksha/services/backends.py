"""Startup wiring of demo and live collaborators.

The escalation engine never branches on the mode; it is handed one
:class:`Backends` bundle built here from settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from nari_suraksha.services.clock import Clock, SystemClock
from nari_suraksha.services.events import ChangeFeed
from nari_suraksha.services.location import (
    LocationProvider,
    ReportedLocationProvider,
    SimulatedLocationProvider,
)
from nari_suraksha.services.push import FCMPushChannel, MockPushChannel, NotificationChannel
from nari_suraksha.services.storage import InMemoryStorage, RedisStorage, Storage

if TYPE_CHECKING:
    from config.settings import Settings

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Backends:
    storage: Storage
    locations: LocationProvider
    channel: NotificationChannel
    clock: Clock

    async def close(self) -> None:
        close_channel = getattr(self.channel, "close", None)
        if close_channel is not None:
            await close_channel()
        close_storage = getattr(self.storage, "close", None)
        if close_storage is not None:
            await close_storage()


def build_backends(settings: Settings, *, clock: Clock | None = None) -> Backends:
    """Select storage, location and push implementations for *settings*.

    Demo mode runs entirely in process: in-memory storage, a simulated
    location feed and a logging push channel. Live mode uses Redis,
    device-reported locations and Firebase Cloud Messaging.
    """
    clock = clock or SystemClock()
    feed = ChangeFeed()

    if settings.is_demo:
        logger.info("backends.demo_selected")
        return Backends(
            storage=InMemoryStorage(feed=feed),
            locations=SimulatedLocationProvider(
                interval_seconds=settings.demo_location_interval_seconds,
                clock=clock,
            ),
            channel=MockPushChannel(site_url=settings.site_url),
            clock=clock,
        )

    logger.info("backends.live_selected", redis_namespace=settings.redis_namespace)
    return Backends(
        storage=RedisStorage(settings.redis_url, namespace=settings.redis_namespace, feed=feed),
        locations=ReportedLocationProvider(
            clock=clock,
            stale_after_seconds=settings.location_stale_seconds,
        ),
        channel=FCMPushChannel(
            settings.fcm_project_id,
            credentials_path=settings.google_application_credentials,
            site_url=settings.site_url,
            timeout_seconds=settings.push_timeout_seconds,
        ),
        clock=clock,
    )
