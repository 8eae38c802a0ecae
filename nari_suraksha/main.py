"""Nari Suraksha FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the trip monitoring services (storage,
location provider, push channel, notification fan-out, escalation
engine).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from config.settings import settings
from nari_suraksha.api.router import api_router
from nari_suraksha.middleware.rate_limit import RateLimitMiddleware

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.processors.NAME_TO_LEVEL[settings.log_level.lower()],
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wire the trip monitoring services onto ``app.state``.

    On startup:
      1. Build demo or live backends (unless already provided on
         ``app.state.backends``)
      2. Create the notification fan-out and escalation engine
      3. Resume monitoring of trips still active in storage

    On shutdown:
      - Stop every timer, location watch and in-flight fan-out.
      - Close the push client and storage connections.
    """
    _configure_logging()
    logger.info("app.startup", env=settings.env, mode=settings.mode)

    app.state.start_time = time.time()
    app.state.mode = settings.mode

    # -- 1. Backends --------------------------------------------------------
    from nari_suraksha.services.backends import build_backends

    backends = getattr(app.state, "backends", None) or build_backends(settings)
    app.state.backends = backends
    app.state.storage = backends.storage
    logger.info("app.backends_initialised", storage=type(backends.storage).__name__)

    # -- 2. Fan-out and engine ----------------------------------------------
    from nari_suraksha.services.escalation import EscalationEngine
    from nari_suraksha.services.notifications import NotificationFanOut

    fanout = NotificationFanOut(backends.storage, backends.channel)
    engine = EscalationEngine(
        backends.storage,
        backends.locations,
        fanout,
        clock=backends.clock,
        tick_seconds=settings.timer_tick_seconds,
    )
    app.state.fanout = fanout
    app.state.engine = engine
    logger.info("app.engine_initialised")

    # -- 3. Resume active trips ---------------------------------------------
    try:
        await engine.resume()
    except Exception:
        logger.error("app.resume_failed", exc_info=True)

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")
    await engine.shutdown()
    await backends.close()
    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    app = FastAPI(
        title="Nari Suraksha API",
        description=(
            "Nari Suraksha -- personal-safety companion. Monitors trips against "
            "an expected arrival time and alerts guardians on SOS or overdue arrival."
        ),
        version="0.1.0",
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    # -- CORS middleware ----------------------------------------------------
    # allow_credentials=True must not be combined with allow_origins=["*"].
    if settings.is_production:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origin_list,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["Content-Type", "Authorization", "X-User-Id"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origin_list or ["http://localhost:5173", "http://localhost:8000"],
            allow_credentials=False,
            allow_methods=["GET", "POST", "DELETE", "OPTIONS", "HEAD"],
            allow_headers=["Content-Type", "Accept", "Authorization", "X-User-Id"],
        )

    app.add_middleware(
        RateLimitMiddleware,
        max_requests_per_minute=settings.rate_limit_per_minute,
        trusted_proxy_count=settings.trusted_proxy_count,
    )

    # -- Prometheus metrics -------------------------------------------------
    try:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(
            should_group_status_codes=True,
            should_ignore_untemplated=True,
            excluded_handlers=["/metrics", "/api/v1/health", ".*/events"],
        ).instrument(app).expose(
            app,
            endpoint="/metrics",
            include_in_schema=not settings.is_production,
        )
        logger.info("app.prometheus_metrics_enabled")
    except ImportError:
        logger.warning("app.prometheus_not_available")

    app.include_router(api_router)

    @app.get("/api", response_class=ORJSONResponse)
    async def api_info() -> dict:
        """API information endpoint."""
        return {
            "name": "Nari Suraksha API",
            "version": app.version,
            "mode": settings.mode,
            "docs": "/docs",
            "health": "/api/v1/health",
            "endpoints": {
                "config": "/api/v1/config",
                "users": "/api/v1/users",
                "trips": "/api/v1/trips",
                "incidents": "/api/v1/incidents",
                "reports": "/api/v1/reports",
            },
        }

    return app


app = create_app()
