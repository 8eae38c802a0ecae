"""Liveness and readiness probes."""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    mode: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, str]


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe; does not touch downstream dependencies."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    return HealthResponse(
        status="healthy",
        version=request.app.version,
        mode=getattr(request.app.state, "mode", "unknown"),
        uptime_seconds=round(time.time() - start_time, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe: storage reachable and the engine wired."""
    checks: dict[str, str] = {}
    all_ok = True

    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        checks["storage"] = "not_configured"
        all_ok = False
    else:
        ping = getattr(storage, "ping", None)
        if ping is None:
            checks["storage"] = "ok (in-memory)"
        else:
            try:
                reachable = await ping()
            except Exception as exc:
                reachable = False
                checks["storage"] = f"error: {exc!s}"
            else:
                checks["storage"] = "ok" if reachable else "unreachable"
            all_ok = all_ok and reachable

    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        checks["escalation_engine"] = "ok"
    else:
        checks["escalation_engine"] = "not_initialised"
        all_ok = False

    status = "ready" if all_ok else "degraded"
    logger.info("health.readiness_check", status=status, checks=checks)
    return ReadinessResponse(status=status, checks=checks)
