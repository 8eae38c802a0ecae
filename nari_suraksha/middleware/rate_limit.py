"""Per-caller sliding-window rate limiter.

Requests are keyed by the ``X-User-Id`` header when present, otherwise
by client IP. State is per process; instances behind a load balancer
each enforce their own window.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Final

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_EXEMPT_PATHS: Final[frozenset[str]] = frozenset({
    "/api/v1/health",
    "/api/v1/health/ready",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
})

# SOS must never be throttled.
_EXEMPT_SUFFIXES: Final[tuple[str, ...]] = ("/sos", "/events")

_WINDOW_SECONDS: Final[float] = 60.0


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limiter.

    Parameters
    ----------
    app:
        The ASGI application.
    max_requests_per_minute:
        Requests allowed per caller per 60-second window.
    trusted_proxy_count:
        Reverse proxies in front of the app; the client IP is read
        ``trusted_proxy_count + 1`` entries from the right of
        ``X-Forwarded-For``. Zero uses the direct peer address.
    """

    def __init__(
        self,
        app: object,
        max_requests_per_minute: int = 120,
        trusted_proxy_count: int = 1,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._max_rpm = max_requests_per_minute
        self._trusted_proxy_count = trusted_proxy_count
        self._windows: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()
        self._requests_since_sweep = 0

    @staticmethod
    def _is_exempt(path: str) -> bool:
        return path in _EXEMPT_PATHS or path.endswith(_EXEMPT_SUFFIXES)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self._is_exempt(request.url.path):
            return await call_next(request)

        key = self._caller_key(request)
        now = time.monotonic()

        async with self._lock:
            self._requests_since_sweep += 1
            if self._requests_since_sweep >= 1000:
                self._requests_since_sweep = 0
                self._sweep(now)

            window = self._windows.setdefault(key, deque())
            while window and window[0] < now - _WINDOW_SECONDS:
                window.popleft()

            if len(window) >= self._max_rpm:
                retry_after = max(1, int(_WINDOW_SECONDS - (now - window[0])) + 1)
                logger.warning("rate_limit.exceeded", caller=key, max_rpm=self._max_rpm)
                return JSONResponse(
                    status_code=429,
                    content={
                        "detail": "Rate limit exceeded. Please try again later.",
                        "retry_after_seconds": retry_after,
                    },
                    headers={
                        "Retry-After": str(retry_after),
                        "X-RateLimit-Limit": str(self._max_rpm),
                        "X-RateLimit-Remaining": "0",
                    },
                )

            window.append(now)
            remaining = self._max_rpm - len(window)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self._max_rpm)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    def _caller_key(self, request: Request) -> str:
        user_id = request.headers.get("X-User-Id")
        if user_id:
            return f"user:{user_id}"
        return f"ip:{self._client_ip(request)}"

    def _client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            ips = [ip.strip() for ip in forwarded_for.split(",")]
            if self._trusted_proxy_count == 0:
                return ips[0]
            index = -(self._trusted_proxy_count + 1)
            return ips[index] if abs(index) <= len(ips) else ips[0]
        if request.client:
            return request.client.host
        return "unknown"

    def _sweep(self, now: float) -> None:
        stale = [k for k, w in self._windows.items() if not w or w[-1] < now - _WINDOW_SECONDS]
        for key in stale:
            del self._windows[key]
        if stale:
            logger.debug("rate_limit.cleanup", removed=len(stale))
