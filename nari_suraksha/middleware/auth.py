"""Caller identity for the trip and incident endpoints.

Phone-OTP sign-in happens upstream; by the time a request reaches this
service the authenticated user id travels in the ``X-User-Id`` header.
Ownership checks themselves live in the escalation engine.
"""

from __future__ import annotations

import re

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_\-:.]{1,128}$")


async def current_user_id(
    request: Request,
    user_id: str | None = Security(_user_id_header),
) -> str:
    """FastAPI dependency returning the authenticated caller's id.

    Raises 401 when the header is missing or malformed.

    Usage::

        @router.post("/trips")
        async def start_trip(..., caller_id: str = Depends(current_user_id)): ...
    """
    if not user_id:
        logger.warning(
            "auth.missing_user_id",
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=401,
            detail="Missing X-User-Id header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not _USER_ID_RE.match(user_id):
        logger.warning("auth.malformed_user_id", path=request.url.path)
        raise HTTPException(status_code=401, detail="Malformed X-User-Id header.")

    return user_id
