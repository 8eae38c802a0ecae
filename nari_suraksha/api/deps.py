"""Shared request dependencies and domain-error translation for v1 routers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import orjson
import structlog
from fastapi import HTTPException, Request

from nari_suraksha.services.errors import (
    IncidentNotFoundError,
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceError,
    TripNotFoundError,
)

if TYPE_CHECKING:
    from nari_suraksha.services.escalation import EscalationEngine
    from nari_suraksha.services.storage import Storage

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def get_engine(request: Request) -> EscalationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Trip monitoring service not available")
    return engine


def get_storage(request: Request) -> Storage:
    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        raise HTTPException(status_code=503, detail="Storage not available")
    return storage


@contextmanager
def domain_errors() -> Iterator[None]:
    """Map domain exceptions raised inside the block to HTTP errors."""
    try:
        yield
    except (TripNotFoundError, IncidentNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    except PermissionDeniedError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from None
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    except PersistenceError:
        logger.error("api.persistence_failed", exc_info=True)
        raise HTTPException(status_code=503, detail="Storage temporarily unavailable") from None


async def change_stream(request: Request, engine: EscalationEngine, record_id: str) -> AsyncIterator[bytes]:
    """Server-sent events carrying every persisted change to *record_id*.

    The current record is not replayed; clients fetch it first and then
    follow the stream.
    """
    queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=100)

    def on_change(record: object) -> None:
        to_wire = getattr(record, "to_wire", None)
        payload = to_wire() if to_wire is not None else {"id": record_id}
        if queue.full():
            # Slow consumer; keep the newest state.
            queue.get_nowait()
        queue.put_nowait(payload)

    unsubscribe = engine.subscribe(record_id, on_change)
    logger.debug("api.stream_opened", record_id=record_id)
    try:
        while not await request.is_disconnected():
            try:
                payload = await asyncio.wait_for(queue.get(), timeout=15.0)
            except TimeoutError:
                yield b": keep-alive\n\n"
                continue
            yield b"event: change\ndata: " + orjson.dumps(payload) + b"\n\n"
    finally:
        unsubscribe()
        logger.debug("api.stream_closed", record_id=record_id)
