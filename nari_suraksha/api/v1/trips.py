"""Trip lifecycle endpoints: start, locate, SOS, mark safe, follow."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from nari_suraksha.api.deps import change_stream, domain_errors, get_engine, get_storage
from nari_suraksha.middleware.auth import current_user_id
from nari_suraksha.models import LocationSample, Trip

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/trips", tags=["trips"])


class StartTripRequest(BaseModel):
    eta_minutes: int = Field(..., gt=0, le=24 * 60, alias="etaMinutes")
    location: LocationSample | None = None

    model_config = ConfigDict(populate_by_name=True)


async def _trip_view(request: Request, trip: Trip) -> dict:
    engine = get_engine(request)
    view = trip.to_wire()
    view["deadline"] = trip.deadline.isoformat()
    view["state"] = await engine.session_state(trip.id)
    view["remainingSeconds"] = await engine.remaining_seconds(trip.id) if trip.active else 0.0
    return view


async def _owned_trip(request: Request, trip_id: str, caller_id: str) -> Trip:
    trip = await get_storage(request).get_trip(trip_id)
    if trip is None:
        raise HTTPException(status_code=404, detail="Trip not found")
    if trip.owner_id != caller_id:
        raise HTTPException(status_code=403, detail="Not your trip")
    return trip


@router.post("", status_code=201)
async def start_trip(
    body: StartTripRequest,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """Start monitoring a trip against the given ETA."""
    engine = get_engine(request)
    with domain_errors():
        trip = await engine.start_trip(caller_id, body.eta_minutes, body.location)
        return await _trip_view(request, trip)


@router.get("")
async def list_trips(request: Request, caller_id: str = Depends(current_user_id)) -> dict:
    with domain_errors():
        trips = await get_storage(request).list_trips_by_owner(caller_id)
    trips.sort(key=lambda t: t.started_at, reverse=True)
    return {"trips": [t.to_wire() for t in trips]}


@router.get("/{trip_id}")
async def get_trip(trip_id: str, request: Request, caller_id: str = Depends(current_user_id)) -> dict:
    with domain_errors():
        trip = await _owned_trip(request, trip_id, caller_id)
        return await _trip_view(request, trip)


@router.post("/{trip_id}/location")
async def report_location(
    trip_id: str,
    body: LocationSample,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """Accept a device fix. Out-of-order fixes are accepted but ignored."""
    engine = get_engine(request)
    with domain_errors():
        trip = await engine.record_location(trip_id, body, caller_id=caller_id)
    return trip.to_wire()


@router.post("/{trip_id}/sos")
async def trigger_sos(
    trip_id: str,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """Raise an incident now. Repeated presses return the same incident."""
    engine = get_engine(request)
    with domain_errors():
        outcome = await engine.trigger_sos(trip_id, caller_id)
    logger.info(
        "api.trips.sos",
        trip_id=trip_id,
        incident_id=outcome.incident.id,
        created=outcome.created,
    )
    return {
        "incident": outcome.incident.to_wire(),
        "created": outcome.created,
        "fallbackLink": engine.fallback_link(outcome.incident.id),
    }


@router.post("/{trip_id}/safe")
async def mark_safe(
    trip_id: str,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    engine = get_engine(request)
    with domain_errors():
        trip = await engine.mark_safe(trip_id, caller_id)
    return trip.to_wire()


@router.get("/{trip_id}/events")
async def trip_events(
    trip_id: str,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> StreamingResponse:
    """Server-sent events for every change to the trip record."""
    with domain_errors():
        await _owned_trip(request, trip_id, caller_id)
    return StreamingResponse(
        change_stream(request, get_engine(request), trip_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
