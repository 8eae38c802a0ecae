"""Incident endpoints.

The owner resolves incidents and can retry notifications; guardians of
the owner may read an incident and follow its live stream.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from nari_suraksha.api.deps import change_stream, domain_errors, get_engine, get_storage
from nari_suraksha.middleware.auth import current_user_id
from nari_suraksha.models import Incident

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/incidents", tags=["incidents"])


async def _viewable_incident(request: Request, incident_id: str, caller_id: str) -> Incident:
    """Load an incident the caller owns or guards."""
    storage = get_storage(request)
    incident = await storage.get_incident(incident_id)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    if incident.owner_id == caller_id:
        return incident

    owner = await storage.get_user(incident.owner_id)
    caller = await storage.get_user(caller_id)
    if owner is not None:
        for guardian in owner.guardians:
            if guardian.user_id == caller_id or (caller is not None and guardian.phone == caller.phone):
                return incident
    raise HTTPException(status_code=403, detail="Not permitted to view this incident")


@router.get("")
async def list_incidents(request: Request, caller_id: str = Depends(current_user_id)) -> dict:
    with domain_errors():
        incidents = await get_storage(request).list_incidents_by_owner(caller_id)
    incidents.sort(key=lambda i: i.created_at, reverse=True)
    return {"incidents": [i.to_wire() for i in incidents]}


@router.get("/{incident_id}")
async def get_incident(incident_id: str, request: Request, caller_id: str = Depends(current_user_id)) -> dict:
    engine = get_engine(request)
    with domain_errors():
        incident = await _viewable_incident(request, incident_id, caller_id)
    view = incident.to_wire()
    view["mapsUrl"] = incident.maps_url
    report = engine.last_fanout_report(incident_id)
    if report is not None:
        view["notifications"] = {
            "delivered": report.delivered,
            "failed": report.failed,
            "unreachable": len(report.unreachable),
        }
    return view


@router.post("/{incident_id}/resolve")
async def resolve_incident(
    incident_id: str,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """Mark the incident resolved and end its trip. Safe to repeat."""
    engine = get_engine(request)
    with domain_errors():
        outcome = await engine.resolve_incident(incident_id, caller_id)
    return {"incident": outcome.incident.to_wire(), "alreadyResolved": outcome.already_resolved}


@router.post("/{incident_id}/notify")
async def retry_notifications(
    incident_id: str,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """Run guardian notification again for a broadcasting incident."""
    engine = get_engine(request)
    with domain_errors():
        report = await engine.retry_notifications(incident_id, caller_id)
    logger.info("api.incidents.notify_retried", incident_id=incident_id, delivered=report.delivered)
    return report.model_dump(mode="json")


@router.get("/{incident_id}/fallback-link")
async def fallback_link(
    incident_id: str,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """Shareable WhatsApp link for guardians without push delivery."""
    engine = get_engine(request)
    with domain_errors():
        incident = await _viewable_incident(request, incident_id, caller_id)
    return {"incidentId": incident.id, "link": engine.fallback_link(incident.id)}


@router.get("/{incident_id}/events")
async def incident_events(
    incident_id: str,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> StreamingResponse:
    with domain_errors():
        await _viewable_incident(request, incident_id, caller_id)
    return StreamingResponse(
        change_stream(request, get_engine(request), incident_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
