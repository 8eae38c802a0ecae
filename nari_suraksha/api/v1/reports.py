"""Community safety reports for the map view."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from nari_suraksha.api.deps import domain_errors, get_storage
from nari_suraksha.middleware.auth import current_user_id
from nari_suraksha.models import Report, ReportCategory

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


class CreateReportRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    category: ReportCategory
    text: str | None = Field(default=None, max_length=1000)
    anonymous: bool = False


@router.post("", status_code=201)
async def create_report(
    body: CreateReportRequest,
    request: Request,
    caller_id: str = Depends(current_user_id),
) -> dict:
    """File a report. Reports never record their author."""
    report = Report(
        lat=body.lat,
        lng=body.lng,
        category=body.category,
        text=body.text.strip() if body.text else None,
        anonymous=body.anonymous,
    )
    with domain_errors():
        report = await get_storage(request).create_report(report)
    logger.info("api.reports.created", report_id=report.id, category=report.category, geohash=report.geohash)
    return report.to_wire()


@router.get("")
async def list_reports(
    request: Request,
    category: ReportCategory | None = None,
    lat: float | None = Query(default=None, ge=-90, le=90),
    lng: float | None = Query(default=None, ge=-180, le=180),
    radius: float | None = Query(default=None, gt=0, le=50_000, description="Radius in metres"),
    caller_id: str = Depends(current_user_id),
) -> dict:
    if radius is not None and (lat is None or lng is None):
        raise HTTPException(status_code=422, detail="radius requires lat and lng")
    with domain_errors():
        reports = await get_storage(request).list_reports(
            category=category,
            lat=lat,
            lng=lng,
            radius_m=radius,
        )
    return {"reports": [r.to_wire() for r in reports], "count": len(reports)}


@router.get("/{report_id}")
async def get_report(report_id: str, request: Request, caller_id: str = Depends(current_user_id)) -> dict:
    with domain_errors():
        report = await get_storage(request).get_report(report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found")
    return report.to_wire()
