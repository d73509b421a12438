"""
FastAPI route: Crowd reports and verification votes.

Provides endpoints to:
    POST   /api/v1/reports                            — submit a report
    GET    /api/v1/reports/nearby                     — reports around a point
    GET    /api/v1/reports/{id}                       — one report
    POST   /api/v1/reports/{id}/verify                — confirm / deny vote
    DELETE /api/v1/reports/{id}/votes/{account_id}    — withdraw a vote
    POST   /api/v1/reports/{id}/moderate              — moderator override

Handlers are plain ``def`` so FastAPI runs them in its threadpool:
votes take per-report locks and publishing blocks on delivery.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from backend.app.api.deps import account_id, engine_dep, require_account
from backend.app.api.schemas import ModerateRequest, ReportCreate, VoteRequest
from backend.app.services.engine import BroadcastEngine
from backend.app.spatial.geo_math import Coordinate, format_distance

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])


@router.post(
    "",
    status_code=201,
    summary="Submit an incident report",
    description="Stores the report and notifies live sessions within the report radius.",
)
def submit_report(
    request: ReportCreate,
    engine: BroadcastEngine = Depends(engine_dep),
    account: Optional[str] = Depends(account_id),
):
    report, delivery = engine.submit_report(request.to_payload(), reporter_id=account)
    return {"report": report.to_dict(), "delivery": delivery.to_dict()}


@router.get(
    "/nearby",
    summary="Reports near a point",
    description="Reports within radius_km, nearest first. False reports are hidden by default.",
)
def reports_nearby(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(10.0, gt=0, le=500),
    category: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    verification_state: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    engine: BroadcastEngine = Depends(engine_dep),
):
    found = engine.reports_near(
        Coordinate(longitude, latitude), radius_km,
        category=category, status=status,
        verification_state=verification_state, limit=limit,
    )
    return {
        "center": {"lat": latitude, "lng": longitude},
        "radius_km": radius_km,
        "count": len(found),
        "reports": [
            {
                **report.to_dict(),
                "distance_km": round(dist, 3),
                "distance_display": format_distance(dist),
            }
            for report, dist in found
        ],
    }


@router.get("/{report_id}", summary="Get one report")
def get_report(report_id: str, engine: BroadcastEngine = Depends(engine_dep)):
    return engine.get_report(report_id).to_dict()


@router.post(
    "/{report_id}/verify",
    summary="Confirm or deny a report",
    description=(
        "Casting the same vote twice withdraws it; casting the opposite vote "
        "moves it. Votes from further than the verification radius are "
        "rejected with 403 and the measured distance."
    ),
)
def verify_report(
    report_id: str,
    request: VoteRequest,
    engine: BroadcastEngine = Depends(engine_dep),
    account: str = Depends(require_account),
):
    location = request.location.to_coordinate() if request.location else None
    result = engine.submit_vote(report_id, account, request.vote, location)
    data = result.to_dict()
    if result.promoted:
        data["generated_alert_id"] = engine.get_report(report_id).generated_alert_id
    return data


@router.delete(
    "/{report_id}/votes/{voter_id}",
    summary="Withdraw an account's vote",
    description="Used when an account is deleted. Never re-triggers verification.",
)
def withdraw_vote(
    report_id: str,
    voter_id: str,
    engine: BroadcastEngine = Depends(engine_dep),
    account: str = Depends(require_account),
):
    result = engine.remove_vote(report_id, voter_id)
    if result is None:
        raise HTTPException(
            status_code=404,
            detail=f"Account '{voter_id}' has no vote on report '{report_id}'.",
        )
    return result.to_dict()


@router.post("/{report_id}/moderate", summary="Moderator override")
def moderate_report(
    report_id: str,
    request: ModerateRequest,
    engine: BroadcastEngine = Depends(engine_dep),
    account: str = Depends(require_account),
):
    report = engine.moderate_report(report_id, request.action, account, reason=request.reason)
    return report.to_dict()
