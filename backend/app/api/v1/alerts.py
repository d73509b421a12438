"""
FastAPI route: Geofenced official alerts.

Provides endpoints to:
    POST   /api/v1/alerts               — create (and broadcast) an alert
    GET    /api/v1/alerts/nearby        — effective alerts around a point
    GET    /api/v1/alerts/{id}          — one alert (lazy expiry applied)
    PATCH  /api/v1/alerts/{id}          — partial update
    DELETE /api/v1/alerts/{id}          — cancel
    POST   /api/v1/alerts/{id}/resolve  — resolve
    POST   /api/v1/alerts/{id}/ack      — acknowledge receipt
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import account_id, engine_dep, require_account
from backend.app.api.schemas import AlertCreate, AlertPatch, CancelRequest
from backend.app.core.config import settings
from backend.app.services.engine import BroadcastEngine
from backend.app.spatial.geo_math import Coordinate, distance, format_distance

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


@router.post(
    "",
    status_code=201,
    summary="Create an official alert",
    description=(
        "Creates the alert and, if it is effective now, broadcasts it to "
        "every live session inside its target area."
    ),
)
def create_alert(
    request: AlertCreate,
    engine: BroadcastEngine = Depends(engine_dep),
    account: str = Depends(require_account),
):
    alert, delivery = engine.create_official_alert(
        request.to_payload(settings.DEFAULT_ALERT_RADIUS_KM), created_by=account,
    )
    return {
        "alert": alert.to_dict(),
        "delivery": delivery.to_dict() if delivery else None,
    }


@router.get(
    "/nearby",
    summary="Effective alerts near a point",
    description="Highest priority first. Lapsed alerts are expired before filtering.",
)
def alerts_nearby(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(10.0, gt=0, le=500),
    type: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    min_priority: Optional[int] = Query(None, ge=1, le=10),
    limit: int = Query(50, ge=1, le=200),
    engine: BroadcastEngine = Depends(engine_dep),
):
    point = Coordinate(longitude, latitude)
    found = engine.alerts_near(
        point, radius_km,
        alert_type=type, severity=severity, min_priority=min_priority, limit=limit,
    )
    results = []
    for alert in found:
        dist = distance(point, alert.target_area.center)
        results.append({
            **alert.to_dict(),
            "inside_area": alert.target_area.contains(point),
            "distance_km": round(dist, 3),
            "distance_display": format_distance(dist),
        })
    return {
        "center": {"lat": latitude, "lng": longitude},
        "radius_km": radius_km,
        "count": len(results),
        "alerts": results,
    }


@router.get("/{alert_id}", summary="Get one alert")
def get_alert(alert_id: str, engine: BroadcastEngine = Depends(engine_dep)):
    return engine.get_alert(alert_id).to_dict()


@router.patch(
    "/{alert_id}",
    summary="Update an alert",
    description=(
        "Severity changes re-derive priority unless priority is set in the "
        "same request. Expired and cancelled alerts only accept audit fields."
    ),
)
def update_alert(
    alert_id: str,
    request: AlertPatch,
    engine: BroadcastEngine = Depends(engine_dep),
    account: str = Depends(require_account),
):
    alert = engine.update_alert(
        alert_id, request.to_patch(settings.DEFAULT_ALERT_RADIUS_KM), actor=account,
    )
    return alert.to_dict()


@router.delete("/{alert_id}", summary="Cancel an alert")
def cancel_alert(
    alert_id: str,
    request: Optional[CancelRequest] = None,
    engine: BroadcastEngine = Depends(engine_dep),
    account: str = Depends(require_account),
):
    reason = request.reason if request else None
    return engine.cancel_alert(alert_id, reason=reason, actor=account).to_dict()


@router.post("/{alert_id}/resolve", summary="Resolve an alert")
def resolve_alert(
    alert_id: str,
    engine: BroadcastEngine = Depends(engine_dep),
    account: str = Depends(require_account),
):
    return engine.resolve_alert(alert_id, actor=account).to_dict()


@router.post("/{alert_id}/ack", summary="Acknowledge an alert")
def acknowledge_alert(
    alert_id: str,
    engine: BroadcastEngine = Depends(engine_dep),
    account: str = Depends(require_account),
):
    recorded = engine.acknowledge_alert(alert_id, account)
    return {
        "alert_id": alert_id,
        "account_id": account,
        "status": "acknowledged" if recorded else "already_acknowledged",
    }
