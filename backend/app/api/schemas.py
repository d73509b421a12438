"""
Pydantic schemas for the engine's HTTP surface.

Separated from the route handlers so they are reusable across
the codebase (WebSocket handlers, tests).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.app.alerts.models import AlertSeverity, AlertStatus, AlertType
from backend.app.consensus.models import VoteValue
from backend.app.reports.models import (
    ModerationAction,
    ReportCategory,
    ReportSeverity,
)
from backend.app.spatial.areas import CircleArea, PolygonArea, TargetArea
from backend.app.spatial.geo_math import Coordinate


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    """
    Accepts location from either browser geolocation or manual entry.
    The API treats both identically.
    """
    latitude: float = Field(
        ..., ge=-90.0, le=90.0,
        description="Latitude in decimal degrees",
        examples=[13.0827],
    )
    longitude: float = Field(
        ..., ge=-180.0, le=180.0,
        description="Longitude in decimal degrees",
        examples=[80.2707],
    )
    source: str = Field(
        default="manual",
        description="How the location was obtained: 'gps' | 'manual'",
        examples=["gps"],
    )

    def to_coordinate(self) -> Coordinate:
        return Coordinate(self.longitude, self.latitude)


class TargetAreaInput(BaseModel):
    """A circle (center + radius_km) or a polygon (≥ 3 vertices)."""
    type: Literal["Circle", "Polygon"] = "Circle"
    center: Optional[LocationInput] = None
    radius_km: Optional[float] = Field(None, gt=0, le=1000, examples=[10.0])
    polygon: Optional[List[LocationInput]] = Field(None, min_length=3)

    @model_validator(mode="after")
    def check_shape(self) -> "TargetAreaInput":
        if self.type == "Circle" and self.center is None:
            raise ValueError("Circle target area needs a center")
        if self.type == "Polygon" and not self.polygon:
            raise ValueError("Polygon target area needs at least 3 vertices")
        return self

    def to_area(self, default_radius_km: float) -> TargetArea:
        if self.type == "Polygon":
            return PolygonArea(tuple(v.to_coordinate() for v in self.polygon))
        radius = self.radius_km if self.radius_km is not None else default_radius_km
        return CircleArea(self.center.to_coordinate(), radius)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class ReportCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200, examples=["Road blocked by fallen tree"])
    description: str = Field("", max_length=2000)
    category: ReportCategory = ReportCategory.OTHER
    severity: ReportSeverity = ReportSeverity.MEDIUM
    location: LocationInput
    anonymous: bool = Field(False, description="Hide the reporter's account")
    tags: List[str] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={"location"})
        data["location"] = self.location.to_coordinate()
        return data


class VoteRequest(BaseModel):
    vote: VoteValue = Field(..., examples=["confirm"])
    location: Optional[LocationInput] = Field(
        None, description="Voter's current location for the proximity check",
    )


class ModerateRequest(BaseModel):
    action: ModerationAction = Field(..., examples=["approve"])
    reason: Optional[str] = Field(None, max_length=1000, description="Stored as the verification notes")


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

class AlertCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200, examples=["Flash flood warning"])
    description: str = Field("", max_length=5000)
    short_description: str = Field("", max_length=280)
    type: AlertType = AlertType.OTHER
    severity: AlertSeverity = AlertSeverity.ADVISORY
    priority: Optional[int] = Field(None, ge=1, le=10)
    status: AlertStatus = AlertStatus.ACTIVE
    target_area: TargetAreaInput
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    ttl_hours: Optional[float] = Field(None, gt=0, le=24 * 30)
    instructions: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    parent_alert_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("effective_from", "effective_until")
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    def to_payload(self, default_radius_km: float) -> Dict[str, Any]:
        data = self.model_dump(exclude={"target_area"}, exclude_none=True)
        data["target_area"] = self.target_area.to_area(default_radius_km)
        return data


class AlertPatch(BaseModel):
    """Partial update. ``status`` is checked by the lifecycle, not here."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    short_description: Optional[str] = Field(None, max_length=280)
    type: Optional[AlertType] = None
    severity: Optional[AlertSeverity] = None
    priority: Optional[int] = Field(None, ge=1, le=10)
    status: Optional[str] = None
    target_area: Optional[TargetAreaInput] = None
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    instructions: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    update: Optional[str] = Field(None, description="Note for the update history")

    @field_validator("effective_from", "effective_until")
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    def to_patch(self, default_radius_km: float) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True, exclude={"target_area"})
        if self.target_area is not None:
            data["target_area"] = self.target_area.to_area(default_radius_km)
        return data


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, examples=["Threat has passed"])


# ---------------------------------------------------------------------------
# Population
# ---------------------------------------------------------------------------

class PopulationRequest(BaseModel):
    area: TargetAreaInput


class PopulationResponse(BaseModel):
    sessions: int
    accounts: int
    anonymous: int
