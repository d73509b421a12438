"""
areas.py — Geofence shapes used as broadcast target areas.

Two shapes are supported:

    CircleArea   centre Coordinate + radius in km
    PolygonArea  ordered ring of >= 3 Coordinates (open or closed)

Both expose ``contains(point)`` plus a ``bounding_box()`` so callers can
run the cheap rectangle rejection before the exact membership test.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Tuple, Union

from backend.app.core.errors import InvalidCoordinateError
from backend.app.spatial.geo_math import (
    BoundingBox,
    Coordinate,
    bounding_box,
    centroid,
    check_radius,
    point_in_polygon,
    within_radius,
)


class AreaKind(str, Enum):
    CIRCLE = "Circle"
    POLYGON = "Polygon"


@dataclass(frozen=True)
class CircleArea:
    center: Coordinate
    radius_km: float

    kind = AreaKind.CIRCLE

    def __post_init__(self) -> None:
        check_radius(self.radius_km)

    def contains(self, point: Coordinate) -> bool:
        return within_radius(point, self.center, self.radius_km)

    def bounding_box(self) -> BoundingBox:
        return bounding_box(self.center, self.radius_km)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "coordinates": self.center.to_list(),
            "radius": self.radius_km,
        }


@dataclass(frozen=True)
class PolygonArea:
    ring: Tuple[Coordinate, ...]

    kind = AreaKind.POLYGON

    def __post_init__(self) -> None:
        if len(self.ring) < 3:
            raise InvalidCoordinateError(
                f"Polygon needs at least 3 vertices, got {len(self.ring)}",
                field="polygon",
            )

    @property
    def center(self) -> Coordinate:
        return centroid(list(self.ring))

    def contains(self, point: Coordinate) -> bool:
        return point_in_polygon(point, self.ring)

    def bounding_box(self) -> BoundingBox:
        lats = [c.latitude for c in self.ring]
        lons = [c.longitude for c in self.ring]
        return BoundingBox(min(lats), max(lats), min(lons), max(lons))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "polygon": [c.to_list() for c in self.ring],
        }


TargetArea = Union[CircleArea, PolygonArea]


def circle(center: Any, radius_km: float) -> CircleArea:
    return CircleArea(Coordinate.of(center), float(radius_km))


def polygon(ring: Any) -> PolygonArea:
    return PolygonArea(tuple(Coordinate.of(v) for v in ring))


def parse_target_area(data: Dict[str, Any], *, default_radius_km: float = 10.0) -> TargetArea:
    """
    Build a shape from its dict form.

    >>> parse_target_area({"type": "Circle", "coordinates": [80.27, 13.08], "radius": 5})
    CircleArea(center=Coordinate(longitude=80.27, latitude=13.08), radius_km=5.0)
    >>> parse_target_area({"polygon": [[0, 0], [0, 10], [10, 10], [10, 0]]}).kind
    <AreaKind.POLYGON: 'Polygon'>
    """
    kind = str(data.get("type", "")).capitalize()
    if kind == AreaKind.POLYGON.value or (not kind and data.get("polygon")):
        ring = data.get("polygon") or data.get("coordinates")
        if not ring:
            raise InvalidCoordinateError("Polygon target area has no vertices", field="polygon")
        return polygon(ring)

    center = data.get("coordinates") or data.get("center")
    if center is None:
        raise InvalidCoordinateError("Circle target area has no centre", field="coordinates")
    radius = data.get("radius", data.get("radius_km"))
    return circle(center, default_radius_km if radius is None else radius)
