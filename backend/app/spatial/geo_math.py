"""
geo_math.py — Pure geospatial primitives for proximity and containment.

Provides:
    - Haversine great-circle distance (km or miles)
    - Point-in-circle and point-in-polygon membership
    - Spherical centroid, initial bearing, destination point
    - Bounding-box pre-filter for coarse candidate rejection
    - Parsing / formatting helpers for user-facing coordinates

Coordinates are ``(longitude, latitude)`` in decimal degrees, the same
order GeoJSON uses. Every function here is side-effect free.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where:
    φ  = latitude in radians
    λ  = longitude in radians
    R  = Earth's mean radius = 6,371 km (3,959 mi)

Bounding box
============
For a circle of angular radius r = d / R around (φ, λ):

    φ_min, φ_max = φ ∓ r
    Δλ           = asin(sin r / cos φ)

If the circle reaches a pole or straddles the antimeridian the box
degrades to the full longitude range. The box is an over-approximation,
never an under-approximation: anything inside the circle is inside the box.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from backend.app.core.errors import InvalidCoordinateError


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0
EARTH_RADIUS_MILES: float = 3_959.0

# Tolerance for treating a point as lying on a polygon edge
_EDGE_EPSILON: float = 1e-12

T = TypeVar("T")


class DistanceUnit(str, Enum):
    KM = "km"
    MILES = "miles"


_RADIUS_BY_UNIT = {
    DistanceUnit.KM: EARTH_RADIUS_KM,
    DistanceUnit.MILES: EARTH_RADIUS_MILES,
}


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees, ordered (longitude, latitude)."""
    longitude: float
    latitude: float

    def __post_init__(self) -> None:
        for name, value in (("longitude", self.longitude), ("latitude", self.latitude)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidCoordinateError(
                    f"{name.capitalize()} must be a number, got {value!r}",
                    field=name,
                )
            if not math.isfinite(value):
                raise InvalidCoordinateError(
                    f"{name.capitalize()} must be finite, got {value}",
                    field=name,
                )
        if not (-180.0 <= self.longitude <= 180.0):
            raise InvalidCoordinateError(
                f"Longitude must be in [-180, 180], got {self.longitude}",
                field="longitude",
            )
        if not (-90.0 <= self.latitude <= 90.0):
            raise InvalidCoordinateError(
                f"Latitude must be in [-90, 90], got {self.latitude}",
                field="latitude",
            )

    @property
    def lat_rad(self) -> float:
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        return math.radians(self.longitude)

    def to_list(self) -> List[float]:
        """GeoJSON-style ``[lon, lat]``."""
        return [self.longitude, self.latitude]

    def to_dict(self) -> dict:
        return {"lat": self.latitude, "lng": self.longitude}

    @classmethod
    def of(cls, value: Any) -> "Coordinate":
        """
        Coerce a Coordinate, ``[lon, lat]`` pair or ``{"lat", "lng"}`` dict.

        >>> Coordinate.of([80.27, 13.08])
        Coordinate(longitude=80.27, latitude=13.08)
        >>> Coordinate.of({"lat": 13.08, "lng": 80.27}).latitude
        13.08
        """
        if isinstance(value, Coordinate):
            return value
        if isinstance(value, dict):
            lat = value.get("lat", value.get("latitude"))
            lon = value.get("lng", value.get("lon", value.get("longitude")))
            if lat is None or lon is None:
                raise InvalidCoordinateError(f"Incomplete coordinate: {value!r}")
            return cls(lon, lat)
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(value[0], value[1])
        raise InvalidCoordinateError(f"Unrecognised coordinate: {value!r}")


@dataclass(frozen=True)
class BoundingBox:
    """Latitude/longitude rectangle, inclusive on every side."""
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    def contains(self, point: Coordinate) -> bool:
        return (
            self.min_lat <= point.latitude <= self.max_lat
            and self.min_lon <= point.longitude <= self.max_lon
        )

    def to_dict(self) -> dict:
        return {
            "minLat": self.min_lat,
            "maxLat": self.max_lat,
            "minLon": self.min_lon,
            "maxLon": self.max_lon,
        }


def check_radius(radius_km: float) -> None:
    if not isinstance(radius_km, (int, float)) or not math.isfinite(radius_km) or radius_km < 0:
        raise InvalidCoordinateError(
            f"Radius must be a non-negative finite number, got {radius_km!r}",
            field="radius_km",
        )


# ---------------------------------------------------------------------------
# Distance
# ---------------------------------------------------------------------------

def distance(
    a: Coordinate,
    b: Coordinate,
    unit: DistanceUnit = DistanceUnit.KM,
) -> float:
    """
    Great-circle distance between two points (Haversine).

    Symmetric, and exactly 0.0 for identical points.

    >>> round(distance(Coordinate(80.2707, 13.0827), Coordinate(77.5946, 12.9716)), 1)
    290.2
    >>> distance(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    radius = _RADIUS_BY_UNIT[DistanceUnit(unit)]

    d_lat = b.lat_rad - a.lat_rad
    d_lon = b.lon_rad - a.lon_rad

    h = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(a.lat_rad) * math.cos(b.lat_rad) * math.sin(d_lon / 2.0) ** 2
    )
    h = min(1.0, h)  # float drift near antipodes

    c = 2.0 * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))
    return radius * c


def within_radius(point: Coordinate, center: Coordinate, radius_km: float) -> bool:
    """True iff ``distance(point, center) <= radius_km`` (inclusive boundary)."""
    check_radius(radius_km)
    return distance(point, center) <= radius_km


# ---------------------------------------------------------------------------
# Polygon membership
# ---------------------------------------------------------------------------

def _on_segment(p: Coordinate, a: Coordinate, b: Coordinate) -> bool:
    cross = (
        (b.longitude - a.longitude) * (p.latitude - a.latitude)
        - (b.latitude - a.latitude) * (p.longitude - a.longitude)
    )
    if abs(cross) > _EDGE_EPSILON:
        return False
    return (
        min(a.longitude, b.longitude) - _EDGE_EPSILON <= p.longitude
        <= max(a.longitude, b.longitude) + _EDGE_EPSILON
        and min(a.latitude, b.latitude) - _EDGE_EPSILON <= p.latitude
        <= max(a.latitude, b.latitude) + _EDGE_EPSILON
    )


def point_in_polygon(point: Coordinate, ring: Sequence[Coordinate]) -> bool:
    """
    Ray-casting containment test on planar lon/lat.

    The ring may be open or closed (first vertex repeated at the end).
    Points on an edge or vertex count as inside.

    >>> square = [Coordinate(0, 0), Coordinate(0, 10), Coordinate(10, 10), Coordinate(10, 0)]
    >>> point_in_polygon(Coordinate(5, 5), square)
    True
    >>> point_in_polygon(Coordinate(20, 20), square)
    False
    """
    if len(ring) < 3:
        raise InvalidCoordinateError(
            f"Polygon needs at least 3 vertices, got {len(ring)}",
            field="ring",
        )

    x, y = point.longitude, point.latitude
    inside = False
    j = len(ring) - 1

    for i in range(len(ring)):
        vi, vj = ring[i], ring[j]
        if _on_segment(point, vi, vj):
            return True
        xi, yi = vi.longitude, vi.latitude
        xj, yj = vj.longitude, vj.latitude
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i

    return inside


# ---------------------------------------------------------------------------
# Centroid / bearing / destination
# ---------------------------------------------------------------------------

def centroid(points: Sequence[Coordinate]) -> Optional[Coordinate]:
    """
    Spherical average: mean of unit vectors, projected back to lat/lon.

    Returns None for empty input and the point itself for a single point.
    """
    if not points:
        return None
    if len(points) == 1:
        return points[0]

    x = y = z = 0.0
    for p in points:
        x += math.cos(p.lat_rad) * math.cos(p.lon_rad)
        y += math.cos(p.lat_rad) * math.sin(p.lon_rad)
        z += math.sin(p.lat_rad)

    n = len(points)
    x, y, z = x / n, y / n, z / n

    lon = math.degrees(math.atan2(y, x))
    lat = math.degrees(math.atan2(z, math.sqrt(x * x + y * y)))
    return Coordinate(lon, lat)


def bearing_degrees(a: Coordinate, b: Coordinate) -> float:
    """Initial bearing from ``a`` to ``b``, normalised to [0, 360)."""
    d_lon = b.lon_rad - a.lon_rad
    y = math.sin(d_lon) * math.cos(b.lat_rad)
    x = (
        math.cos(a.lat_rad) * math.sin(b.lat_rad)
        - math.sin(a.lat_rad) * math.cos(b.lat_rad) * math.cos(d_lon)
    )
    bearing = math.degrees(math.atan2(y, x)) % 360.0
    # -1e-15 % 360 rounds up to 360.0
    return 0.0 if bearing >= 360.0 else bearing


def cardinal_direction(bearing: float) -> str:
    """
    Eight-way compass label for a bearing.

    >>> cardinal_direction(0), cardinal_direction(95), cardinal_direction(320)
    ('N', 'E', 'NW')
    """
    directions = ["N", "NE", "E", "SE", "S", "SW", "W", "NW"]
    return directions[int(round(bearing / 45.0)) % 8]


def destination_point(origin: Coordinate, bearing: float, distance_km: float) -> Coordinate:
    """Point reached travelling ``distance_km`` from ``origin`` on ``bearing``."""
    check_radius(distance_km)
    angular = distance_km / EARTH_RADIUS_KM
    theta = math.radians(bearing)

    lat2 = math.asin(
        math.sin(origin.lat_rad) * math.cos(angular)
        + math.cos(origin.lat_rad) * math.sin(angular) * math.cos(theta)
    )
    lon2 = origin.lon_rad + math.atan2(
        math.sin(theta) * math.sin(angular) * math.cos(origin.lat_rad),
        math.cos(angular) - math.sin(origin.lat_rad) * math.sin(lat2),
    )

    lon_deg = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    lat_deg = max(-90.0, min(90.0, math.degrees(lat2)))
    return Coordinate(lon_deg, lat_deg)


def circle_polygon(center: Coordinate, radius_km: float, num_points: int = 12) -> List[Coordinate]:
    """Closed ring approximating a circle, for map rendering."""
    if num_points < 3:
        raise ValueError(f"num_points must be >= 3, got {num_points}")
    ring = [
        destination_point(center, (360.0 / num_points) * i, radius_km)
        for i in range(num_points)
    ]
    ring.append(ring[0])
    return ring


# ---------------------------------------------------------------------------
# Bounding-box pre-filter
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinate, radius_km: float) -> BoundingBox:
    """
    Rectangle guaranteed to contain the circle (center, radius_km).

    Used only for coarse rejection before the exact Haversine test.
    """
    check_radius(radius_km)
    angular = radius_km / EARTH_RADIUS_KM

    min_lat = center.latitude - math.degrees(angular)
    max_lat = center.latitude + math.degrees(angular)

    if min_lat <= -90.0 or max_lat >= 90.0 or angular >= math.pi / 2:
        # Circle covers a pole: every longitude is reachable
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    ratio = math.sin(angular) / math.cos(center.lat_rad)
    if ratio >= 1.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)

    delta_lon = math.degrees(math.asin(ratio)) + 1e-9
    min_lon = center.longitude - delta_lon
    max_lon = center.longitude + delta_lon

    if min_lon < -180.0 or max_lon > 180.0:
        # Straddles the antimeridian; widen rather than split the box
        min_lon, max_lon = -180.0, 180.0

    return BoundingBox(min_lat, max_lat, min_lon, max_lon)


# ---------------------------------------------------------------------------
# Validation / formatting helpers
# ---------------------------------------------------------------------------

def validate_coordinates(longitude: Any, latitude: Any) -> bool:
    """Non-raising validity check."""
    try:
        Coordinate(longitude, latitude)
    except InvalidCoordinateError:
        return False
    return True


def format_coordinates(point: Coordinate) -> str:
    """
    >>> format_coordinates(Coordinate(-74.006, 40.7128))
    '40.712800° N, 74.006000° W'
    """
    lat_dir = "N" if point.latitude >= 0 else "S"
    lon_dir = "E" if point.longitude >= 0 else "W"
    return (
        f"{abs(point.latitude):.6f}° {lat_dir}, "
        f"{abs(point.longitude):.6f}° {lon_dir}"
    )


_DECIMAL_PAIR = re.compile(r"^(-?\d+\.?\d*)\s*[,\s]\s*(-?\d+\.?\d*)$")
_HEMISPHERE_PAIR = re.compile(
    r"^(\d+\.?\d*)°?\s*([NS])\s*,?\s*(\d+\.?\d*)°?\s*([EW])$", re.IGNORECASE
)


def parse_coordinates(text: str) -> Optional[Coordinate]:
    """
    Parse ``"lat,lon"``, ``"lat lon"`` or ``"12.5°N, 77.1°E"``.

    Returns None if the text is not a valid coordinate.

    >>> parse_coordinates("13.08, 80.27")
    Coordinate(longitude=80.27, latitude=13.08)
    >>> parse_coordinates("33.9°S, 151.2°E").latitude
    -33.9
    """
    text = text.strip()

    match = _DECIMAL_PAIR.match(text)
    if match:
        lat, lon = float(match.group(1)), float(match.group(2))
    else:
        match = _HEMISPHERE_PAIR.match(text)
        if not match:
            return None
        lat, lon = float(match.group(1)), float(match.group(3))
        if match.group(2).upper() == "S":
            lat = -lat
        if match.group(4).upper() == "W":
            lon = -lon

    if not validate_coordinates(lon, lat):
        return None
    return Coordinate(lon, lat)


def sort_by_distance(
    items: Iterable[T],
    origin: Coordinate,
    key: Callable[[T], Coordinate],
) -> List[tuple[T, float]]:
    """Pair each item with its distance from ``origin``, nearest first."""
    ranked = [(item, distance(origin, key(item))) for item in items]
    ranked.sort(key=lambda pair: pair[1])
    return ranked


def format_distance(km: float) -> str:
    """
    >>> format_distance(0.45)
    '450 m'
    >>> format_distance(3.7266)
    '3.73 km'
    """
    if km < 1.0:
        return f"{int(km * 1000)} m"
    return f"{km:.2f} km"
