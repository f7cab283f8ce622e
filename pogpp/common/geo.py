"""Coordinate sanity checks, great-circle distance, and geofences.

All functions are pure and total: bad input produces a negative result, never
an exception. Polygon fences treat points on an edge or vertex as inside.
"""

import math
from dataclasses import dataclass
from typing import NamedTuple, Sequence

EARTH_RADIUS_METERS = 6_371_008.8
DEFAULT_MAX_ACCURACY_METERS = 100.0
# Tolerance for the on-edge test, in degrees (~1 mm at the equator).
EDGE_EPSILON_DEGREES = 1e-8


class Point(NamedTuple):
    latitude: float
    longitude: float


class GeoCheck(NamedTuple):
    """Outcome of a validation; `reason` is set only when `ok` is False."""

    ok: bool
    reason: str | None = None


@dataclass(frozen=True)
class CircleFence:
    center: Point
    radius_meters: float


@dataclass(frozen=True)
class PolygonFence:
    vertices: tuple[Point, ...]


def _as_float(value) -> float | None:
    """Parse a finite float from numbers or numeric strings; None otherwise."""

    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def validate_coordinates(latitude, longitude) -> GeoCheck:
    """Check that a coordinate pair is a plausible GPS fix."""

    lat = _as_float(latitude)
    lon = _as_float(longitude)
    if lat is None or lon is None:
        return GeoCheck(False, "non_numeric")
    if not -90.0 <= lat <= 90.0:
        return GeoCheck(False, "latitude_out_of_range")
    if not -180.0 <= lon <= 180.0:
        return GeoCheck(False, "longitude_out_of_range")
    if lat == 0.0 and lon == 0.0:
        # (0, 0) is what receivers report without a fix.
        return GeoCheck(False, "null_island")
    return GeoCheck(True)


def validate_accuracy(accuracy_meters, max_allowed: float = DEFAULT_MAX_ACCURACY_METERS) -> bool:
    """Return True when the reported fix accuracy is usable."""

    accuracy = _as_float(accuracy_meters)
    if accuracy is None or accuracy < 0:
        return False
    return accuracy <= max_allowed


def distance_meters(p1: Point, p2: Point) -> float:
    """Haversine distance in meters between two points."""

    lat1, lon1 = math.radians(p1[0]), math.radians(p1[1])
    lat2, lon2 = math.radians(p2[0]), math.radians(p2[1])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def _on_segment(point: Point, a: Point, b: Point) -> bool:
    x, y = point.longitude, point.latitude
    x1, y1, x2, y2 = a.longitude, a.latitude, b.longitude, b.latitude
    cross = (x - x1) * (y2 - y1) - (y - y1) * (x2 - x1)
    if abs(cross) > EDGE_EPSILON_DEGREES:
        return False
    return (
        min(x1, x2) - EDGE_EPSILON_DEGREES <= x <= max(x1, x2) + EDGE_EPSILON_DEGREES
        and min(y1, y2) - EDGE_EPSILON_DEGREES <= y <= max(y1, y2) + EDGE_EPSILON_DEGREES
    )


def point_in_polygon(point: Point, vertices: Sequence[Point]) -> bool:
    """Even-odd ray casting in the (lon, lat) plane; boundary counts as inside."""

    if len(vertices) < 3:
        return False
    polygon = [Point(*v) for v in vertices]
    point = Point(*point)
    for i, a in enumerate(polygon):
        b = polygon[(i + 1) % len(polygon)]
        if _on_segment(point, a, b):
            return True

    inside = False
    x, y = point.longitude, point.latitude
    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i].longitude, polygon[i].latitude
        xj, yj = polygon[j].longitude, polygon[j].latitude
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def within_geofence(point: Point, fence: CircleFence | PolygonFence) -> bool:
    """Test a point against a circular or polygonal fence."""

    check = validate_coordinates(point[0], point[1])
    # Null island is a "no fix" sentinel for visits but still a point on the map.
    if not check.ok and check.reason != "null_island":
        return False
    if isinstance(fence, CircleFence):
        if fence.radius_meters < 0:
            return False
        return distance_meters(point, fence.center) <= fence.radius_meters
    if isinstance(fence, PolygonFence):
        return point_in_polygon(point, fence.vertices)
    return False


def center_point(points: Sequence[Point]) -> Point | None:
    """Spherical mean of a set of points; None for an empty set."""

    if not points:
        return None
    x = y = z = 0.0
    for lat, lon in points:
        lat_r, lon_r = math.radians(lat), math.radians(lon)
        x += math.cos(lat_r) * math.cos(lon_r)
        y += math.cos(lat_r) * math.sin(lon_r)
        z += math.sin(lat_r)
    n = len(points)
    x, y, z = x / n, y / n, z / n
    lon = math.atan2(y, x)
    lat = math.atan2(z, math.sqrt(x * x + y * y))
    return Point(math.degrees(lat), math.degrees(lon))


def nearest_point(target: Point, points: Sequence[Point]) -> tuple[int, float] | None:
    """Index of and distance to the closest of `points`; None when empty."""

    best: tuple[int, float] | None = None
    for index, candidate in enumerate(points):
        distance = distance_meters(target, candidate)
        if best is None or distance < best[1]:
            best = (index, distance)
    return best
