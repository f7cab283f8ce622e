"""Coordinate validation, distance, and geofence behaviour."""

import math

import pytest

from pogpp.common.geo import (
    CircleFence,
    Point,
    PolygonFence,
    center_point,
    distance_meters,
    nearest_point,
    point_in_polygon,
    validate_accuracy,
    validate_coordinates,
    within_geofence,
)

MILAN = Point(45.4642, 9.19)
ROME = Point(41.9028, 12.4964)
SQUARE = (Point(0.0, 10.0), Point(0.0, 11.0), Point(1.0, 11.0), Point(1.0, 10.0))


def test_plausible_fix_is_valid():
    assert validate_coordinates(45.4642, 9.19).ok
    assert validate_coordinates("45.4642", "9.19").ok


def test_null_island_is_rejected():
    """(0, 0) is the no-fix sentinel."""

    check = validate_coordinates(0, 0)
    assert not check.ok
    assert check.reason == "null_island"
    assert validate_coordinates(0.0, 0.0001).ok


@pytest.mark.parametrize(
    ("lat", "lon", "reason"),
    [
        (90.0001, 9.0, "latitude_out_of_range"),
        (-91, 9.0, "latitude_out_of_range"),
        (45.0, 180.5, "longitude_out_of_range"),
        (None, 9.0, "non_numeric"),
        ("north", 9.0, "non_numeric"),
        (True, 9.0, "non_numeric"),
        (math.nan, 9.0, "non_numeric"),
        (45.0, math.inf, "non_numeric"),
    ],
)
def test_bad_coordinates_report_reason(lat, lon, reason):
    check = validate_coordinates(lat, lon)
    assert not check.ok
    assert check.reason == reason


def test_range_bounds_are_inclusive():
    assert validate_coordinates(90, 180).ok
    assert validate_coordinates(-90, -180).ok


def test_accuracy_threshold():
    assert validate_accuracy(5)
    assert validate_accuracy(100)
    assert not validate_accuracy(100.5)
    assert not validate_accuracy(-1)
    assert not validate_accuracy(None)
    assert validate_accuracy(150, max_allowed=200)


def test_distance_is_symmetric_and_zero_on_self():
    assert distance_meters(MILAN, MILAN) == 0
    assert distance_meters(MILAN, ROME) == pytest.approx(distance_meters(ROME, MILAN))


def test_distance_milan_rome():
    """Roughly 477 km great-circle."""

    assert distance_meters(MILAN, ROME) == pytest.approx(477_000, rel=0.01)


def test_circle_fence():
    fence = CircleFence(MILAN, 100.0)
    assert within_geofence(Point(45.4645, 9.19), fence)
    assert not within_geofence(Point(45.4662, 9.19), fence)
    assert not within_geofence(MILAN, CircleFence(MILAN, -1))


def test_circle_fence_rejects_invalid_point():
    assert not within_geofence(Point(95.0, 9.19), CircleFence(MILAN, 10_000_000))


def test_polygon_inside_outside_and_edge():
    assert point_in_polygon(Point(0.5, 10.5), SQUARE)
    assert not point_in_polygon(Point(1.5, 10.5), SQUARE)
    # Edge and vertex count as inside.
    assert point_in_polygon(Point(0.5, 10.0), SQUARE)
    assert point_in_polygon(Point(1.0, 11.0), SQUARE)


def test_degenerate_polygon_contains_nothing():
    assert not point_in_polygon(Point(0.0, 10.0), SQUARE[:2])


def test_polygon_fence_through_within_geofence():
    assert within_geofence(Point(0.5, 10.5), PolygonFence(SQUARE))
    assert not within_geofence(Point(2.0, 10.5), PolygonFence(SQUARE))


def test_center_and_nearest():
    assert center_point([]) is None
    assert nearest_point(MILAN, []) is None
    center = center_point([Point(10.0, 20.0), Point(10.0, 20.0)])
    assert center.latitude == pytest.approx(10.0)
    assert center.longitude == pytest.approx(20.0)
    index, distance = nearest_point(Point(45.47, 9.19), [ROME, MILAN])
    assert index == 1
    assert distance < 1000
