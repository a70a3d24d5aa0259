from __future__ import annotations

import pytest

from wxtiles.services.geometry import (
    GeoPoint,
    bucket_key,
    filter_points_by_polygon,
    is_missing,
    is_point_in_polygon,
    lonlat_to_tile,
    round_coordinate,
    tile_center_lonlat,
)

SQUARE = ((0.0, 0.0), (0.0, 10.0), (10.0, 10.0), (10.0, 0.0))


@pytest.mark.parametrize("value", [2.35449, -12.7401, 45.0, 0.0005, 180.0])
def test_bucketing_is_idempotent(value: float) -> None:
    once = round_coordinate(value)
    assert round_coordinate(once) == once
    lon, lat = bucket_key(value, value)
    assert bucket_key(lat, lon) == (lon, lat)


def test_bucket_key_orders_lon_first() -> None:
    assert bucket_key(48.85661, 2.35222) == (2.352, 48.857)


def test_missing_values() -> None:
    assert is_missing(9999.0)
    assert is_missing(1e20)
    assert is_missing(float("nan"))
    assert is_missing(float("inf"))
    assert not is_missing(-12.5)


def test_point_in_polygon_inside_and_outside() -> None:
    assert is_point_in_polygon(5.0, 5.0, SQUARE)
    assert not is_point_in_polygon(15.0, 5.0, SQUARE)
    assert not is_point_in_polygon(5.0, -1.0, SQUARE)


def test_point_in_polygon_horizontal_edge_adds_no_crossing() -> None:
    # Ray along the bottom edge: the edge itself is parallel to the scan line.
    assert is_point_in_polygon(5.0, 0.0, SQUARE) == is_point_in_polygon(5.0, 0.0, SQUARE[::-1])
    assert not is_point_in_polygon(20.0, 0.0, SQUARE)


def test_point_in_polygon_vertices_are_lon_lat() -> None:
    # A wide, short strip: 0..40 degrees of longitude, 0..2 of latitude.
    strip = ((0.0, 0.0), (40.0, 0.0), (40.0, 2.0), (0.0, 2.0))
    assert is_point_in_polygon(30.0, 1.0, strip)
    assert not is_point_in_polygon(1.0, 30.0, strip)
    point = GeoPoint(lat=1.0, lon=30.0, value=0.0)
    assert filter_points_by_polygon([point], strip) == [point]


def test_point_in_polygon_needs_three_vertices() -> None:
    assert not is_point_in_polygon(0.5, 0.5, ((0.0, 0.0), (1.0, 1.0)))


def test_filter_points_by_polygon() -> None:
    points = [GeoPoint(5.0, 5.0, 1.0), GeoPoint(20.0, 5.0, 2.0)]
    assert filter_points_by_polygon(points, SQUARE) == [points[0]]
    assert filter_points_by_polygon(points, None) == points


def test_tile_math() -> None:
    lon, lat = tile_center_lonlat(0, 0, 0)
    assert lon == pytest.approx(0.0)
    assert lat == pytest.approx(0.0, abs=1e-9)

    assert lonlat_to_tile(0.0, 0.0, 1) == (1, 1)
    lon, lat = tile_center_lonlat(32, 22, 6)
    assert lonlat_to_tile(lon, lat, 6) == (32, 22)
