from __future__ import annotations

import math
from typing import Iterable, NamedTuple, Sequence

BUCKET_PRECISION = 3
MISSING_VALUE = 9999.0
TILE_SIZE = 256

BucketKey = tuple[float, float]


class GeoPoint(NamedTuple):
    lat: float
    lon: float
    value: float


def is_missing(value: float) -> bool:
    return value >= MISSING_VALUE or not math.isfinite(value)


def round_coordinate(value: float) -> float:
    return round(float(value), BUCKET_PRECISION)


def bucket_key(lat: float, lon: float) -> BucketKey:
    """Return the (lon, lat) bucket a sample belongs to.

    Rounding is idempotent, so a key built from an already-bucketed point is
    the key it came from.
    """
    return round_coordinate(lon), round_coordinate(lat)


def is_point_in_polygon(lon: float, lat: float, polygon: Sequence[tuple[float, float]]) -> bool:
    """Ray casting on (lon, lat) vertices.

    Edges are half-open on latitude, so horizontal edges never count as a
    crossing and a ray through a shared vertex is counted exactly once.
    """
    if len(polygon) < 3:
        return False
    inside = False
    count = len(polygon)
    j = count - 1
    for i in range(count):
        lon_i, lat_i = polygon[i]
        lon_j, lat_j = polygon[j]
        if (lat_i > lat) != (lat_j > lat):
            crossing_lon = lon_i + (lat - lat_i) * (lon_j - lon_i) / (lat_j - lat_i)
            if lon < crossing_lon:
                inside = not inside
        j = i
    return inside


def filter_points_by_polygon(
    points: Iterable[GeoPoint],
    polygon: Sequence[tuple[float, float]] | None,
) -> list[GeoPoint]:
    if polygon is None:
        return list(points)
    return [point for point in points if is_point_in_polygon(point.lon, point.lat, polygon)]


def tile_center_lonlat(x: int, y: int, z: int) -> tuple[float, float]:
    n = 2**z
    lon = (x + 0.5) / n * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * (y + 0.5) / n))))
    return lon, lat


def lonlat_to_tile(lon: float, lat: float, z: int) -> tuple[int, int]:
    n = 2**z
    lat = max(min(lat, 85.0511), -85.0511)
    x = int((lon + 180.0) / 360.0 * n)
    lat_rad = math.radians(lat)
    y = int((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n)
    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)
