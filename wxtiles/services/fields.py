"""Per-layer field derivations.

Every derivation takes the decoded samples keyed by source field name and
returns one GeoPoint per coordinate bucket. Derivations are pure: the output
depends only on the multiset of input samples, never on their order.
"""

from __future__ import annotations

import math
from typing import Callable, Iterable, Mapping, Sequence

from wxtiles.services.geometry import BucketKey, GeoPoint, bucket_key, is_missing

KELVIN_OFFSET = 273.15
MIN_TEMPERATURE_C = -70.0
NEUTRAL_COMFORT_SCORE = 5.0
COMFORT_SCORE_RANGE = (1.0, 10.0)
APPARENT_TEMPERATURE_RANGE = (-20.0, 50.0)

PointsByField = Mapping[str, Sequence[GeoPoint]]
DerivedPoints = dict[BucketKey, GeoPoint]
Derivation = Callable[[PointsByField], DerivedPoints]


def _mean(values: Sequence[float]) -> float:
    return math.fsum(values) / len(values)


def collect_buckets(
    points_by_field: PointsByField,
    *,
    fields: Iterable[str] | None = None,
) -> dict[BucketKey, dict[str, float]]:
    """Group valid samples by bucket and field, averaging duplicates."""
    wanted = set(fields) if fields is not None else None
    samples: dict[BucketKey, dict[str, list[float]]] = {}
    for field_name in sorted(points_by_field):
        if wanted is not None and field_name not in wanted:
            continue
        for point in points_by_field[field_name]:
            if is_missing(point.value):
                continue
            key = bucket_key(point.lat, point.lon)
            samples.setdefault(key, {}).setdefault(field_name, []).append(float(point.value))
    return {
        key: {field_name: _mean(values) for field_name, values in by_field.items()}
        for key, by_field in samples.items()
    }


def _point(key: BucketKey, value: float) -> GeoPoint:
    lon, lat = key
    return GeoPoint(lat=lat, lon=lon, value=value)


def _scalar(
    points_by_field: PointsByField,
    transform: Callable[[float], float | None],
) -> DerivedPoints:
    samples: dict[BucketKey, list[float]] = {}
    for field_name in sorted(points_by_field):
        for point in points_by_field[field_name]:
            if is_missing(point.value):
                continue
            converted = transform(float(point.value))
            if converted is None:
                continue
            samples.setdefault(bucket_key(point.lat, point.lon), []).append(converted)
    return {key: _point(key, _mean(values)) for key, values in samples.items()}


def _composite(
    points_by_field: PointsByField,
    required: Sequence[str],
    compute: Callable[..., float],
) -> DerivedPoints:
    result: DerivedPoints = {}
    for key, values in collect_buckets(points_by_field, fields=required).items():
        if any(name not in values for name in required):
            continue
        result[key] = _point(key, compute(*(values[name] for name in required)))
    return result


def _kelvin_to_celsius(value: float) -> float | None:
    if value == 0:
        return None
    celsius = value - KELVIN_OFFSET
    if celsius < MIN_TEMPERATURE_C:
        return None
    return celsius


def _nonzero(value: float) -> float | None:
    return None if value == 0 else value


def derive_temperature(points_by_field: PointsByField) -> DerivedPoints:
    return _scalar(points_by_field, _kelvin_to_celsius)


def derive_humidity(points_by_field: PointsByField) -> DerivedPoints:
    return _scalar(points_by_field, _nonzero)


def derive_passthrough(points_by_field: PointsByField) -> DerivedPoints:
    return _scalar(points_by_field, lambda value: value)


def derive_wind_speed(points_by_field: PointsByField) -> DerivedPoints:
    return _composite(points_by_field, ("u10", "v10"), math.hypot)


def _as_fraction(value: float) -> float:
    fraction = value / 100.0 if value > 1.0 else value
    return min(max(fraction, 0.0), 1.0)


def total_cloud_cover(low: float, mid: float, high: float) -> float:
    """Random-overlap total cover in percent from layer fractions."""
    low, mid, high = (min(max(value, 0.0), 1.0) for value in (low, mid, high))
    total = low + mid * (1.0 - low) + high * (1.0 - low) * (1.0 - mid)
    return min(max(total, 0.0), 1.0) * 100.0


def derive_cloud_cover(points_by_field: PointsByField) -> DerivedPoints:
    def compute(lcc: float, mcc: float, hcc: float) -> float:
        return total_cloud_cover(_as_fraction(lcc), _as_fraction(mcc), _as_fraction(hcc))

    return _composite(points_by_field, ("lcc", "mcc", "hcc"), compute)


def _valid_comfort_inputs(t2m: float, u10: float, v10: float, r2: float) -> bool:
    if t2m < 200 or t2m > 350:
        return False
    if r2 < 0 or r2 > 100:
        return False
    return abs(u10) <= 100 and abs(v10) <= 100


def _valid_result(value: float) -> bool:
    return math.isfinite(value) and -100.0 <= value <= 100.0


def feels_like_temperature(t2m: float, u10: float, v10: float, r2: float) -> float:
    """Wind chill or heat index in °C; the plain temperature otherwise."""
    temp_c = t2m - KELVIN_OFFSET
    if not _valid_comfort_inputs(t2m, u10, v10, r2):
        return temp_c

    wind_speed = math.hypot(u10, v10)
    if temp_c < 10.0 and wind_speed > 1.3:
        wind_factor = (wind_speed * 3.6) ** 0.16
        result = 13.12 + 0.6215 * temp_c - 11.37 * wind_factor + 0.3965 * temp_c * wind_factor
        return result if _valid_result(result) else temp_c

    if temp_c >= 27.0 and r2 >= 40.0:
        t, rh = temp_c, r2
        result = (
            -8.78469475556
            + 1.61139411 * t
            + 2.33854883889 * rh
            - 0.14611605 * t * rh
            - 0.012308094 * t * t
            - 0.0164248277778 * rh * rh
            + 0.002211732 * t * t * rh
            + 0.00072546 * t * rh * rh
            - 0.000003582 * t * t * rh * rh
        )
        return result if _valid_result(result) else temp_c

    return temp_c


def apparent_temperature(t2m: float, u10: float, v10: float, r2: float) -> float:
    """Bureau of Meteorology apparent temperature in °C."""
    temp_c = t2m - KELVIN_OFFSET
    if not _valid_comfort_inputs(t2m, u10, v10, r2):
        return temp_c
    vapour_pressure = (r2 / 100.0) * 6.105 * math.exp(17.27 * temp_c / (237.7 + temp_c))
    result = temp_c + 0.33 * vapour_pressure - 0.70 * math.hypot(u10, v10) - 4.0
    return result if _valid_result(result) else temp_c


def comfort_score(t2m: float, u10: float, v10: float, r2: float) -> float:
    """Apparent temperature mapped onto a bounded 1..10 index."""
    if not _valid_comfort_inputs(t2m, u10, v10, r2):
        return NEUTRAL_COMFORT_SCORE
    temp_c = t2m - KELVIN_OFFSET
    vapour_pressure = (r2 / 100.0) * 6.105 * math.exp(17.27 * temp_c / (237.7 + temp_c))
    at = temp_c + 0.33 * vapour_pressure - 0.70 * math.hypot(u10, v10) - 4.0
    if not math.isfinite(at):
        return NEUTRAL_COMFORT_SCORE

    min_at, max_at = APPARENT_TEMPERATURE_RANGE
    min_index, max_index = COMFORT_SCORE_RANGE
    if at <= min_at:
        return min_index
    if at >= max_at:
        return max_index
    return min_index + (at - min_at) * (max_index - min_index) / (max_at - min_at)


_COMFORT_FIELDS = ("t2m", "u10", "v10", "r2")


def derive_feels_like_temperature(points_by_field: PointsByField) -> DerivedPoints:
    return _composite(points_by_field, _COMFORT_FIELDS, feels_like_temperature)


def derive_apparent_temperature(points_by_field: PointsByField) -> DerivedPoints:
    return _composite(points_by_field, _COMFORT_FIELDS, apparent_temperature)


def derive_comfort_score(points_by_field: PointsByField) -> DerivedPoints:
    return _composite(points_by_field, _COMFORT_FIELDS, comfort_score)


def derive_default(points_by_field: PointsByField) -> DerivedPoints:
    """Sum of every valid field value landing in a bucket."""
    return {
        key: _point(key, math.fsum(values.values()))
        for key, values in collect_buckets(points_by_field).items()
    }


DERIVATIONS: dict[str, Derivation] = {
    "temperature": derive_temperature,
    "humidity": derive_humidity,
    "passthrough": derive_passthrough,
    "wind_speed": derive_wind_speed,
    "cloud_cover": derive_cloud_cover,
    "feels_like_temperature": derive_feels_like_temperature,
    "apparent_temperature": derive_apparent_temperature,
    "comfort_score": derive_comfort_score,
    "default": derive_default,
}


def get_derivation(name: str) -> Derivation:
    return DERIVATIONS.get(name, derive_default)
