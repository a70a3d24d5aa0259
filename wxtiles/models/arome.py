from __future__ import annotations

from .base import LayerSpec, ModelSpec, PackageSpec, RegionSpec

FRANCE_BBOX_WGS84 = (-12.74, 37.33, 13.0, 55.95)

AROME_REGIONS: dict[str, RegionSpec] = {
    "france": RegionSpec(
        id="france",
        name="France (AROME 0.01)",
        bbox_wgs84=FRANCE_BBOX_WGS84,
    ),
}

SP1 = PackageSpec(
    id="SP1",
    layers=(
        LayerSpec(
            id="temperature",
            name="2m Temperature",
            fields=("t2m",),
            derive="temperature",
            units="°C",
        ),
        LayerSpec(
            id="humidity",
            name="2m Relative Humidity",
            fields=("r2",),
            derive="humidity",
            units="%",
        ),
        LayerSpec(
            id="wind_speed",
            name="10m Wind Speed",
            fields=("u10", "v10"),
            derive="wind_speed",
            units="m/s",
        ),
        LayerSpec(
            id="comfort_index",
            name="Apparent Temperature",
            fields=("t2m", "u10", "v10", "r2"),
            derive="apparent_temperature",
            units="°C",
        ),
        LayerSpec(
            id="feels_like_temperature",
            name="Feels Like Temperature",
            fields=("t2m", "u10", "v10", "r2"),
            derive="feels_like_temperature",
            units="°C",
        ),
        LayerSpec(
            id="comfort_score",
            name="Comfort Score",
            fields=("t2m", "u10", "v10", "r2"),
            derive="comfort_score",
        ),
    ),
)

SP2 = PackageSpec(
    id="SP2",
    layers=(
        LayerSpec(
            id="cloud_cover",
            name="Total Cloud Cover",
            fields=("lcc", "mcc", "hcc"),
            derive="cloud_cover",
            units="%",
        ),
    ),
)

AROME_MODEL = ModelSpec(
    id="arome",
    name="AROME",
    packages=(SP1, SP2),
    regions=AROME_REGIONS,
    default_region="france",
)
