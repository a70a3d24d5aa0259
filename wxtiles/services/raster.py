from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import numpy as np
import rasterio
from rasterio.enums import Resampling
from rasterio.transform import Affine, from_origin

from wxtiles.services.geometry import GeoPoint
from wxtiles.services.palette import Palette

logger = logging.getLogger(__name__)

DEFAULT_PIXEL_SIZE = 0.01
OVERVIEW_LEVELS = [2, 4, 8, 16]
BAND_DESCRIPTIONS = ("red", "green", "blue", "alpha", "value")
VALUE_BAND = 5
COLOR_BANDS = (1, 2, 3, 4)


@dataclass(frozen=True)
class RasterGrid:
    rgba: np.ndarray
    values: np.ndarray
    transform: Affine
    bounds_wgs84: tuple[float, float, float, float]
    pixel_size: tuple[float, float]

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])


def grid_spacing(coords: np.ndarray, *, default: float = DEFAULT_PIXEL_SIZE) -> float:
    """Smallest positive spacing between distinct coordinates."""
    unique = np.unique(np.round(np.asarray(coords, dtype=np.float64), 6))
    if unique.size < 2:
        return default
    diffs = np.diff(unique)
    positive = diffs[diffs > 1e-9]
    if positive.size == 0:
        return default
    return float(positive.min())


def rasterize(samples: Iterable[GeoPoint], palette: Palette) -> RasterGrid:
    points = list(samples)
    if not points:
        raise ValueError("Cannot rasterize an empty sample set")

    lats = np.array([point.lat for point in points], dtype=np.float64)
    lons = np.array([point.lon for point in points], dtype=np.float64)
    values = np.array([point.value for point in points], dtype=np.float64)

    min_lon, max_lon = float(lons.min()), float(lons.max())
    min_lat, max_lat = float(lats.min()), float(lats.max())
    px = grid_spacing(lons)
    py = grid_spacing(lats)
    width = int(round((max_lon - min_lon) / px)) + 1
    height = int(round((max_lat - min_lat) / py)) + 1

    cols = np.clip(np.rint((lons - min_lon) / px).astype(np.int64), 0, width - 1)
    rows = np.clip(np.rint((max_lat - lats) / py).astype(np.int64), 0, height - 1)

    value_band = np.full((height, width), np.nan, dtype=np.float32)
    value_band[rows, cols] = values.astype(np.float32)

    rgba = np.zeros((4, height, width), dtype=np.uint8)
    colors = palette.colorize(values)
    for channel in range(4):
        rgba[channel, rows, cols] = colors[:, channel]

    transform = from_origin(min_lon - px / 2, max_lat + py / 2, px, py)
    bounds = (min_lon - px / 2, min_lat - py / 2, max_lon + px / 2, max_lat + py / 2)
    logger.debug(
        "Rasterized samples=%d width=%d height=%d px=%.5f py=%.5f palette=%s",
        len(points),
        width,
        height,
        px,
        py,
        palette.name,
    )
    return RasterGrid(rgba=rgba, values=value_band, transform=transform, bounds_wgs84=bounds, pixel_size=(px, py))


def write_raster(grid: RasterGrid, out_path: Path) -> Path:
    """Write RGBA plus the float value band as a tiled EPSG:4326 GeoTIFF."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = out_path.with_name(f".{out_path.name}.{uuid.uuid4().hex}.tmp")
    profile = {
        "driver": "GTiff",
        "height": grid.height,
        "width": grid.width,
        "count": len(BAND_DESCRIPTIONS),
        "dtype": "float32",
        "crs": "EPSG:4326",
        "transform": grid.transform,
        "tiled": True,
        "blockxsize": 256,
        "blockysize": 256,
        "compress": "deflate",
    }
    try:
        with rasterio.open(tmp_path, "w", **profile) as dst:
            dst.write(grid.rgba.astype(np.float32), list(COLOR_BANDS))
            dst.write(grid.values, VALUE_BAND)
            for index, description in enumerate(BAND_DESCRIPTIONS, start=1):
                dst.set_band_description(index, description)
            levels = [level for level in OVERVIEW_LEVELS if min(grid.width, grid.height) // level >= 1]
            if levels:
                dst.build_overviews(levels, Resampling.nearest)
                dst.update_tags(ns="rio_overview", resampling="nearest")
        tmp_path.replace(out_path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    return out_path
