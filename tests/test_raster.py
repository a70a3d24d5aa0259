from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import rasterio

from wxtiles.services.geometry import GeoPoint
from wxtiles.services.palette import PaletteRegistry
from wxtiles.services.raster import VALUE_BAND, grid_spacing, rasterize, write_raster


def _grid_samples(value: float = 12.5) -> list[GeoPoint]:
    return [
        GeoPoint(round(46.0 + row * 0.1, 3), round(2.0 + col * 0.1, 3), value)
        for row in range(21)
        for col in range(21)
    ]


def test_grid_spacing_uses_smallest_step() -> None:
    assert grid_spacing(np.array([0.0, 0.1, 0.3, 0.3])) == pytest.approx(0.1)
    assert grid_spacing(np.array([5.0])) == pytest.approx(0.01)


def test_rasterize_places_samples_and_leaves_holes() -> None:
    palette = PaletteRegistry().get("temperature")
    samples = [
        GeoPoint(1.0, 1.0, 10.0),
        GeoPoint(1.0, 1.1, 12.0),
        GeoPoint(1.0, 1.2, 15.0),
        GeoPoint(1.1, 1.0, 11.0),
        GeoPoint(1.2, 1.0, 20.0),
    ]
    grid = rasterize(samples, palette)

    assert (grid.height, grid.width) == (3, 3)
    # Row 0 is the northernmost latitude.
    assert grid.values[0, 0] == pytest.approx(20.0)
    assert grid.values[2, 0] == pytest.approx(10.0)
    assert grid.values[2, 2] == pytest.approx(15.0)
    assert np.isnan(grid.values[1, 1])
    assert tuple(grid.rgba[:, 2, 0]) == palette.color_for_value(10.0)
    assert grid.rgba[3, 1, 1] == 0
    min_lon, min_lat, max_lon, max_lat = grid.bounds_wgs84
    assert min_lon == pytest.approx(0.95) and max_lat == pytest.approx(1.25)


def test_rasterize_rejects_empty_input() -> None:
    with pytest.raises(ValueError):
        rasterize([], PaletteRegistry().get("temperature"))


def test_write_raster_round_trip(tmp_path: Path) -> None:
    palette = PaletteRegistry().get("temperature")
    out_path = write_raster(rasterize(_grid_samples(), palette), tmp_path / "arome_x.tif")

    with rasterio.open(out_path) as src:
        assert src.count == 5
        assert src.crs.to_epsg() == 4326
        assert (src.width, src.height) == (21, 21)
        values = src.read(VALUE_BAND)
        assert np.allclose(values, 12.5)
        alpha = src.read(4)
        assert np.all(alpha == 255)
        assert src.descriptions[VALUE_BAND - 1] == "value"
    assert not list(tmp_path.glob(".*.tmp"))
