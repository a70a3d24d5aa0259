from __future__ import annotations

import io
import json
import shutil
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from wxtiles.services.geometry import GeoPoint
from wxtiles.services.mbtiles import read_metadata, read_tile
from wxtiles.services.palette import PaletteRegistry
from wxtiles.services.render_engine import (
    InMemoryRenderEngine,
    RenderError,
    TilerRenderEngine,
    empty_tile_png,
    require_tool,
    to_feature_collection,
)


def _samples(value: float = 12.5) -> list[GeoPoint]:
    return [
        GeoPoint(round(46.0 + row * 0.1, 3), round(2.0 + col * 0.1, 3), value)
        for row in range(21)
        for col in range(21)
    ]


@pytest.fixture
def raster_path(tmp_path: Path) -> Path:
    engine = TilerRenderEngine()
    return engine.build_raster(_samples(), PaletteRegistry().get("temperature"), tmp_path / "arome_r_temperature_00.tif")


def test_warp_to_tile_renders_png(raster_path: Path) -> None:
    content = TilerRenderEngine().warp_to_tile(raster_path, 6, 32, 22)
    image = Image.open(io.BytesIO(content))
    assert image.size == (256, 256)
    assert image.mode == "RGBA"
    alpha = np.asarray(image)[..., 3]
    assert alpha.max() > 200
    assert alpha.min() == 0


def test_warp_to_tile_outside_bounds_is_transparent(raster_path: Path) -> None:
    content = TilerRenderEngine().warp_to_tile(raster_path, 6, 0, 0)
    assert content == empty_tile_png()
    assert np.asarray(Image.open(io.BytesIO(content)))[..., 3].max() == 0


def test_warp_to_value_reads_value_band(raster_path: Path) -> None:
    engine = TilerRenderEngine()
    assert engine.warp_to_value(raster_path, 6, 32, 22) == pytest.approx(12.5)
    assert engine.warp_to_value(raster_path, 6, 0, 0) is None


def test_warp_to_tile_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(RenderError):
        TilerRenderEngine().warp_to_tile(tmp_path / "missing.tif", 6, 32, 22)


def test_require_tool_reports_missing_binary() -> None:
    with pytest.raises(RenderError, match="Missing"):
        require_tool("definitely-not-a-real-binary-wxtiles")


@pytest.mark.skipif(shutil.which("tippecanoe") is None, reason="tippecanoe not installed")
def test_build_vector_tiles_with_tippecanoe(tmp_path: Path) -> None:
    out_path = TilerRenderEngine().build_vector_tiles(
        to_feature_collection(_samples()), tmp_path / "arome_r_temperature_00.mbtiles", (0, 4), "temperature"
    )
    assert out_path.is_file()
    assert read_metadata(out_path)["maxzoom"] == "4"


def test_feature_collection_shape() -> None:
    collection = to_feature_collection([GeoPoint(48.0, 2.0, 3.5)])
    feature = collection["features"][0]
    assert feature["geometry"] == {"type": "Point", "coordinates": [2.0, 48.0]}
    assert feature["properties"] == {"value": 3.5}


def test_in_memory_engine(tmp_path: Path) -> None:
    engine = InMemoryRenderEngine(value=4.0)
    raster = engine.build_raster(_samples(), PaletteRegistry().get("temperature"), tmp_path / "a.tif")
    assert json.loads(raster.read_text())["palette"] == "temperature"
    assert engine.warp_to_tile(raster, 1, 0, 1) == b"png:a.tif:1/0/1"
    assert engine.warp_to_value(raster, 1, 0, 1) == 4.0

    archive = engine.build_vector_tiles(to_feature_collection(_samples()), tmp_path / "a.mbtiles", (2, 5), "wind")
    assert json.loads(read_tile(archive, 2, 0, 0))["layer"] == "wind"
    assert engine.raster_builds == [raster]
    assert engine.vector_builds == [archive]

    failing = InMemoryRenderEngine(fail_with=OSError("boom"))
    with pytest.raises(RenderError, match="boom"):
        failing.warp_to_tile(raster, 1, 0, 0)
