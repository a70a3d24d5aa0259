from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
import uuid
from io import BytesIO
from pathlib import Path
from typing import Any, Iterable, Protocol

import numpy as np
from PIL import Image
from rasterio.errors import RasterioError
from rio_tiler.errors import PointOutsideBounds, RioTilerError, TileOutsideBounds
from rio_tiler.io import Reader

from wxtiles.services.geometry import TILE_SIZE, GeoPoint, tile_center_lonlat
from wxtiles.services.mbtiles import MBTilesWriter
from wxtiles.services.palette import Palette
from wxtiles.services.raster import COLOR_BANDS, VALUE_BAND, rasterize, write_raster

logger = logging.getLogger(__name__)

NEAREST_RESAMPLING_MIN_ZOOM = 11


class RenderError(RuntimeError):
    pass


class RenderEngine(Protocol):
    def build_raster(self, samples: Iterable[GeoPoint], palette: Palette, out_path: Path) -> Path: ...

    def warp_to_tile(self, raster_path: Path, z: int, x: int, y: int) -> bytes: ...

    def warp_to_value(self, raster_path: Path, z: int, x: int, y: int) -> float | None: ...

    def build_vector_tiles(
        self,
        feature_collection: dict[str, Any],
        out_path: Path,
        zoom_range: tuple[int, int],
        layer_name: str,
    ) -> Path: ...


def to_feature_collection(samples: Iterable[GeoPoint]) -> dict[str, Any]:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [point.lon, point.lat]},
                "properties": {"value": point.value},
            }
            for point in samples
        ],
    }


def require_tool(cmd_name: str) -> None:
    if shutil.which(cmd_name) is None:
        raise RenderError(f"Missing '{cmd_name}'. Install it and ensure it is on PATH.")


def run_cmd(args: list[str]) -> None:
    result = subprocess.run(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    if result.returncode != 0:
        stderr = result.stderr.strip()
        raise RenderError(f"Command failed ({' '.join(args)}): {stderr or 'unknown error'}")


def encode_png(rgba: np.ndarray) -> bytes:
    image = Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8))
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def empty_tile_png(size: int = TILE_SIZE) -> bytes:
    return encode_png(np.zeros((size, size, 4), dtype=np.uint8))


def _image_data_to_rgba(image_data) -> np.ndarray:
    data = np.asarray(image_data.data)
    if data.ndim != 3 or data.shape[0] != 4:
        raise RenderError(f"Unexpected tile data shape: {data.shape}")
    rgba = np.moveaxis(np.clip(np.nan_to_num(data, nan=0.0), 0, 255), 0, -1).astype(np.uint8)
    mask = getattr(image_data, "mask", None)
    if mask is not None:
        rgba[..., 3] = np.where(np.asarray(mask) > 0, rgba[..., 3], 0).astype(np.uint8)
    return rgba


class TilerRenderEngine:
    """Writes GeoTIFF artifacts with rasterio, reads tiles with rio-tiler and
    builds vector archives with tippecanoe."""

    def __init__(self, *, tile_size: int = TILE_SIZE, tippecanoe_bin: str = "tippecanoe"):
        self.tile_size = tile_size
        self.tippecanoe_bin = tippecanoe_bin

    def build_raster(self, samples: Iterable[GeoPoint], palette: Palette, out_path: Path) -> Path:
        try:
            return write_raster(rasterize(samples, palette), out_path)
        except (ValueError, RasterioError, OSError) as exc:
            raise RenderError(f"Raster build failed for {out_path.name}: {exc}") from exc

    def warp_to_tile(self, raster_path: Path, z: int, x: int, y: int) -> bytes:
        resampling = "nearest" if z >= NEAREST_RESAMPLING_MIN_ZOOM else "cubic"
        try:
            with Reader(str(raster_path)) as src:
                image_data = src.tile(
                    x,
                    y,
                    z,
                    tilesize=self.tile_size,
                    indexes=COLOR_BANDS,
                    resampling_method=resampling,
                )
        except TileOutsideBounds:
            return empty_tile_png(self.tile_size)
        except (RioTilerError, RasterioError, OSError) as exc:
            raise RenderError(f"Tile render failed for {raster_path.name} z={z} x={x} y={y}: {exc}") from exc
        return encode_png(_image_data_to_rgba(image_data))

    def warp_to_value(self, raster_path: Path, z: int, x: int, y: int) -> float | None:
        lon, lat = tile_center_lonlat(x, y, z)
        try:
            with Reader(str(raster_path)) as src:
                point = src.point(lon, lat, indexes=VALUE_BAND)
        except PointOutsideBounds:
            return None
        except (RioTilerError, RasterioError, OSError) as exc:
            raise RenderError(f"Value lookup failed for {raster_path.name} z={z} x={x} y={y}: {exc}") from exc

        mask = getattr(point, "mask", None)
        if mask is not None and not np.all(np.asarray(mask)):
            return None
        value = float(np.asarray(point.data, dtype=np.float64).ravel()[0])
        if not np.isfinite(value):
            return None
        return value

    def build_vector_tiles(
        self,
        feature_collection: dict[str, Any],
        out_path: Path,
        zoom_range: tuple[int, int],
        layer_name: str,
    ) -> Path:
        require_tool(self.tippecanoe_bin)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex
        geojson_path = out_path.with_name(f".{out_path.stem}.{token}.geojson")
        tmp_path = out_path.with_name(f".{out_path.stem}.{token}.mbtiles")
        min_zoom, max_zoom = zoom_range
        try:
            geojson_path.write_text(json.dumps(feature_collection))
            run_cmd(
                [
                    self.tippecanoe_bin,
                    "-o",
                    str(tmp_path),
                    "-Z",
                    str(min_zoom),
                    "-z",
                    str(max_zoom),
                    "-l",
                    layer_name,
                    "--force",
                    "--drop-densest-as-needed",
                    "--quiet",
                    str(geojson_path),
                ]
            )
            tmp_path.replace(out_path)
        except OSError as exc:
            raise RenderError(f"Vector tile build failed for {out_path.name}: {exc}") from exc
        finally:
            for temp in (geojson_path, tmp_path):
                if temp.exists():
                    temp.unlink()
        return out_path


class InMemoryRenderEngine:
    """Deterministic engine for tests: no GDAL, no external binaries."""

    def __init__(self, *, value: float | None = 12.5, fail_with: Exception | None = None):
        self.value = value
        self.fail_with = fail_with
        self._lock = threading.Lock()
        self.raster_builds: list[Path] = []
        self.vector_builds: list[Path] = []
        self.tile_calls = 0
        self.value_calls = 0

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise RenderError(str(self.fail_with)) from self.fail_with

    def build_raster(self, samples: Iterable[GeoPoint], palette: Palette, out_path: Path) -> Path:
        self._maybe_fail()
        points = list(samples)
        if not points:
            raise RenderError(f"Raster build failed for {out_path.name}: no samples")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(
            json.dumps({"palette": palette.name, "samples": [list(point) for point in points]})
        )
        with self._lock:
            self.raster_builds.append(out_path)
        return out_path

    def warp_to_tile(self, raster_path: Path, z: int, x: int, y: int) -> bytes:
        self._maybe_fail()
        with self._lock:
            self.tile_calls += 1
        return f"png:{raster_path.name}:{z}/{x}/{y}".encode()

    def warp_to_value(self, raster_path: Path, z: int, x: int, y: int) -> float | None:
        self._maybe_fail()
        with self._lock:
            self.value_calls += 1
        return self.value

    def build_vector_tiles(
        self,
        feature_collection: dict[str, Any],
        out_path: Path,
        zoom_range: tuple[int, int],
        layer_name: str,
    ) -> Path:
        self._maybe_fail()
        min_zoom = zoom_range[0]
        payload = json.dumps({"layer": layer_name, "features": len(feature_collection["features"])}).encode()
        with MBTilesWriter(out_path, zoom_range=zoom_range) as writer:
            writer.add_tile(min_zoom, 0, 0, payload)
        with self._lock:
            self.vector_builds.append(out_path)
        return out_path
