from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from wxtiles.services.artifacts import TILE_EXTENSIONS, ProcessedArtifact
from wxtiles.services.mbtiles import MBTilesError, read_tile
from wxtiles.services.render_engine import RenderEngine, RenderError
from wxtiles.services.storage import find_published_artifact
from wxtiles.services.tile_cache import TileCache

logger = logging.getLogger(__name__)

MAX_ZOOM = 24
MEDIA_TYPES = {
    "png": "image/png",
    "pbf": "application/x-protobuf",
    "json": "application/json",
}


class TileNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class TileResult:
    content: bytes
    media_type: str
    cache_status: str
    artifact: ProcessedArtifact
    status_code: int = 200


def validate_tile_coords(z: int, x: int, y: int) -> None:
    if z < 0 or z > MAX_ZOOM:
        raise ValueError(f"Zoom out of range: {z}")
    limit = 1 << z
    if not (0 <= x < limit and 0 <= y < limit):
        raise ValueError(f"Tile out of range: z={z} x={x} y={y}")


class TileService:
    """Resolves published artifacts and materializes tiles through the cache."""

    def __init__(self, published_root: Path, engine: RenderEngine, cache: TileCache):
        self.published_root = published_root
        self.engine = engine
        self.cache = cache

    def resolve(self, model_id: str, layer: str, hour: str, ext: str) -> tuple[ProcessedArtifact, Path]:
        artifact_format = TILE_EXTENSIONS.get(ext)
        if artifact_format is None:
            raise ValueError(f"Unsupported tile extension: {ext}")
        found = find_published_artifact(self.published_root, model_id, layer, hour, artifact_format)
        if found is None:
            raise TileNotFoundError(f"No published artifact for model={model_id} layer={layer} hour={hour}")
        return found

    def get_tile(self, model_id: str, layer: str, hour: str, z: int, x: int, y: int, ext: str) -> TileResult:
        validate_tile_coords(z, x, y)
        artifact, path = self.resolve(model_id, layer, hour, ext)
        key = f"{artifact.file_name}/{z}/{x}/{y}.{ext}"
        media_type = MEDIA_TYPES[ext]

        cached = self.cache.get(key, path)
        if cached is not None:
            return TileResult(content=cached, media_type=media_type, cache_status="HIT", artifact=artifact)

        if ext == "pbf":
            try:
                content = read_tile(path, z, x, y)
            except MBTilesError as exc:
                raise RenderError(str(exc)) from exc
            if content is None:
                return TileResult(
                    content=b"", media_type=media_type, cache_status="MISS", artifact=artifact, status_code=204
                )
        elif ext == "json":
            value = self.engine.warp_to_value(path, z, x, y)
            content = json.dumps({"value": value}).encode()
        else:
            content = self.engine.warp_to_tile(path, z, x, y)

        self.cache.put(key, path, content)
        logger.debug("Tile rendered key=%s bytes=%d", key, len(content))
        return TileResult(content=content, media_type=media_type, cache_status="MISS", artifact=artifact)
