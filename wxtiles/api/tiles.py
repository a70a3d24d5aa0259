from __future__ import annotations

import logging
import re

from fastapi import APIRouter, HTTPException, Query, Request, Response

from wxtiles.services.render_engine import RenderError
from wxtiles.services.tile_service import TileNotFoundError

router = APIRouter(tags=["tiles"])
logger = logging.getLogger(__name__)

SEGMENT_RE = re.compile(r"^[a-z0-9_-]+$")
HOUR_RE = re.compile(r"^\d{1,3}$")
TILE_EXTS = {"pbf", "png", "json"}
_CACHE_TILES = "public, max-age=3600"


def _ensure_segment(label: str, value: str) -> None:
    if not SEGMENT_RE.match(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label} segment")


@router.get("/tiles/{layer}/{hour}/{z}/{x}/{y}.{ext}")
def get_tile(
    request: Request,
    layer: str,
    hour: str,
    z: int,
    x: int,
    y: int,
    ext: str,
    model: str | None = Query(default=None),
) -> Response:
    settings = request.app.state.settings
    model_id = (model or settings.MODEL).lower()
    _ensure_segment("model", model_id)
    _ensure_segment("layer", layer)
    if not HOUR_RE.match(hour):
        raise HTTPException(status_code=400, detail="Invalid hour segment")
    if ext not in TILE_EXTS:
        raise HTTPException(status_code=400, detail=f"Unsupported tile extension: {ext}")

    try:
        result = request.app.state.tile_service.get_tile(model_id, layer, f"{int(hour):02d}", z, x, y, ext)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except RenderError as exc:
        logger.error("Tile render failed layer=%s hour=%s z=%s x=%s y=%s ext=%s: %s", layer, hour, z, x, y, ext, exc)
        raise HTTPException(status_code=500, detail="Tile render failed") from exc

    headers = {"X-Cache": result.cache_status, "Cache-Control": _CACHE_TILES}
    if result.status_code == 204:
        return Response(status_code=204, headers=headers)
    return Response(content=result.content, media_type=result.media_type, headers=headers)
