from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from wxtiles.services.discovery import format_run, parse_run
from wxtiles.services.storage import latest_published_run

router = APIRouter(tags=["metadata"])

_CACHE_METADATA = "public, max-age=30, stale-while-revalidate=120"
_CACHE_PALETTES = "public, max-age=3600"


@router.get("/metadata.json")
def get_metadata(request: Request, model: str | None = Query(default=None)) -> JSONResponse:
    if not model:
        raise HTTPException(status_code=400, detail="Missing model query parameter")
    settings = request.app.state.settings
    run = latest_published_run(settings.STORAGE_ROOT, model.strip().lower())
    if run is None:
        raise HTTPException(status_code=500, detail=f"No published run for model={model}")
    start = parse_run(run) + timedelta(hours=settings.FORECAST_START_HOUR)
    return JSONResponse(
        content={"run_hour": run, "start_hour": format_run(start)},
        headers={"Cache-Control": _CACHE_METADATA},
    )


@router.get("/palettes.json")
def get_palettes(request: Request) -> JSONResponse:
    return JSONResponse(
        content=request.app.state.palettes.as_json(),
        headers={"Cache-Control": _CACHE_PALETTES},
    )
