from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from wxtiles.services.precache import precache_artifact
from wxtiles.services.storage import PromotionResult

router = APIRouter(tags=["rollout"])
logger = logging.getLogger(__name__)


def _schedule_precache(request: Request, background_tasks: BackgroundTasks, model, result: PromotionResult) -> None:
    settings = request.app.state.settings
    bbox = model.bbox_wgs84
    if not settings.PRECACHE_ENABLED or bbox is None:
        return
    base_url = f"http://127.0.0.1:{settings.PORT}"
    for artifact in result.artifacts:
        background_tasks.add_task(
            precache_artifact,
            base_url,
            artifact,
            bbox,
            min_zoom=settings.PRECACHE_MIN_ZOOM,
            max_zoom=settings.PRECACHE_MAX_ZOOM,
        )


@router.post("/rollout", status_code=201)
async def post_rollout(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    receiver = request.app.state.rollout_receiver
    if not receiver.authorize(request.headers.get("Authorization")):
        logger.warning("Rollout rejected: bad credentials client=%s", request.client.host if request.client else "-")
        raise HTTPException(status_code=401, detail="Unauthorized")

    form = await request.form()

    upload = form.get("file")
    if not isinstance(upload, UploadFile):
        raise HTTPException(status_code=400, detail="Missing file part")
    fields = {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        model, package, artifact = receiver.parse_fields(fields)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        result = await run_in_threadpool(receiver.receive, model, package, artifact, upload.file)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except OSError as exc:
        logger.error("Rollout write failed artifact=%s: %s", artifact.file_name, exc)
        raise HTTPException(status_code=500, detail="Failed to store artifact") from exc
    finally:
        await upload.close()

    if result.promoted:
        _schedule_precache(request, background_tasks, model, result)

    return JSONResponse(
        status_code=201,
        content={
            "status": "promoted" if result.promoted else "staged",
            "artifact": artifact.file_name,
            "run": result.run,
            "promoted": result.promoted,
            "staged": result.staged,
            "expected": result.expected,
        },
    )
