from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Mapping

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from wxtiles.config import Settings, load_settings
from wxtiles.models import MODEL_REGISTRY, ModelSpec
from wxtiles.services.palette import PaletteRegistry
from wxtiles.services.render_engine import RenderEngine, TilerRenderEngine
from wxtiles.services.rollout import RolloutReceiver
from wxtiles.services.tile_cache import TileCache
from wxtiles.services.tile_service import TileService

from .api.metadata import router as metadata_router
from .api.rollout import router as rollout_router
from .api.tiles import router as tiles_router

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    engine: RenderEngine | None = None,
    tile_cache: TileCache | None = None,
    palettes: PaletteRegistry | None = None,
    models: Mapping[str, ModelSpec] | None = None,
    start_sweeper: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    tile_cache = tile_cache or TileCache(settings.TILE_CACHE_TTL_SECONDS, settings.TILE_CACHE_DIR)
    stop_event = threading.Event()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_sweeper:
            tile_cache.start_sweeper(settings.TILE_CACHE_SWEEP_SECONDS, stop_event)
        logger.info(
            "Server ready storage=%s staging=%s cache=%s",
            settings.STORAGE_ROOT,
            settings.STAGING_ROOT,
            settings.TILE_CACHE_DIR or "memory",
        )
        try:
            yield
        finally:
            stop_event.set()

    app = FastAPI(title="wxtiles", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.CORS_ALLOW_ORIGIN],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.palettes = palettes or PaletteRegistry()
    app.state.tile_cache = tile_cache
    app.state.tile_service = TileService(settings.STORAGE_ROOT, engine or TilerRenderEngine(), tile_cache)
    app.state.rollout_receiver = RolloutReceiver(settings, models if models is not None else MODEL_REGISTRY)

    app.include_router(tiles_router)
    app.include_router(metadata_router)
    app.include_router(rollout_router)

    @app.get("/up", response_class=PlainTextResponse)
    def up() -> str:
        return "OK"

    return app


def run() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.PORT)


app = create_app()
