from __future__ import annotations

import logging
from typing import Iterator

import requests

from wxtiles.services.artifacts import ProcessedArtifact
from wxtiles.services.geometry import lonlat_to_tile

logger = logging.getLogger(__name__)

PRECACHE_TIMEOUT_SECONDS = 30


def tile_coordinates(
    bbox_wgs84: tuple[float, float, float, float],
    min_zoom: int,
    max_zoom: int,
) -> Iterator[tuple[int, int, int]]:
    """Every (z, x, y) tile covering the bbox, lowest zoom first."""
    min_lon, min_lat, max_lon, max_lat = bbox_wgs84
    for z in range(min_zoom, max_zoom + 1):
        x0, y0 = lonlat_to_tile(min_lon, max_lat, z)
        x1, y1 = lonlat_to_tile(max_lon, min_lat, z)
        for x in range(x0, x1 + 1):
            for y in range(y0, y1 + 1):
                yield z, x, y


def precache_artifact(
    base_url: str,
    artifact: ProcessedArtifact,
    bbox_wgs84: tuple[float, float, float, float],
    *,
    min_zoom: int,
    max_zoom: int,
    session: requests.Session | None = None,
) -> int:
    """Request every PNG tile of a raster artifact so the cache is warm; returns tiles fetched."""
    if artifact.format != "raster":
        return 0
    session = session or requests.Session()
    base_url = base_url.rstrip("/")
    fetched = 0
    for z, x, y in tile_coordinates(bbox_wgs84, min_zoom, max_zoom):
        url = f"{base_url}/tiles/{artifact.layer}/{artifact.hour}/{z}/{x}/{y}.png"
        try:
            response = session.get(url, params={"model": artifact.model}, timeout=PRECACHE_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            logger.warning("Precache request failed url=%s error=%s", url, exc)
            continue
        if response.status_code == 200:
            fetched += 1
        else:
            logger.debug("Precache status=%s url=%s", response.status_code, url)
    logger.info("Precached artifact=%s tiles=%d", artifact.file_name, fetched)
    return fetched
