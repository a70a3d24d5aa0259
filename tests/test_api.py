from __future__ import annotations

import os
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from wxtiles.main import create_app
from wxtiles.services.artifacts import ProcessedArtifact
from wxtiles.services.mbtiles import MBTilesWriter
from wxtiles.services.render_engine import InMemoryRenderEngine
from wxtiles.services.tile_cache import TileCache

OLD_RUN = "2026-10-19T00:00:00Z"
RUN = "2026-10-19T03:00:00Z"


def _publish(root: Path, run: str, layer: str, hour: str, fmt: str = "raster") -> Path:
    path = ProcessedArtifact("arome", run, layer, hour, format=fmt).path_in(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "vector":
        with MBTilesWriter(path, zoom_range=(2, 2), bounds_wgs84=(-12.0, 37.0, 13.0, 56.0)) as writer:
            writer.add_tile(2, 1, 1, b"pbf-bytes")
    else:
        path.write_bytes(f"{run}-{layer}-{hour}".encode())
    return path


@pytest.fixture
def settings(make_settings):
    return make_settings(FORECAST_START_HOUR=3, FORECAST_END_HOUR=5)


@pytest.fixture
def engine() -> InMemoryRenderEngine:
    return InMemoryRenderEngine(value=12.5)


@pytest.fixture
def client(settings, engine) -> TestClient:
    app = create_app(settings, engine=engine, tile_cache=TileCache(60), start_sweeper=False)
    return TestClient(app)


def test_up(client: TestClient) -> None:
    response = client.get("/up")
    assert response.status_code == 200
    assert response.text == "OK"


def test_tile_missing_artifact_is_404(client: TestClient) -> None:
    assert client.get("/tiles/temperature/03/6/32/22.png").status_code == 404


def test_png_tile_miss_then_hit_then_invalidated(client: TestClient, settings, engine) -> None:
    path = _publish(settings.STORAGE_ROOT, RUN, "temperature", "03")

    first = client.get("/tiles/temperature/3/6/32/22.png")
    assert first.status_code == 200
    assert first.headers["content-type"] == "image/png"
    assert first.headers["x-cache"] == "MISS"
    assert "max-age" in first.headers["cache-control"]
    assert first.content == f"png:{path.name}:6/32/22".encode()

    second = client.get("/tiles/temperature/03/6/32/22.png")
    assert second.headers["x-cache"] == "HIT"
    assert second.content == first.content
    assert engine.tile_calls == 1

    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
    third = client.get("/tiles/temperature/03/6/32/22.png")
    assert third.headers["x-cache"] == "MISS"
    assert engine.tile_calls == 2


def test_tiles_use_newest_published_run(client: TestClient, settings) -> None:
    _publish(settings.STORAGE_ROOT, OLD_RUN, "temperature", "03")
    newest = _publish(settings.STORAGE_ROOT, RUN, "temperature", "03")
    response = client.get("/tiles/temperature/03/6/32/22.png")
    assert response.content.startswith(f"png:{newest.name}".encode())


def test_json_tile_reports_value(client: TestClient, settings) -> None:
    _publish(settings.STORAGE_ROOT, RUN, "wind_speed", "04")
    response = client.get("/tiles/wind_speed/04/6/32/22.json")
    assert response.status_code == 200
    assert response.json() == {"value": 12.5}


def test_json_tile_without_value(make_settings) -> None:
    settings = make_settings()
    app = create_app(settings, engine=InMemoryRenderEngine(value=None), start_sweeper=False)
    _publish(settings.STORAGE_ROOT, RUN, "wind_speed", "00")
    assert TestClient(app).get("/tiles/wind_speed/00/6/0/0.json").json() == {"value": None}


def test_pbf_tile_and_empty_tile(client: TestClient, settings) -> None:
    _publish(settings.STORAGE_ROOT, RUN, "cloud_cover", "03", fmt="vector")
    found = client.get("/tiles/cloud_cover/03/2/1/1.pbf")
    assert found.status_code == 200
    assert found.content == b"pbf-bytes"
    assert found.headers["content-type"] == "application/x-protobuf"

    assert client.get("/tiles/cloud_cover/03/2/0/0.pbf").status_code == 204
    # A raster artifact does not satisfy a vector request.
    assert client.get("/tiles/temperature/03/2/1/1.pbf").status_code == 404


def test_corrupt_vector_archive_is_500(client: TestClient, settings) -> None:
    path = ProcessedArtifact("arome", RUN, "cloud_cover", "03", format="vector").path_in(settings.STORAGE_ROOT)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"not a database")
    response = client.get("/tiles/cloud_cover/03/2/1/1.pbf")
    assert response.status_code == 500
    assert "x-cache" not in response.headers


@pytest.mark.parametrize(
    "url",
    [
        "/tiles/temperature/03/6/32/22.jpg",
        "/tiles/Temp!/03/6/32/22.png",
        "/tiles/temperature/3h/6/32/22.png",
        "/tiles/temperature/03/1/5/0.png",
        "/tiles/temperature/03/6/32/22.png?model=../x",
    ],
)
def test_bad_tile_requests_are_400(client: TestClient, url: str) -> None:
    assert client.get(url).status_code == 400


def test_render_failure_is_500(make_settings) -> None:
    settings = make_settings()
    engine = InMemoryRenderEngine(fail_with=RuntimeError("warp crashed"))
    _publish(settings.STORAGE_ROOT, RUN, "temperature", "00")
    client = TestClient(create_app(settings, engine=engine, start_sweeper=False))
    assert client.get("/tiles/temperature/00/6/32/22.png").status_code == 500


def test_metadata(client: TestClient, settings) -> None:
    assert client.get("/metadata.json").status_code == 400
    assert client.get("/metadata.json?model=arome").status_code == 500

    _publish(settings.STORAGE_ROOT, OLD_RUN, "temperature", "03")
    _publish(settings.STORAGE_ROOT, RUN, "humidity", "03")
    response = client.get("/metadata.json?model=arome")
    assert response.status_code == 200
    assert response.json() == {"run_hour": RUN, "start_hour": "2026-10-19T06:00:00Z"}


def test_palettes(client: TestClient) -> None:
    payload = client.get("/palettes.json").json()
    assert payload["temperature"]["unit"] == "°C"
    assert payload["temperature"]["colors"][0] == {"value": -40.0, "color": "#000080"}


def test_cors_allow_origin(client: TestClient, settings) -> None:
    response = client.get("/up", headers={"Origin": settings.CORS_ALLOW_ORIGIN})
    assert response.headers["access-control-allow-origin"] == settings.CORS_ALLOW_ORIGIN


def test_lifespan_starts_and_stops_sweeper(make_settings) -> None:
    app = create_app(make_settings(TILE_CACHE_SWEEP_SECONDS=1))
    with TestClient(app) as client:
        assert client.get("/up").status_code == 200
