from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from wxtiles.models import MODEL_REGISTRY

DEFAULT_UPSTREAM_BASE_URL = "https://object.files.data.gouv.fr/meteofrance-pnt/pnt"


class ConfigError(RuntimeError):
    pass


def _env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name: str, *, default: int, minimum: int | None = None, maximum: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw.strip())
        except ValueError:
            value = default
    if minimum is not None and value < minimum:
        value = minimum
    if maximum is not None and value > maximum:
        value = maximum
    return value


def _env_path(name: str, default: str) -> Path:
    return Path(os.environ.get(name, default)).resolve()


def _env_str(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


@dataclass(frozen=True)
class Settings:
    STORAGE_ROOT: Path
    STAGING_ROOT: Path
    DOWNLOAD_ROOT: Path
    MODEL: str = "arome"
    FORECAST_START_HOUR: int = 0
    FORECAST_END_HOUR: int = 51
    ROLLOUT_SECRET: str = ""
    ROLLOUT_TARGET_HOST: str | None = None
    PORT: int = 8080
    DEBUG: bool = False
    CORS_ALLOW_ORIGIN: str = "http://localhost:3000"
    UPSTREAM_BASE_URL: str = DEFAULT_UPSTREAM_BASE_URL
    HTTP_TIMEOUT_SECONDS: int = 30
    HOUR_WORKERS: int = 4
    TILE_CACHE_TTL_SECONDS: int = 1800
    TILE_CACHE_DIR: Path | None = None
    TILE_CACHE_SWEEP_SECONDS: int = 300
    PRECACHE_ENABLED: bool = False
    PRECACHE_MIN_ZOOM: int = 5
    PRECACHE_MAX_ZOOM: int = 6
    VECTOR_MIN_ZOOM: int = 0
    VECTOR_MAX_ZOOM: int = 10

    @property
    def forecast_hours(self) -> list[str]:
        return [f"{hour:02d}" for hour in range(self.FORECAST_START_HOUR, self.FORECAST_END_HOUR + 1)]

    @property
    def rollout_mode(self) -> str:
        return "remote" if self.ROLLOUT_TARGET_HOST else "local"

    def validate(self) -> None:
        if self.FORECAST_END_HOUR < self.FORECAST_START_HOUR:
            raise ConfigError(
                f"FORECAST_END_HOUR={self.FORECAST_END_HOUR} is before "
                f"FORECAST_START_HOUR={self.FORECAST_START_HOUR}"
            )
        if self.MODEL not in MODEL_REGISTRY:
            raise ConfigError(f"Unknown model: {self.MODEL}")
        if self.ROLLOUT_TARGET_HOST and not self.ROLLOUT_SECRET:
            raise ConfigError("ROLLOUT_SECRET is required when ROLLOUT_TARGET_HOST is set")


def load_settings() -> Settings:
    start_hour = _env_int("FORECAST_START_HOUR", default=0, minimum=0)
    end_hour = _env_int("FORECAST_END_HOUR", default=51, minimum=0)
    cache_dir = _env_str("TILE_CACHE_DIR")
    target_host = _env_str("ROLLOUT_TARGET_HOST").rstrip("/")
    return Settings(
        STORAGE_ROOT=_env_path("STORAGE_ROOT", "/var/lib/wxtiles/storage"),
        STAGING_ROOT=_env_path("STAGING_ROOT", "/var/lib/wxtiles/staging"),
        DOWNLOAD_ROOT=_env_path("DOWNLOAD_ROOT", "/var/lib/wxtiles/downloads"),
        MODEL=_env_str("MODEL", "arome").lower() or "arome",
        FORECAST_START_HOUR=start_hour,
        FORECAST_END_HOUR=end_hour,
        ROLLOUT_SECRET=_env_str("ROLLOUT_SECRET"),
        ROLLOUT_TARGET_HOST=target_host or None,
        PORT=_env_int("PORT", default=8080, minimum=1, maximum=65535),
        DEBUG=_env_bool("DEBUG", default=False),
        CORS_ALLOW_ORIGIN=_env_str("HOST_ORIGIN", "http://localhost:3000") or "http://localhost:3000",
        UPSTREAM_BASE_URL=_env_str("UPSTREAM_BASE_URL", DEFAULT_UPSTREAM_BASE_URL).rstrip("/"),
        HTTP_TIMEOUT_SECONDS=_env_int("HTTP_TIMEOUT_SECONDS", default=30, minimum=1),
        HOUR_WORKERS=_env_int("HOUR_WORKERS", default=4, minimum=1, maximum=16),
        TILE_CACHE_TTL_SECONDS=_env_int("TILE_CACHE_TTL_SECONDS", default=1800, minimum=1),
        TILE_CACHE_DIR=Path(cache_dir).resolve() if cache_dir else None,
        TILE_CACHE_SWEEP_SECONDS=_env_int("TILE_CACHE_SWEEP_SECONDS", default=300, minimum=1),
        PRECACHE_ENABLED=_env_bool("PRECACHE_ENABLED", default=False),
        PRECACHE_MIN_ZOOM=_env_int("PRECACHE_MIN_ZOOM", default=5, minimum=0, maximum=22),
        PRECACHE_MAX_ZOOM=_env_int("PRECACHE_MAX_ZOOM", default=6, minimum=0, maximum=22),
        VECTOR_MIN_ZOOM=_env_int("VECTOR_MIN_ZOOM", default=0, minimum=0, maximum=22),
        VECTOR_MAX_ZOOM=_env_int("VECTOR_MAX_ZOOM", default=10, minimum=0, maximum=22),
    )
