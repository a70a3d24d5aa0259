from __future__ import annotations

from pathlib import Path

import pytest

from wxtiles.config import ConfigError, load_settings


def test_defaults(monkeypatch) -> None:
    for name in ("FORECAST_START_HOUR", "FORECAST_END_HOUR", "ROLLOUT_TARGET_HOST", "ROLLOUT_SECRET", "HOST_ORIGIN"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.MODEL == "arome"
    assert settings.forecast_hours[0] == "00"
    assert settings.forecast_hours[-1] == "51"
    assert settings.rollout_mode == "local"
    settings.validate()


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("FORECAST_START_HOUR", "2")
    monkeypatch.setenv("FORECAST_END_HOUR", "4")
    monkeypatch.setenv("ROLLOUT_TARGET_HOST", "https://tiles.example.test/")
    monkeypatch.setenv("ROLLOUT_SECRET", "abc")
    monkeypatch.setenv("HOST_ORIGIN", "https://maps.example.test")
    monkeypatch.setenv("DEBUG", "yes")
    monkeypatch.setenv("PORT", "not-a-number")
    monkeypatch.setenv("TILE_CACHE_DIR", str(tmp_path / "cache"))

    settings = load_settings()
    assert settings.STORAGE_ROOT == (tmp_path / "storage").resolve()
    assert settings.forecast_hours == ["02", "03", "04"]
    assert settings.ROLLOUT_TARGET_HOST == "https://tiles.example.test"
    assert settings.rollout_mode == "remote"
    assert settings.CORS_ALLOW_ORIGIN == "https://maps.example.test"
    assert settings.DEBUG is True
    assert settings.PORT == 8080
    assert settings.TILE_CACHE_DIR == (tmp_path / "cache").resolve()
    settings.validate()


def test_validate_rejects_bad_configuration(make_settings) -> None:
    with pytest.raises(ConfigError, match="FORECAST_END_HOUR"):
        make_settings(FORECAST_START_HOUR=6, FORECAST_END_HOUR=3).validate()
    with pytest.raises(ConfigError, match="Unknown model"):
        make_settings(MODEL="gfs").validate()
    with pytest.raises(ConfigError, match="ROLLOUT_SECRET"):
        make_settings(ROLLOUT_TARGET_HOST="https://x.test", ROLLOUT_SECRET="").validate()
