from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import pytest

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from wxtiles.config import Settings  # noqa: E402


@pytest.fixture
def make_settings(tmp_path: Path):
    def _make(**overrides) -> Settings:
        base = Settings(
            STORAGE_ROOT=tmp_path / "storage",
            STAGING_ROOT=tmp_path / "staging",
            DOWNLOAD_ROOT=tmp_path / "downloads",
            FORECAST_START_HOUR=0,
            FORECAST_END_HOUR=1,
            ROLLOUT_SECRET="s3cret",
        )
        return replace(base, **overrides)

    return _make
