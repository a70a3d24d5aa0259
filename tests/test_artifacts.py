from __future__ import annotations

from pathlib import Path

import pytest

from wxtiles.services.artifacts import ProcessedArtifact, list_artifacts

RUN = "2026-10-19T03:00:00Z"


def test_file_name_round_trip_with_underscored_layer() -> None:
    artifact = ProcessedArtifact("arome", RUN, "feels_like_temperature", "07")
    assert artifact.file_name == "arome_2026-10-19T03:00:00Z_feels_like_temperature_07.tif"
    assert ProcessedArtifact.parse(artifact.file_name) == artifact

    vector = ProcessedArtifact("arome", RUN, "wind_speed", "12", format="vector")
    assert vector.file_name.endswith("_wind_speed_12.mbtiles")
    assert ProcessedArtifact.parse(vector.file_name) == vector


@pytest.mark.parametrize(
    "name",
    ["notes.txt", "arome_2026-10-19_temperature_07.tif", ".arome_2026-10-19T03:00:00Z_t_07.tif.abc.tmp"],
)
def test_parse_rejects_foreign_files(name: str) -> None:
    assert ProcessedArtifact.parse(name) is None


def test_unknown_format_is_rejected() -> None:
    with pytest.raises(ValueError):
        ProcessedArtifact("arome", RUN, "temperature", "00", format="jpeg")


def test_list_artifacts_filters_and_sorts(tmp_path: Path) -> None:
    names = [
        "arome_2026-10-19T03:00:00Z_temperature_01.tif",
        "arome_2026-10-19T00:00:00Z_temperature_00.tif",
        "other_2026-10-19T00:00:00Z_temperature_00.tif",
        "README.md",
    ]
    for name in names:
        (tmp_path / name).write_bytes(b"x")
    (tmp_path / "subdir").mkdir()

    found = list_artifacts(tmp_path, model="arome")
    assert [artifact.file_name for artifact, _ in found] == [names[1], names[0]]
    assert len(list_artifacts(tmp_path)) == 3
    assert list_artifacts(tmp_path / "missing") == []
