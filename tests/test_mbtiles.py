from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from wxtiles.services.mbtiles import MBTilesError, MBTilesWriter, flip_y, read_metadata, read_tile


def test_flip_y_is_an_involution() -> None:
    assert flip_y(0, 0) == 0
    assert flip_y(3, 0) == 7
    assert flip_y(3, flip_y(3, 5)) == 5


def test_writer_round_trips_tiles_and_metadata(tmp_path: Path) -> None:
    path = tmp_path / "archive.mbtiles"
    with MBTilesWriter(path, zoom_range=(1, 3), bounds_wgs84=(-1.0, 40.0, 2.5, 45.0)) as writer:
        writer.add_tile(3, 4, 2, b"a")
        writer.add_tile(3, 4, 2, b"b")

    assert read_tile(path, 3, 4, 2) == b"b"
    assert read_tile(path, 3, 4, 3) is None
    metadata = read_metadata(path)
    assert metadata["format"] == "pbf"
    assert metadata["minzoom"] == "1"
    assert metadata["bounds"] == "-1.000000,40.000000,2.500000,45.000000"
    with sqlite3.connect(path) as connection:
        rows = connection.execute("SELECT tile_row FROM tiles").fetchall()
    assert rows == [(5,)]


def test_writer_replaces_existing_archive(tmp_path: Path) -> None:
    path = tmp_path / "archive.mbtiles"
    with MBTilesWriter(path, zoom_range=(0, 0)) as writer:
        writer.add_tile(0, 0, 0, b"old")
    with MBTilesWriter(path, zoom_range=(0, 0)) as writer:
        writer.add_tile(0, 0, 0, b"new")
    assert read_tile(path, 0, 0, 0) == b"new"


def test_writer_discards_tiles_on_error(tmp_path: Path) -> None:
    path = tmp_path / "archive.mbtiles"
    with pytest.raises(RuntimeError):
        with MBTilesWriter(path, zoom_range=(0, 0)) as writer:
            writer.add_tile(0, 0, 0, b"partial")
            raise RuntimeError("boom")
    assert read_tile(path, 0, 0, 0) is None


def test_read_tile_missing_file_is_none(tmp_path: Path) -> None:
    assert read_tile(tmp_path / "missing.mbtiles", 0, 0, 0) is None


def test_corrupt_archive_raises(tmp_path: Path) -> None:
    junk = tmp_path / "junk.mbtiles"
    junk.write_bytes(b"not a database")
    with pytest.raises(MBTilesError):
        read_tile(junk, 0, 0, 0)
    with pytest.raises(MBTilesError):
        read_metadata(junk)


def test_unique_index_exists_while_writing(tmp_path: Path) -> None:
    path = tmp_path / "archive.mbtiles"
    with MBTilesWriter(path, zoom_range=(0, 0)) as writer:
        for payload in (b"a", b"b", b"c"):
            writer.add_tile(0, 0, 0, payload)
    with sqlite3.connect(path) as connection:
        count = connection.execute("SELECT COUNT(*) FROM tiles").fetchone()[0]
        index = connection.execute("SELECT name FROM sqlite_master WHERE type = 'index'").fetchall()
    assert count == 1
    assert index == [("tile_index",)]
