from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path

WORLD_BOUNDS_WGS84 = (-180.0, -85.0, 180.0, 85.0)

_SCHEMA = (
    "CREATE TABLE metadata (name TEXT, value TEXT)",
    "CREATE TABLE tiles (zoom_level INTEGER, tile_column INTEGER, tile_row INTEGER, tile_data BLOB)",
    "CREATE UNIQUE INDEX tile_index ON tiles (zoom_level, tile_column, tile_row)",
)


class MBTilesError(RuntimeError):
    pass


def flip_y(z: int, y: int) -> int:
    """XYZ row to TMS row (and back)."""
    return (1 << z) - 1 - y


def _connect_readonly(path: Path) -> sqlite3.Connection:
    return sqlite3.connect(f"file:{path}?mode=ro", uri=True)


def read_tile(path: Path, z: int, x: int, y: int) -> bytes | None:
    """Tile payload at XYZ coordinates, or None when the archive has no such tile.

    A missing file is None as well; an unreadable archive raises MBTilesError.
    """
    if not path.is_file():
        return None
    try:
        with closing(_connect_readonly(path)) as connection:
            row = connection.execute(
                "SELECT tile_data FROM tiles WHERE zoom_level = ? AND tile_column = ? AND tile_row = ? LIMIT 1",
                (z, x, flip_y(z, y)),
            ).fetchone()
    except sqlite3.Error as exc:
        raise MBTilesError(f"Unreadable tile archive {path.name}: {exc}") from exc
    return None if row is None else bytes(row[0])


def read_metadata(path: Path) -> dict[str, str]:
    try:
        with closing(_connect_readonly(path)) as connection:
            rows = connection.execute("SELECT name, value FROM metadata").fetchall()
    except sqlite3.Error as exc:
        raise MBTilesError(f"Unreadable tile archive {path.name}: {exc}") from exc
    return {str(name): str(value) for name, value in rows}


class MBTilesWriter:
    """Builds a fresh archive, committed only on a clean exit."""

    def __init__(
        self,
        path: Path,
        *,
        zoom_range: tuple[int, int],
        bounds_wgs84: tuple[float, float, float, float] = WORLD_BOUNDS_WGS84,
        tile_format: str = "pbf",
    ):
        self.path = path
        self.zoom_range = zoom_range
        self.bounds_wgs84 = bounds_wgs84
        self.tile_format = tile_format
        self._connection: sqlite3.Connection | None = None

    def __enter__(self) -> MBTilesWriter:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.unlink(missing_ok=True)
        self._connection = sqlite3.connect(str(self.path))
        for statement in _SCHEMA:
            self._connection.execute(statement)
        min_zoom, max_zoom = self.zoom_range
        self._connection.executemany(
            "INSERT INTO metadata (name, value) VALUES (?, ?)",
            [
                ("name", self.path.stem),
                ("format", self.tile_format),
                ("minzoom", str(min_zoom)),
                ("maxzoom", str(max_zoom)),
                ("bounds", ",".join(f"{value:.6f}" for value in self.bounds_wgs84)),
                ("type", "overlay"),
                ("version", "1"),
            ],
        )
        return self

    def add_tile(self, z: int, x: int, y: int, data: bytes) -> None:
        assert self._connection is not None
        self._connection.execute(
            "INSERT OR REPLACE INTO tiles (zoom_level, tile_column, tile_row, tile_data) VALUES (?, ?, ?, ?)",
            (z, x, flip_y(z, y), data),
        )

    def __exit__(self, exc_type, exc, tb) -> None:
        assert self._connection is not None
        try:
            if exc_type is None:
                self._connection.commit()
        finally:
            self._connection.close()
            self._connection = None
