from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

DATA_SUFFIX = ".tile"
META_SUFFIX = ".meta.json"


def file_hash(path: Path) -> str | None:
    """Fingerprint of a backing file: path, modification time and size."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    token = f"{path.resolve()}:{stat.st_mtime_ns}:{stat.st_size}"
    return hashlib.md5(token.encode()).hexdigest()


@dataclass
class CacheEntry:
    data: bytes
    file_hash: str
    created_at: float


class TileCache:
    """Rendered-tile cache invalidated by TTL and by backing-file fingerprint.

    Entries live in memory unless a directory is given, in which case each
    entry is a ``sha256(key).tile`` file with a ``.meta.json`` companion.
    """

    def __init__(
        self,
        ttl_seconds: float,
        directory: Path | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self.directory = directory
        self.clock = clock or time.time
        self._lock = threading.RLock()
        self._entries: dict[str, CacheEntry] = {}
        if directory is not None:
            directory.mkdir(parents=True, exist_ok=True)

    def _expired(self, created_at: float, now: float) -> bool:
        return now - created_at >= self.ttl_seconds

    def _paths(self, key: str) -> tuple[Path, Path]:
        assert self.directory is not None
        digest = hashlib.sha256(key.encode()).hexdigest()
        return self.directory / f"{digest}{DATA_SUFFIX}", self.directory / f"{digest}{META_SUFFIX}"

    def get(self, key: str, backing_path: Path) -> bytes | None:
        current_hash = file_hash(backing_path)
        now = self.clock()
        with self._lock:
            entry = self._load(key)
            if entry is None:
                return None
            if current_hash is None or entry.file_hash != current_hash or self._expired(entry.created_at, now):
                logger.debug("Tile cache invalidated key=%s", key)
                self._drop(key)
                return None
            return entry.data

    def put(self, key: str, backing_path: Path, data: bytes) -> None:
        current_hash = file_hash(backing_path)
        if current_hash is None:
            return
        entry = CacheEntry(data=data, file_hash=current_hash, created_at=self.clock())
        with self._lock:
            self._store(key, entry)

    def sweep(self, now: float | None = None) -> int:
        """Remove entries older than the TTL; returns the number removed."""
        now = self.clock() if now is None else now
        removed = 0
        with self._lock:
            if self.directory is None:
                for key in [key for key, entry in self._entries.items() if self._expired(entry.created_at, now)]:
                    del self._entries[key]
                    removed += 1
            else:
                for meta_path in self.directory.glob(f"*{META_SUFFIX}"):
                    meta = _read_meta(meta_path)
                    if meta is not None and not self._expired(float(meta["created_at"]), now):
                        continue
                    data_path = meta_path.with_name(meta_path.name[: -len(META_SUFFIX)] + DATA_SUFFIX)
                    data_path.unlink(missing_ok=True)
                    meta_path.unlink(missing_ok=True)
                    removed += 1
        if removed:
            logger.info("Tile cache sweep removed=%d", removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            if self.directory is not None:
                for path in self.directory.iterdir():
                    if path.name.endswith((DATA_SUFFIX, META_SUFFIX)):
                        path.unlink(missing_ok=True)

    def start_sweeper(self, interval_seconds: float, stop_event: threading.Event) -> threading.Thread:
        def _loop() -> None:
            while not stop_event.wait(interval_seconds):
                try:
                    self.sweep()
                except OSError as exc:
                    logger.warning("Tile cache sweep failed: %s", exc)

        thread = threading.Thread(target=_loop, name="tile-cache-sweeper", daemon=True)
        thread.start()
        return thread

    def _load(self, key: str) -> CacheEntry | None:
        if self.directory is None:
            return self._entries.get(key)
        data_path, meta_path = self._paths(key)
        meta = _read_meta(meta_path)
        if meta is None:
            return None
        try:
            data = data_path.read_bytes()
        except FileNotFoundError:
            return None
        return CacheEntry(data=data, file_hash=str(meta["file_hash"]), created_at=float(meta["created_at"]))

    def _store(self, key: str, entry: CacheEntry) -> None:
        if self.directory is None:
            self._entries[key] = entry
            return
        data_path, meta_path = self._paths(key)
        token = uuid.uuid4().hex
        tmp_data = data_path.with_name(f".{data_path.name}.{token}.tmp")
        tmp_meta = meta_path.with_name(f".{meta_path.name}.{token}.tmp")
        tmp_data.write_bytes(entry.data)
        tmp_meta.write_text(json.dumps({"file_hash": entry.file_hash, "created_at": entry.created_at}))
        tmp_data.replace(data_path)
        tmp_meta.replace(meta_path)

    def _drop(self, key: str) -> None:
        if self.directory is None:
            self._entries.pop(key, None)
            return
        for path in self._paths(key):
            path.unlink(missing_ok=True)


def _read_meta(path: Path) -> dict | None:
    try:
        meta = json.loads(path.read_text())
    except (OSError, ValueError):
        return None
    if not isinstance(meta, dict) or "file_hash" not in meta or "created_at" not in meta:
        return None
    return meta
