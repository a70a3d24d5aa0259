from __future__ import annotations

import logging
import socket
import uuid
from pathlib import Path
from typing import Iterator

import requests

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 1 << 20
NOT_READY_HTTP_STATUSES = frozenset({403, 404, 416})
NOT_READY_EXCEPTIONS = (EOFError, TimeoutError, socket.timeout, requests.exceptions.Timeout)
NOT_READY_MESSAGES = (
    "upstream not ready",
    "no valid message found",
    "end of resource reached when reading message",
    "premature end of file",
    "404 client error",
    "416 client error",
    "status code 404",
    "read timed out",
    "connect timeout",
)


class UpstreamNotReadyError(RuntimeError):
    pass


def _causes(exc: BaseException) -> Iterator[BaseException]:
    """The exception followed by its cause/context chain, each at most once."""
    visited: set[int] = set()
    node: BaseException | None = exc
    while node is not None and id(node) not in visited:
        visited.add(id(node))
        yield node
        node = node.__cause__ or node.__context__


def is_upstream_not_ready_error(exc: BaseException | str) -> bool:
    """True when a failure means the file is not published yet rather than broken."""
    if isinstance(exc, str):
        message = exc.lower()
        return any(pattern in message for pattern in NOT_READY_MESSAGES)

    for node in _causes(exc):
        if isinstance(node, (UpstreamNotReadyError,) + NOT_READY_EXCEPTIONS):
            return True
        status_code = getattr(getattr(node, "response", None), "status_code", None)
        if isinstance(status_code, int):
            return status_code in NOT_READY_HTTP_STATUSES
    return is_upstream_not_ready_error(str(exc))


class UpstreamClient:
    """HTTP access to the published model files."""

    def __init__(
        self,
        base_url: str,
        *,
        model_path: str = "arome/001",
        file_prefix: str = "arome__001",
        timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model_path = model_path
        self.file_prefix = file_prefix
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def source_url(self, run: str, package: str, hour: str) -> str:
        file_name = f"{self.file_prefix}__{package}__{hour}H__{run}.grib2"
        return f"{self.base_url}/{run}/{self.model_path}/{package}/{file_name}"

    def exists(self, url: str) -> bool:
        try:
            response = self.session.head(url, timeout=self.timeout_seconds, allow_redirects=True)
        except requests.RequestException as exc:
            logger.debug("Upstream probe failed url=%s error=%s", url, exc)
            return False
        return response.status_code == 200

    def download(self, run: str, package: str, hour: str, dest_dir: Path) -> Path:
        url = self.source_url(run, package, hour)
        dest_dir.mkdir(parents=True, exist_ok=True)
        out_path = dest_dir / url.rsplit("/", 1)[-1]
        tmp_path = out_path.with_name(f".{out_path.name}.{uuid.uuid4().hex}.part")
        try:
            with self.session.get(url, stream=True, timeout=self.timeout_seconds) as response:
                response.raise_for_status()
                with tmp_path.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                        if chunk:
                            handle.write(chunk)
            tmp_path.replace(out_path)
        except requests.RequestException as exc:
            if is_upstream_not_ready_error(exc):
                raise UpstreamNotReadyError(f"Upstream not ready: url={url} reason={exc}") from exc
            raise
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        logger.info("Downloaded run=%s package=%s hour=%s path=%s", run, package, hour, out_path)
        return out_path
