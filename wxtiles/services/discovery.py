from __future__ import annotations

import concurrent.futures
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

logger = logging.getLogger(__name__)

RUN_HOURS = (21, 18, 15, 12, 9, 6, 3, 0)
RUN_ID_FORMAT = "%Y-%m-%dT%H:00:00Z"
RUN_ID_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T(?P<hour>\d{2}):00:00Z$")
MAX_PROBE_WORKERS = 16


def format_run(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(RUN_ID_FORMAT)


def parse_run(run: str) -> datetime:
    if RUN_ID_RE.match(run) is None:
        raise ValueError(f"Invalid run id: {run}")
    return datetime.strptime(run, RUN_ID_FORMAT).replace(tzinfo=timezone.utc)


def is_valid_run(run: str) -> bool:
    try:
        parse_run(run)
    except ValueError:
        return False
    return True


def candidate_runs(now: datetime | None = None) -> list[str]:
    """Runs to probe, newest first: today's already-started cycles, then all of yesterday's."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    yesterday = today - timedelta(days=1)
    runs = [format_run(today.replace(hour=hour)) for hour in RUN_HOURS if hour <= now.hour]
    runs.extend(format_run(yesterday.replace(hour=hour)) for hour in RUN_HOURS)
    return runs


class RunOracle:
    """Finds the newest run whose every required file is published upstream."""

    def __init__(
        self,
        probe: Callable[[str], bool],
        url_for: Callable[[str, str, str], str],
        hours: Sequence[str],
        *,
        max_workers: int = MAX_PROBE_WORKERS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.probe = probe
        self.url_for = url_for
        self.hours = list(hours)
        self.max_workers = max_workers
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def is_complete(self, run: str, package: str) -> bool:
        urls = [self.url_for(run, package, hour) for hour in self.hours]
        if not urls:
            return False
        with concurrent.futures.ThreadPoolExecutor(max_workers=min(self.max_workers, len(urls))) as executor:
            futures = [executor.submit(self._safe_probe, url) for url in urls]
            complete = True
            for future in concurrent.futures.as_completed(futures):
                if not future.result():
                    complete = False
                    for pending in futures:
                        pending.cancel()
                    break
        return complete

    def _safe_probe(self, url: str) -> bool:
        try:
            return bool(self.probe(url))
        except Exception as exc:
            logger.debug("Probe raised url=%s error=%s", url, exc)
            return False

    def discover(self, package: str, candidates: Sequence[str] | None = None) -> str | None:
        runs = list(candidates) if candidates is not None else candidate_runs(self.clock())
        for run in runs:
            if self.is_complete(run, package):
                logger.info("Latest complete run package=%s run=%s", package, run)
                return run
            logger.debug("Run incomplete upstream package=%s run=%s", package, run)
        logger.info("No complete run available package=%s candidates=%d", package, len(runs))
        return None
