"""Periodic reaping of stale jobs and expired jobs/cache rows."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta

from plan_dispatch.dispatcher.cache import ResultCache
from plan_dispatch.dispatcher.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MaintenanceSummary:
    """Rows touched by one maintenance pass."""

    stale_jobs_failed: int = 0
    expired_jobs_deleted: int = 0
    expired_cache_deleted: int = 0


class MaintenanceRunner:
    """Runs the sweeps once, or periodically on a daemon thread."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        cache: ResultCache,
        job_timeout: timedelta,
        interval_seconds: float = 60.0,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.job_timeout = job_timeout
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> MaintenanceSummary:
        summary = MaintenanceSummary(
            stale_jobs_failed=self.repository.sweep_stale(timeout=self.job_timeout),
            expired_jobs_deleted=self.repository.sweep_expired(),
            expired_cache_deleted=self.cache.sweep_expired(),
        )
        logger.debug(
            "Maintenance pass: stale=%s expired_jobs=%s expired_cache=%s",
            summary.stale_jobs_failed,
            summary.expired_jobs_deleted,
            summary.expired_cache_deleted,
        )
        return summary

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name="plan-dispatch-maintenance",
        )
        self._thread.start()

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Maintenance pass failed")
            self._stop.wait(timeout=self.interval_seconds)
