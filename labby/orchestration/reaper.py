"""Background loop that expires and tears down leases past their end time."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..config import ReaperConfig
from ..errors import LabNotFound
from ..models import LabStatus, utcnow
from ..services.repository import LabRepository
from .cleanup import CleanupReport
from .lab_service import LabService

LOGGER = logging.getLogger(__name__)

REASON_EXPIRED = "expired"
REASON_ERROR_RETENTION = "error_retention"
REASON_PURGE = "purge"


@dataclass
class ReapResult:
    """Outcome of one reaper pass."""

    now: datetime
    reaped: List[str] = field(default_factory=list)
    purged: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    cleanup_failures: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return len(self.reaped) + len(self.purged)


class ExpirationReaper:
    """Periodically drive due labs through cleanup and deletion.

    ``run_once`` is the whole pass and can be called directly with an explicit
    ``now``; the background thread only adds the interval timer. A lab claimed
    by one pass is skipped by any overlapping pass until the first finishes.
    """

    def __init__(
        self,
        repository: LabRepository,
        lab_service: LabService,
        settings: ReaperConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._lab_service = lab_service
        self._settings = settings
        self._clock = clock
        self._pool: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._claimed: Set[str] = set()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            LOGGER.debug("Reaper already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="lab-reaper", daemon=True)
        self._thread.start()
        LOGGER.info("Expiration reaper started", extra={"interval_seconds": self._settings.interval_seconds})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False)
        LOGGER.info("Expiration reaper stopped")

    def _executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._settings.max_workers, thread_name_prefix="lab-reaper"
                )
            return self._pool

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop_event.wait(self._settings.interval_seconds):
            try:
                self.run_once()
            except Exception:
                LOGGER.exception("Reaper pass failed")

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------
    def run_once(self, now: Optional[datetime] = None) -> ReapResult:
        now = now or self._clock()
        result = ReapResult(now=now)
        futures = {}
        pool = self._executor()
        for lab_id, reason in self._candidates(now):
            if not self._claim(lab_id):
                result.skipped.append(lab_id)
                continue
            futures[pool.submit(self._reap, lab_id, reason)] = (lab_id, reason)

        for future in as_completed(futures):
            lab_id, reason = futures[future]
            try:
                report: CleanupReport = future.result()
            except LabNotFound:
                result.skipped.append(lab_id)
                continue
            except Exception as exc:
                LOGGER.exception("Failed to reap lab", extra={"lab_id": lab_id, "reason": reason})
                result.failed[lab_id] = str(exc)
                continue
            if report.in_progress:
                result.skipped.append(lab_id)
            elif reason == REASON_PURGE:
                result.purged.append(lab_id)
            else:
                result.reaped.append(lab_id)
            if report.failures:
                result.cleanup_failures[lab_id] = {item.service_id: item.message for item in report.failures}

        if futures:
            LOGGER.info(
                "Reaper pass finished",
                extra={
                    "reaped": len(result.reaped),
                    "purged": len(result.purged),
                    "skipped": len(result.skipped),
                    "failed": len(result.failed),
                },
            )
        return result

    def _candidates(self, now: datetime) -> List[Tuple[str, str]]:
        candidates: Dict[str, str] = {}
        for lab in self._repository.get_expired_labs(now):
            candidates[lab.id] = REASON_EXPIRED

        error_cutoff = now - timedelta(minutes=self._settings.error_retention_minutes)
        purge_cutoff = now - timedelta(minutes=self._settings.expired_retention_minutes)
        for lab in self._repository.get_all_labs():
            if lab.id in candidates:
                continue
            if lab.status == LabStatus.ERROR and lab.updated_at <= error_cutoff:
                candidates[lab.id] = REASON_ERROR_RETENTION
            elif lab.status == LabStatus.EXPIRED and lab.updated_at <= purge_cutoff:
                candidates[lab.id] = REASON_PURGE
        return list(candidates.items())

    def _claim(self, lab_id: str) -> bool:
        with self._lock:
            if lab_id in self._claimed:
                return False
            self._claimed.add(lab_id)
            return True

    def _reap(self, lab_id: str, reason: str) -> CleanupReport:
        try:
            LOGGER.debug("Reaping lab", extra={"lab_id": lab_id, "reason": reason})
            return self._lab_service.reap_lab(lab_id, reason=reason)
        finally:
            with self._lock:
                self._claimed.discard(lab_id)


__all__ = [
    "REASON_ERROR_RETENTION",
    "REASON_EXPIRED",
    "REASON_PURGE",
    "ExpirationReaper",
    "ReapResult",
]
