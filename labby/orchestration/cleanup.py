"""Cleanup orchestrator: tears down every service a lab attempted."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional, Set

from ..config import ProvisioningConfig
from ..errors import CleanupFailed, DoubleCleanupAttempt, UnknownServiceType
from ..events.models import EventType
from ..events.publisher import AuditEventPublisher
from ..models import Lab, LabStatus, utcnow
from ..services.progress import ProgressTracker
from ..services.repository import LabRepository
from .plugin import CleanupContext
from .registry import ServiceRegistry
from .state import apply_transition, ensure_transition

LOGGER = logging.getLogger(__name__)

MAX_RECORDED_FAILURES = 200


@dataclass
class CleanupFailureRecord:
    """Admin-facing record of one service that could not be torn down."""

    lab_id: str
    service_id: str
    message: str
    reason: str
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, str]:
        return {
            "lab_id": self.lab_id,
            "service_id": self.service_id,
            "message": self.message,
            "reason": self.reason,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class CleanupReport:
    lab_id: str
    reason: str = ""
    performed: bool = True
    in_progress: bool = False
    services: List[str] = field(default_factory=list)
    failures: List[CleanupFailed] = field(default_factory=list)
    deleted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.performed and not self.failures

    def to_dict(self) -> Dict[str, object]:
        return {
            "lab_id": self.lab_id,
            "reason": self.reason,
            "performed": self.performed,
            "in_progress": self.in_progress,
            "services": list(self.services),
            "failures": {failure.service_id: failure.message for failure in self.failures},
            "deleted": self.deleted,
        }


class CleanupOrchestrator:
    """Run teardown for a lab at most once at a time.

    ``cleanup`` claims the lab before doing anything; a concurrent caller (for
    example the reaper racing an explicit stop) gets a report with
    ``in_progress`` set and nothing is executed twice.
    """

    def __init__(
        self,
        repository: LabRepository,
        registry: ServiceRegistry,
        progress: ProgressTracker,
        audit: AuditEventPublisher,
        settings: ProvisioningConfig,
        max_recorded_failures: int = MAX_RECORDED_FAILURES,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._progress = progress
        self._audit = audit
        self._settings = settings
        self._pool = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="lab-cleanup")
        self._lock = threading.Lock()
        self._inflight: Set[str] = set()
        self._failures: Deque[CleanupFailureRecord] = deque(maxlen=max_recorded_failures)

    # ------------------------------------------------------------------
    # Single-flight guard
    # ------------------------------------------------------------------
    def claim(self, lab_id: str) -> bool:
        with self._lock:
            if lab_id in self._inflight:
                return False
            self._inflight.add(lab_id)
            return True

    def release(self, lab_id: str) -> None:
        with self._lock:
            self._inflight.discard(lab_id)

    def is_in_progress(self, lab_id: str) -> bool:
        with self._lock:
            return lab_id in self._inflight

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------
    def cleanup(self, lab_id: str, reason: str, delete: bool = False) -> CleanupReport:
        if not self.claim(lab_id):
            LOGGER.info("Cleanup already in progress", extra={"lab_id": lab_id, "reason": reason})
            return CleanupReport(lab_id=lab_id, reason=reason, performed=False, in_progress=True)
        try:
            return self.execute(lab_id, reason, delete=delete)
        finally:
            self.release(lab_id)

    def execute(self, lab_id: str, reason: str, delete: bool = False) -> CleanupReport:
        """Tear down a lab the caller has already claimed."""

        if not self.is_in_progress(lab_id):
            raise DoubleCleanupAttempt(f"Cleanup of lab '{lab_id}' ran without holding its claim")

        lab = self._repository.get_lab_by_id(lab_id)
        if lab.status == LabStatus.PROVISIONING:
            # Setup must settle into ready or error first.
            ensure_transition(lab_id, lab.status, LabStatus.EXPIRED)
        report = CleanupReport(lab_id=lab_id, reason=reason, services=list(lab.used_services))
        if lab.status == LabStatus.EXPIRED:
            LOGGER.debug("Lab already cleaned up", extra={"lab_id": lab_id})
        else:
            LOGGER.info(
                "Cleaning up lab",
                extra={"lab_id": lab_id, "reason": reason, "services": lab.used_services},
            )
            self._progress.add_log(lab_id, f"Cleanup started ({reason})")
            report.failures = self._teardown(lab)
            self._repository.delete_credentials_by_lab_id(lab_id)
            apply_transition(self._repository, lab_id, LabStatus.EXPIRED)
            now = utcnow()
            if lab.ends_at > now:
                current = self._repository.get_lab_by_id(lab_id)
                current.ends_at = now
                self._repository.update_lab(current)
            for failure in report.failures:
                self._record_failure(lab_id, failure, reason)
            self._audit.publish(
                lab_id,
                EventType.LAB_EXPIRED.value,
                "success" if not report.failures else "partial",
                {
                    "reason": reason,
                    "services": report.services,
                    "failures": {item.service_id: item.message for item in report.failures},
                },
            )
            self._progress.add_log(lab_id, "Cleanup finished")

        if delete:
            self._repository.delete_lab(lab_id)
            self._progress.remove(lab_id)
            report.deleted = True
            LOGGER.info("Lab record deleted", extra={"lab_id": lab_id, "reason": reason})
        return report

    def recent_failures(self) -> List[CleanupFailureRecord]:
        with self._lock:
            return list(self._failures)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _teardown(self, lab: Lab) -> List[CleanupFailed]:
        cancel_event = threading.Event()
        timeout = self._settings.cleanup_timeout_seconds
        deadline = time.monotonic() + timeout
        futures: Dict[Future, str] = {}
        failures: Dict[str, CleanupFailed] = {}
        for service_id in lab.used_services:
            futures[self._pool.submit(self._cleanup_service, lab, service_id, cancel_event, deadline)] = service_id

        _, not_done = wait(list(futures), timeout=timeout)
        if not_done:
            LOGGER.warning(
                "Cleanup timed out; signalling outstanding services",
                extra={"lab_id": lab.id, "services": sorted(futures[item] for item in not_done)},
            )
            cancel_event.set()
            wait(list(not_done))

        for future, service_id in futures.items():
            failure = future.result()
            if failure is not None:
                failures[service_id] = failure
        return [failures[service_id] for service_id in lab.used_services if service_id in failures]

    def _cleanup_service(
        self,
        lab: Lab,
        service_id: str,
        cancel_event: threading.Event,
        deadline: float,
    ) -> Optional[CleanupFailed]:
        config = self._registry.get_config(service_id, include_inactive=True)
        if config is None:
            return CleanupFailed(service_id, message="service config not found")
        try:
            plugin = self._registry.resolve(config)
        except UnknownServiceType as exc:
            return CleanupFailed(service_id, cause=exc)

        ctx = CleanupContext(
            lab_id=lab.id,
            lab_name=lab.name,
            owner_id=lab.owner_id,
            cancel_event=cancel_event,
            deadline=deadline,
            service_data=lab.service_data.get(service_id, {}),
            service_id=service_id,
        )
        self._progress.add_log(lab.id, f"Cleaning up {plugin.display_name}")
        try:
            plugin.execute_cleanup(ctx)
        except CleanupFailed as exc:
            return exc
        except Exception as exc:
            LOGGER.exception("Service cleanup raised", extra={"lab_id": lab.id, "service_id": service_id})
            return CleanupFailed(service_id, cause=exc)
        if time.monotonic() > deadline:
            LOGGER.warning(
                "Service cleanup finished after its deadline",
                extra={"lab_id": lab.id, "service_id": service_id},
            )
        LOGGER.debug("Service cleaned up", extra={"lab_id": lab.id, "service_id": service_id})
        return None

    def _record_failure(self, lab_id: str, failure: CleanupFailed, reason: str) -> None:
        LOGGER.error(
            "Service cleanup failed",
            extra={"lab_id": lab_id, "service_id": failure.service_id, "error": failure.message},
        )
        self._progress.add_log(lab_id, f"Cleanup of {failure.service_id} failed: {failure.message}")
        with self._lock:
            self._failures.append(
                CleanupFailureRecord(
                    lab_id=lab_id, service_id=failure.service_id, message=failure.message, reason=reason
                )
            )
        self._audit.publish(
            lab_id,
            EventType.LAB_CLEANUP_FAILED.value,
            "failure",
            {"service_id": failure.service_id, "error": failure.message, "reason": reason},
        )


__all__ = ["CleanupFailureRecord", "CleanupOrchestrator", "CleanupReport"]
