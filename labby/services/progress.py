"""In-memory, per-lab progress tracking consumed by polling clients."""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models import StepStatus, utcnow

LOGGER = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 50
PROGRESS_COMPLETE = 100

_OPEN = (StepStatus.PENDING, StepStatus.RUNNING)


@dataclass
class ProgressStep:
    name: str
    status: StepStatus = StepStatus.PENDING
    message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class ServiceProgress:
    service_id: str
    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    steps: List[ProgressStep] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def recalculate(self) -> None:
        if not self.steps:
            self.progress = PROGRESS_COMPLETE if self.status == StepStatus.COMPLETED else 0
            return
        done = sum(1 for step in self.steps if step.status == StepStatus.COMPLETED)
        self.progress = (done * 100) // len(self.steps)


@dataclass
class LabProgress:
    lab_id: str
    overall: int = 0
    current_step: str = "Initializing"
    status: StepStatus = StepStatus.RUNNING
    error: Optional[str] = None
    services: List[ServiceProgress] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    def service(self, service_id: str) -> Optional[ServiceProgress]:
        for item in self.services:
            if item.service_id == service_id:
                return item
        return None

    def recalculate(self) -> None:
        total = 0
        done = 0
        for service in self.services:
            service.recalculate()
            if service.steps:
                total += len(service.steps)
                done += sum(1 for step in service.steps if step.status == StepStatus.COMPLETED)
            else:
                total += 1
                done += 1 if service.status == StepStatus.COMPLETED else 0
        if total:
            self.overall = (done * 100) // total
        self.updated_at = utcnow()


def _serialize(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    if isinstance(value, StepStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class ProgressTracker:
    """Thread-safe store of step-level progress for every lab in this process.

    Updates for unknown labs are ignored: progress is best effort and lost on
    restart, the lab record's ``status`` remains the source of truth.
    """

    def __init__(self, max_log_entries: int = MAX_LOG_ENTRIES) -> None:
        self._lock = threading.Lock()
        self._progress: Dict[str, LabProgress] = {}
        self._max_log_entries = max_log_entries

    def initialize(self, lab_id: str) -> None:
        with self._lock:
            self._progress[lab_id] = LabProgress(lab_id=lab_id)

    def add_service(
        self,
        lab_id: str,
        service_id: str,
        name: str,
        description: str = "",
        steps: Sequence[str] = (),
    ) -> None:
        with self._lock:
            progress = self._progress.get(lab_id)
            if progress is None or progress.service(service_id) is not None:
                return
            progress.services.append(
                ServiceProgress(
                    service_id=service_id,
                    name=name,
                    description=description,
                    steps=[ProgressStep(name=step) for step in steps],
                )
            )
            progress.recalculate()

    def start_service(self, lab_id: str, service_id: str) -> None:
        with self._lock:
            progress = self._progress.get(lab_id)
            service = progress.service(service_id) if progress else None
            if service is None:
                return
            service.status = StepStatus.RUNNING
            service.started_at = service.started_at or utcnow()
            progress.current_step = f"Setting up {service.name}"
            progress.recalculate()

    def complete_service(self, lab_id: str, service_id: str) -> None:
        now = utcnow()
        with self._lock:
            progress = self._progress.get(lab_id)
            service = progress.service(service_id) if progress else None
            if service is None:
                return
            service.status = StepStatus.COMPLETED
            service.completed_at = now
            service.error = None
            for step in service.steps:
                if step.status in _OPEN:
                    step.status = StepStatus.COMPLETED
                    step.completed_at = now
            progress.recalculate()

    def fail_service(self, lab_id: str, service_id: str, message: str) -> None:
        """Mark the service failed, closing any step that is still open."""

        now = utcnow()
        with self._lock:
            progress = self._progress.get(lab_id)
            service = progress.service(service_id) if progress else None
            if service is None:
                return
            service.status = StepStatus.FAILED
            service.error = message
            service.completed_at = now
            for step in service.steps:
                if step.status in _OPEN:
                    step.status = StepStatus.FAILED
                    step.message = message
                    step.completed_at = now
            progress.current_step = f"{service.name} failed: {message}"
            progress.recalculate()

    def update_step(
        self,
        lab_id: str,
        service_id: str,
        step_name: str,
        status: StepStatus,
        message: str = "",
    ) -> None:
        status = StepStatus(status)
        now = utcnow()
        with self._lock:
            progress = self._progress.get(lab_id)
            service = progress.service(service_id) if progress else None
            if service is None:
                return
            step = next((item for item in service.steps if item.name == step_name), None)
            if step is None:
                # Plugins may report steps they did not declare up front.
                step = ProgressStep(name=step_name)
                service.steps.append(step)
            step.status = status
            step.message = message
            if status == StepStatus.RUNNING and step.started_at is None:
                step.started_at = now
            elif status in (StepStatus.COMPLETED, StepStatus.FAILED):
                step.completed_at = now
            if status == StepStatus.RUNNING and service.status == StepStatus.PENDING:
                service.status = StepStatus.RUNNING
                service.started_at = now
            elif status == StepStatus.FAILED:
                service.status = StepStatus.FAILED
                service.error = message
            progress.current_step = step_name
            progress.recalculate()

    def add_log(self, lab_id: str, message: str) -> None:
        with self._lock:
            progress = self._progress.get(lab_id)
            if progress is None:
                return
            progress.logs.append(f"[{utcnow().strftime('%H:%M:%S')}] {message}")
            if len(progress.logs) > self._max_log_entries:
                del progress.logs[: len(progress.logs) - self._max_log_entries]
            progress.updated_at = utcnow()

    def complete(self, lab_id: str) -> None:
        now = utcnow()
        with self._lock:
            progress = self._progress.get(lab_id)
            if progress is None:
                return
            for service in progress.services:
                if service.status in _OPEN:
                    service.status = StepStatus.COMPLETED
                    service.completed_at = now
                for step in service.steps:
                    if step.status in _OPEN:
                        step.status = StepStatus.COMPLETED
                        step.message = "Lab setup completed successfully"
                        step.completed_at = now
            progress.recalculate()
            progress.overall = PROGRESS_COMPLETE
            progress.status = StepStatus.COMPLETED
            progress.current_step = "Lab setup completed successfully"

    def fail(self, lab_id: str, message: str) -> None:
        now = utcnow()
        with self._lock:
            progress = self._progress.get(lab_id)
            if progress is None:
                return
            for service in progress.services:
                if service.status in _OPEN:
                    service.status = StepStatus.FAILED
                    service.error = message
                    service.completed_at = now
                for step in service.steps:
                    if step.status in _OPEN:
                        step.status = StepStatus.FAILED
                        step.message = f"Lab setup failed: {message}"
                        step.completed_at = now
            progress.recalculate()
            progress.status = StepStatus.FAILED
            progress.error = message
            progress.current_step = f"Lab setup failed: {message}"

    def snapshot(self, lab_id: str) -> Optional[Dict[str, Any]]:
        """Return a detached, JSON-friendly copy of the lab's progress."""

        with self._lock:
            progress = self._progress.get(lab_id)
            if progress is None:
                return None
            return _serialize(asdict(progress))

    def has(self, lab_id: str) -> bool:
        with self._lock:
            return lab_id in self._progress

    def remove(self, lab_id: str) -> None:
        with self._lock:
            self._progress.pop(lab_id, None)


__all__ = [
    "MAX_LOG_ENTRIES",
    "LabProgress",
    "ProgressStep",
    "ProgressTracker",
    "ServiceProgress",
]
