"""Provisioning orchestrator: runs setup for every service attached to a lab."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import ProvisioningConfig
from ..errors import (
    LabNotFound,
    ProvisioningAlreadyStarted,
    ServiceCapacityExceeded,
    SetupFailed,
)
from ..events.models import EventType
from ..events.publisher import AuditEventPublisher
from ..models import Credential, Lab, LabStatus, ServiceConfig
from ..services.progress import ProgressTracker
from ..services.repository import LabRepository
from .plugin import OperationCancelled, ServiceDataScope, ServicePlugin, SetupContext
from .registry import ServiceRegistry
from .state import apply_transition

LOGGER = logging.getLogger(__name__)

CANCELLED_BEFORE_START = "cancelled before start"
WITHDRAWN = "setup cancelled before any service started"

SETUP_POLL_SECONDS = 0.05


@dataclass
class PlannedService:
    """A template entry resolved to its config and plugin instance."""

    config: ServiceConfig
    plugin: ServicePlugin
    display_name: str = ""
    description: str = ""

    @property
    def service_id(self) -> str:
        return self.config.id


class SetupLaunch:
    """One service setup handed to the setup pool.

    Each launch has its own cancel signal so an overrunning service can be
    told to stop without disturbing its siblings.
    """

    def __init__(self, planned: PlannedService) -> None:
        self.planned = planned
        self.cancel_event = threading.Event()
        self._started_at: Optional[float] = None

    @property
    def service_id(self) -> str:
        return self.planned.service_id

    def mark_started(self) -> float:
        self._started_at = time.monotonic()
        return self._started_at

    def overdue(self, now: float, timeout: float) -> bool:
        return self._started_at is not None and now - self._started_at > timeout


@dataclass
class ServiceOutcome:
    service_id: str
    error: Optional[SetupFailed] = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.skipped


@dataclass
class ProvisioningResult:
    lab_id: str
    status: LabStatus
    outcomes: List[ServiceOutcome] = field(default_factory=list)

    @property
    def failures(self) -> Dict[str, str]:
        return {
            outcome.service_id: outcome.error.message
            for outcome in self.outcomes
            if outcome.error is not None
        }


class ProvisioningOrchestrator:
    """Drive one provisioning run per lab and decide ``ready`` or ``error``.

    Each lab run executes on its own worker; inside the run every service's
    setup fans out to a shared pool. The final status is only written once every
    setup call has returned.
    """

    def __init__(
        self,
        repository: LabRepository,
        registry: ServiceRegistry,
        progress: ProgressTracker,
        audit: AuditEventPublisher,
        settings: ProvisioningConfig,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._progress = progress
        self._audit = audit
        self._settings = settings
        self._runs_pool = ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="lab-provision"
        )
        self._setup_pool = ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="lab-setup"
        )
        self._lock = threading.Lock()
        self._runs: Dict[str, Future] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        # Services a started run will attach but has not recorded yet.
        self._pending: Dict[str, List[str]] = {}
        self._plans: Dict[str, Tuple[Lab, List[PlannedService]]] = {}

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------
    def active_usage(self, service_id: str) -> int:
        """Active labs using ``service_id``, including runs not yet recorded."""

        with self._lock:
            pending = sum(1 for ids in self._pending.values() if service_id in ids)
        return self._repository.count_active_labs_using(service_id) + pending

    def check_capacity(self, service_ids: Iterable[str]) -> None:
        for service_id in dict.fromkeys(service_ids):
            limit = self._registry.lookup_limit(service_id)
            if limit is None:
                continue
            active = self.active_usage(service_id)
            if active >= limit.max_labs:
                LOGGER.warning(
                    "Service capacity exceeded",
                    extra={"service_id": service_id, "active_labs": active, "max_labs": limit.max_labs},
                )
                raise ServiceCapacityExceeded(service_id, active, limit.max_labs)

    # ------------------------------------------------------------------
    # Run management
    # ------------------------------------------------------------------
    def start(self, lab: Lab, services: Sequence[PlannedService]) -> Future:
        """Schedule the provisioning run for ``lab``; never re-entrant."""

        with self._lock:
            if lab.id in self._runs or lab.id in self._cancel_events:
                raise ProvisioningAlreadyStarted(lab.id)
            cancel_event = threading.Event()
            self._cancel_events[lab.id] = cancel_event
            self._pending[lab.id] = [planned.service_id for planned in services]
            self._plans[lab.id] = (lab, list(services))
            future = self._runs_pool.submit(self.run, lab, services, cancel_event)
            self._runs[lab.id] = future
        future.add_done_callback(lambda done: self._forget(lab.id, done))
        LOGGER.info(
            "Provisioning scheduled",
            extra={"lab_id": lab.id, "services": [planned.service_id for planned in services]},
        )
        return future

    def _forget(self, lab_id: str, future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            LOGGER.error(
                "Provisioning run crashed",
                extra={"lab_id": lab_id},
                exc_info=future.exception(),
            )
        with self._lock:
            self._runs.pop(lab_id, None)
            self._cancel_events.pop(lab_id, None)
            self._pending.pop(lab_id, None)
            self._plans.pop(lab_id, None)

    def is_running(self, lab_id: str) -> bool:
        with self._lock:
            future = self._runs.get(lab_id)
        return future is not None and not future.done()

    def cancel(self, lab_id: str) -> bool:
        """Stop launching further setups for ``lab_id``; running ones finish.

        A run still waiting for a worker is dropped outright: no setup was
        attempted, so the lab is withdrawn without a ``lab.error`` event.
        """

        with self._lock:
            cancel_event = self._cancel_events.get(lab_id)
            future = self._runs.get(lab_id)
            plan = self._plans.get(lab_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        LOGGER.info("Provisioning cancellation requested", extra={"lab_id": lab_id})
        if future is not None and plan is not None and future.cancel():
            lab, services = plan
            self._withdraw(lab, services)
        return True

    def wait(self, lab_id: str, timeout: Optional[float] = None) -> bool:
        with self._lock:
            future = self._runs.get(lab_id)
        if future is None:
            return True
        done, _ = wait([future], timeout=timeout)
        return bool(done)

    def shutdown(self) -> None:
        with self._lock:
            events = list(self._cancel_events.values())
        for cancel_event in events:
            cancel_event.set()
        self._runs_pool.shutdown(wait=False)
        self._setup_pool.shutdown(wait=False)

    # ------------------------------------------------------------------
    # The run itself
    # ------------------------------------------------------------------
    def run(
        self,
        lab: Lab,
        services: Sequence[PlannedService],
        cancel_event: Optional[threading.Event] = None,
    ) -> ProvisioningResult:
        cancel_event = cancel_event or threading.Event()
        try:
            return self._run(lab, services, cancel_event)
        finally:
            with self._lock:
                self._pending.pop(lab.id, None)

    def _run(
        self,
        lab: Lab,
        services: Sequence[PlannedService],
        cancel_event: threading.Event,
    ) -> ProvisioningResult:
        stored = self._repository.get_lab_by_id(lab.id)
        if stored.status != LabStatus.PROVISIONING or stored.used_services:
            raise ProvisioningAlreadyStarted(lab.id)

        self._track(lab.id, services)
        self._progress.add_log(lab.id, f"Starting setup of {len(services)} service(s)")

        outcomes: Dict[str, ServiceOutcome] = {}
        launches: Dict[Future, SetupLaunch] = {}
        for planned in services:
            if cancel_event.is_set():
                outcomes[planned.service_id] = self._skip(lab.id, planned.service_id)
                continue
            launch = SetupLaunch(planned)
            future = self._setup_pool.submit(self._run_setup, stored, launch, cancel_event)
            launches[future] = launch

        self._await_setups(lab.id, launches, cancel_event)

        for future, launch in launches.items():
            if future.cancelled():
                outcomes[launch.service_id] = self._skip(lab.id, launch.service_id)
            else:
                outcomes[launch.service_id] = future.result()

        ordered = [outcomes[planned.service_id] for planned in services]
        return self._finish(lab, ordered)

    def _track(self, lab_id: str, services: Sequence[PlannedService]) -> None:
        if not self._progress.has(lab_id):
            self._progress.initialize(lab_id)
        for planned in services:
            self._progress.add_service(
                lab_id,
                planned.service_id,
                planned.display_name or planned.plugin.display_name,
                planned.description,
                planned.plugin.steps,
            )

    def _await_setups(
        self,
        lab_id: str,
        launches: Dict[Future, SetupLaunch],
        cancel_event: threading.Event,
    ) -> None:
        """Wait for every launched setup, signalling the ones that overrun.

        A setup's deadline counts from the moment its plugin call starts, so
        time spent queued behind other setups is never charged to it. Running
        calls cannot be aborted; the wait only ends once all of them returned.
        """

        timeout = self._settings.setup_timeout_seconds
        pending = set(launches)
        while pending:
            _, pending = wait(pending, timeout=SETUP_POLL_SECONDS)
            now = time.monotonic()
            for future in pending:
                launch = launches[future]
                if launch.cancel_event.is_set():
                    continue
                if cancel_event.is_set():
                    launch.cancel_event.set()
                    future.cancel()
                elif launch.overdue(now, timeout):
                    LOGGER.warning(
                        "Setup overran its deadline; signalling cancellation",
                        extra={"lab_id": lab_id, "service_id": launch.service_id},
                    )
                    launch.cancel_event.set()

    def _skip(self, lab_id: str, service_id: str) -> ServiceOutcome:
        LOGGER.info("Skipping service setup after cancellation", extra={"lab_id": lab_id, "service_id": service_id})
        self._repository.record_setup_failure(lab_id, service_id, CANCELLED_BEFORE_START)
        self._progress.fail_service(lab_id, service_id, CANCELLED_BEFORE_START)
        self._progress.add_log(lab_id, f"{service_id}: {CANCELLED_BEFORE_START}")
        return ServiceOutcome(
            service_id=service_id,
            error=SetupFailed(service_id, message=CANCELLED_BEFORE_START),
            skipped=True,
        )

    def _run_setup(self, lab: Lab, launch: SetupLaunch, cancel_event: threading.Event) -> ServiceOutcome:
        planned = launch.planned
        service_id = planned.service_id
        if cancel_event.is_set() or launch.cancel_event.is_set():
            return self._skip(lab.id, service_id)

        # Only services whose plugin is actually called count as attempted.
        self._repository.append_used_service(lab.id, service_id)
        with self._lock:
            pending = self._pending.get(lab.id)
            if pending and service_id in pending:
                pending.remove(service_id)

        self._progress.start_service(lab.id, service_id)
        self._progress.add_log(lab.id, f"Setting up {planned.plugin.display_name}")
        timeout = self._settings.setup_timeout_seconds
        started = launch.mark_started()
        deadline = started + timeout
        ctx = SetupContext(
            lab_id=lab.id,
            lab_name=lab.name,
            owner_id=lab.owner_id,
            cancel_event=launch.cancel_event,
            deadline=deadline,
            duration=lab.duration,
            ends_at=lab.ends_at,
            service_data=ServiceDataScope(
                self._repository, lab.id, service_id, lab.service_data.get(service_id)
            ),
            credential_sink=lambda credential: self._store_credential(lab.id, credential),
            progress_sink=lambda step, status, message: self._progress.update_step(
                lab.id, service_id, step, status, message
            ),
            service_id=service_id,
        )
        timed_out = SetupFailed(service_id, message=f"setup timed out after {timeout:g}s")
        try:
            planned.plugin.execute_setup(ctx)
        except SetupFailed as exc:
            return self._record_failure(lab.id, exc)
        except OperationCancelled as exc:
            if time.monotonic() > deadline:
                return self._record_failure(lab.id, timed_out)
            return self._record_failure(lab.id, SetupFailed(service_id, cause=exc))
        except Exception as exc:
            LOGGER.exception("Service setup raised", extra={"lab_id": lab.id, "service_id": service_id})
            return self._record_failure(lab.id, SetupFailed(service_id, cause=exc))

        elapsed = time.monotonic() - started
        if elapsed > timeout:
            return self._record_failure(lab.id, timed_out)
        self._progress.complete_service(lab.id, service_id)
        self._progress.add_log(lab.id, f"{planned.plugin.display_name} ready")
        LOGGER.info(
            "Service setup completed",
            extra={"lab_id": lab.id, "service_id": service_id, "elapsed_seconds": round(elapsed, 3)},
        )
        return ServiceOutcome(service_id=service_id)

    def _store_credential(self, lab_id: str, credential: Credential) -> None:
        self._repository.create_credential(credential)
        self._progress.add_log(lab_id, f"Credential '{credential.label}' issued")

    def _record_failure(self, lab_id: str, failure: SetupFailed) -> ServiceOutcome:
        LOGGER.warning(
            "Service setup failed",
            extra={"lab_id": lab_id, "service_id": failure.service_id, "error": failure.message},
        )
        self._repository.record_setup_failure(lab_id, failure.service_id, failure.message)
        self._progress.fail_service(lab_id, failure.service_id, failure.message)
        self._progress.add_log(lab_id, f"{failure.service_id} failed: {failure.message}")
        return ServiceOutcome(service_id=failure.service_id, error=failure)

    def _withdraw(self, lab: Lab, services: Sequence[PlannedService]) -> ProvisioningResult:
        self._track(lab.id, services)
        return self._finish(lab, [self._skip(lab.id, planned.service_id) for planned in services])

    def _finish(self, lab: Lab, outcomes: List[ServiceOutcome]) -> ProvisioningResult:
        failed = [outcome for outcome in outcomes if not outcome.succeeded]
        status = LabStatus.ERROR if failed else LabStatus.READY
        result = ProvisioningResult(lab_id=lab.id, status=status, outcomes=outcomes)
        try:
            apply_transition(self._repository, lab.id, status)
        except LabNotFound:
            LOGGER.warning("Lab removed before provisioning finished", extra={"lab_id": lab.id})
            return result

        if failed and all(outcome.skipped for outcome in outcomes):
            # Stopped before any plugin ran; the stop's own cleanup reports it.
            self._progress.fail(lab.id, WITHDRAWN)
            LOGGER.info("Provisioning withdrawn", extra={"lab_id": lab.id})
        elif failed:
            summary = ", ".join(f"{item.service_id}: {item.error.message}" for item in failed)
            self._progress.fail(lab.id, summary)
            self._audit.publish(
                lab.id,
                EventType.LAB_ERROR.value,
                "failure",
                {"failures": result.failures, "owner_id": lab.owner_id},
            )
        else:
            self._progress.complete(lab.id)
            self._audit.publish(
                lab.id,
                EventType.LAB_READY.value,
                "success",
                {"services": [item.service_id for item in outcomes], "owner_id": lab.owner_id},
            )
        self._progress.add_log(lab.id, f"Lab is {status.value}")
        return result


__all__ = [
    "CANCELLED_BEFORE_START",
    "WITHDRAWN",
    "PlannedService",
    "ProvisioningOrchestrator",
    "ProvisioningResult",
    "ServiceOutcome",
    "SetupLaunch",
]
