"""Operations exposed to the HTTP layer and the event consumer."""
from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..config import AppConfig
from ..errors import InvalidLabDuration, LabNotFound
from ..events.models import EventType, LabEvent
from ..models import (
    Lab,
    LabStatus,
    LabTemplate,
    ServiceUsage,
    generate_id,
    utcnow,
)
from ..services.progress import ProgressTracker
from ..services.repository import LabRepository
from .cleanup import CleanupFailureRecord, CleanupOrchestrator, CleanupReport
from .provisioning import PlannedService, ProvisioningOrchestrator
from .registry import ServiceRegistry
from .state import apply_transition

LOGGER = logging.getLogger(__name__)

INTERRUPTED_SETUP = "provisioning interrupted before completion"


class LabService:
    """Facade tying the registry, orchestrators and repository together."""

    def __init__(
        self,
        repository: LabRepository,
        registry: ServiceRegistry,
        progress: ProgressTracker,
        provisioning: ProvisioningOrchestrator,
        cleanup: CleanupOrchestrator,
        settings: AppConfig,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._progress = progress
        self._provisioning = provisioning
        self._cleanup = cleanup
        self._settings = settings
        self._create_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_lab_from_template(
        self,
        template_id: str,
        owner_id: str,
        name: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> Lab:
        """Validate, record and start provisioning a lab.

        Every pre-flight error (unknown template, config or plugin type, bad
        duration, capacity) is raised before the lab record is written and
        before any plugin runs.
        """

        template = self._registry.get_template(template_id)
        planned = self._plan(template)
        duration = (
            timedelta(minutes=duration_minutes)
            if duration_minutes is not None
            else template.expiration_duration
        )
        self._validate_duration(duration, planned)

        with self._create_lock:
            self._provisioning.check_capacity(item.service_id for item in planned)
            now = utcnow()
            lab = Lab(
                id=generate_id(),
                name=name or template.name,
                owner_id=owner_id,
                started_at=now,
                ends_at=now + duration,
                template_id=template.id,
            )
            self._repository.create_lab(lab)
            self._progress.initialize(lab.id)
            self._provisioning.start(lab, planned)

        LOGGER.info(
            "Lab created",
            extra={
                "lab_id": lab.id,
                "owner_id": owner_id,
                "template_id": template.id,
                "ends_at": lab.ends_at.isoformat(),
            },
        )
        return lab

    def _plan(self, template: LabTemplate) -> List[PlannedService]:
        planned: List[PlannedService] = []
        seen = set()
        for reference in template.services:
            if reference.service_id in seen:
                LOGGER.warning(
                    "Template lists a service twice",
                    extra={"template_id": template.id, "service_id": reference.service_id},
                )
                continue
            seen.add(reference.service_id)
            config = self._registry.lookup_config(reference.service_id)
            planned.append(
                PlannedService(
                    config=config,
                    plugin=self._registry.resolve(config),
                    display_name=reference.name,
                    description=reference.description,
                )
            )
        return planned

    def _validate_duration(self, duration: timedelta, planned: List[PlannedService]) -> None:
        minutes = duration.total_seconds() / 60
        bounds = self._settings.provisioning
        if minutes < bounds.min_duration_minutes:
            raise InvalidLabDuration(
                f"Lab duration must be at least {bounds.min_duration_minutes} minutes"
            )
        if minutes > bounds.max_duration_minutes:
            raise InvalidLabDuration(
                f"Lab duration must not exceed {bounds.max_duration_minutes} minutes"
            )
        for item in planned:
            limit = self._registry.lookup_limit(item.service_id)
            if limit is not None and minutes > limit.max_duration:
                raise InvalidLabDuration(
                    f"Service '{item.service_id}' allows at most {limit.max_duration} minutes"
                )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_lab(self, lab_id: str) -> Lab:
        return self._repository.get_lab_by_id(lab_id)

    def get_labs_for_owner(self, owner_id: str) -> List[Lab]:
        return sorted(self._repository.get_labs_by_owner_id(owner_id), key=lambda lab: lab.created_at)

    def list_all_labs(self) -> List[Lab]:
        return sorted(self._repository.get_all_labs(), key=lambda lab: lab.created_at)

    def list_templates(self) -> List[LabTemplate]:
        return self._registry.list_templates()

    def get_progress(self, lab_id: str) -> Dict[str, Any]:
        lab = self._repository.get_lab_by_id(lab_id)
        snapshot = self._progress.snapshot(lab_id)
        if snapshot is None:
            # Progress is not persisted; rebuild a summary from the record.
            snapshot = {
                "lab_id": lab_id,
                "overall": 0 if lab.status == LabStatus.PROVISIONING else 100,
                "current_step": f"Lab is {lab.status.value}",
                "services": [],
                "logs": [],
                "error": "; ".join(f"{key}: {value}" for key, value in lab.setup_failures.items()) or None,
            }
        snapshot["lab_status"] = lab.status.value
        return snapshot

    def get_service_usage(self) -> List[ServiceUsage]:
        usage: List[ServiceUsage] = []
        for config in self._registry.list_configs():
            limit = self._registry.lookup_limit(config.id)
            usage.append(
                ServiceUsage(
                    service_id=config.id,
                    active_labs=self._provisioning.active_usage(config.id),
                    limit=limit.max_labs if limit else None,
                )
            )
        return usage

    def recent_cleanup_failures(self) -> List[CleanupFailureRecord]:
        return self._cleanup.recent_failures()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def stop_lab(self, lab_id: str) -> CleanupReport:
        """Owner-requested early stop; the record stays visible as ``expired``."""

        self._repository.get_lab_by_id(lab_id)
        self._settle_provisioning(lab_id)
        return self._cleanup.cleanup(lab_id, reason="stopped", delete=False)

    def admin_cleanup_lab(self, lab_id: str) -> CleanupReport:
        self._repository.get_lab_by_id(lab_id)
        self._settle_provisioning(lab_id)
        return self._cleanup.cleanup(lab_id, reason="admin_cleanup", delete=True)

    def reap_lab(self, lab_id: str, reason: str = "expired") -> CleanupReport:
        self._settle_provisioning(lab_id)
        return self._cleanup.cleanup(lab_id, reason=reason, delete=True)

    def _settle_provisioning(self, lab_id: str) -> None:
        """Stop further setups, wait for running ones, fail orphaned runs."""

        self._provisioning.cancel(lab_id)
        self._provisioning.wait(lab_id)
        lab = self._repository.get_lab_by_id(lab_id)
        if lab.status == LabStatus.PROVISIONING and not self._provisioning.is_running(lab_id):
            LOGGER.warning("Found lab stuck in provisioning", extra={"lab_id": lab_id})
            for service_id in lab.used_services:
                self._repository.record_setup_failure(lab_id, service_id, INTERRUPTED_SETUP)
            apply_transition(self._repository, lab_id, LabStatus.ERROR)

    # ------------------------------------------------------------------
    # Bus commands
    # ------------------------------------------------------------------
    def handle_event(self, event: LabEvent) -> None:
        try:
            if event.type == EventType.LAB_STOP_REQUESTED:
                self.stop_lab(event.lab_id)
            elif event.type == EventType.LAB_CLEANUP_REQUESTED:
                self.admin_cleanup_lab(event.lab_id)
            else:
                LOGGER.debug("Ignoring event", extra={"event_type": event.type.value})
        except LabNotFound:
            LOGGER.warning(
                "Command for unknown lab", extra={"lab_id": event.lab_id, "event_type": event.type.value}
            )

    def shutdown(self) -> None:
        self._provisioning.shutdown()
        self._cleanup.shutdown()


__all__ = ["INTERRUPTED_SETUP", "LabService"]
