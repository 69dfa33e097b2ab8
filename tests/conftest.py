"""Shared pytest fixtures for the labby test suite.

Provides:
- journal / RecordingPlugin: a scriptable plugin whose behaviour comes from its service config
- repository, registry: an in-memory repository and a registry preloaded with test services
- graph / lab_service: the fully wired orchestration core with the reaper disabled
"""
from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Dict, List, Tuple

import pytest

from labby.config import AppConfig, ProvisioningConfig, ReaperConfig
from labby.errors import CleanupFailed, SetupFailed
from labby.events.publisher import AuditEventPublisher
from labby.main import build_graph
from labby.models import LabTemplate, ServiceConfig, ServiceReference, StepStatus, utcnow
from labby.orchestration.plugin import CleanupContext, ServicePlugin, SetupContext
from labby.orchestration.registry import ServiceRegistry
from labby.services.repository import InMemoryLabRepository


class Journal:
    """Thread-safe record of every plugin call made during a test."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.setups: List[Tuple[str, str]] = []
        self.cleanups: List[Tuple[str, str, Dict[str, str]]] = []

    def setup(self, lab_id: str, service_id: str) -> None:
        with self._lock:
            self.setups.append((lab_id, service_id))

    def cleanup(self, lab_id: str, service_id: str, data: Dict[str, str]) -> None:
        with self._lock:
            self.cleanups.append((lab_id, service_id, data))

    def setups_for(self, lab_id: str) -> List[str]:
        with self._lock:
            return [service_id for lab, service_id in self.setups if lab == lab_id]

    def cleanups_for(self, lab_id: str) -> List[str]:
        with self._lock:
            return [service_id for lab, service_id, _ in self.cleanups if lab == lab_id]


class RecordingPlugin(ServicePlugin):
    """Plugin driven by its config.

    Setup honours ``delay``, ``fail`` and ``credential_minutes`` (an expiry
    earlier than the lab's end); cleanup honours ``cleanup_delay`` and
    ``cleanup_fail``.
    """

    type_name = "recording"
    steps = ("Allocate", "Issue credential")

    def __init__(self, config: ServiceConfig, journal: Journal) -> None:
        super().__init__(config)
        self._journal = journal

    def execute_setup(self, ctx: SetupContext) -> None:
        self._journal.setup(ctx.lab_id, self.name)
        ctx.update_progress("Allocate", StepStatus.RUNNING)
        delay = float(self.config.config.get("delay", 0))
        if delay:
            time.sleep(delay)
        ctx.service_data.set("resource", f"{self.name}-{ctx.lab_id}")
        failure = self.config.config.get("fail")
        if failure:
            raise SetupFailed(self.name, message=failure)
        ctx.update_progress("Allocate", StepStatus.COMPLETED)
        minutes = self.config.config.get("credential_minutes")
        expires_at = utcnow() + timedelta(minutes=float(minutes)) if minutes else None
        ctx.add_credential(
            label=self.display_name, username=f"user-{self.name}", password="s3cret", expires_at=expires_at
        )
        ctx.update_progress("Issue credential", StepStatus.COMPLETED)

    def execute_cleanup(self, ctx: CleanupContext) -> None:
        self._journal.cleanup(ctx.lab_id, self.name, dict(ctx.service_data))
        delay = float(self.config.config.get("cleanup_delay", 0))
        if delay:
            time.sleep(delay)
        failure = self.config.config.get("cleanup_fail")
        if failure:
            raise CleanupFailed(self.name, message=failure)


SERVICE_CONFIGS = [
    ServiceConfig(id="svc-a", name="Service A", type="recording"),
    ServiceConfig(id="svc-b", name="Service B", type="recording"),
    ServiceConfig(id="svc-fail", name="Failing", type="recording", config={"fail": "quota exceeded"}),
    ServiceConfig(id="svc-slow", name="Slow", type="recording", config={"delay": 0.5}),
    ServiceConfig(id="svc-slow-2", name="Slow too", type="recording", config={"delay": 0.5}),
    ServiceConfig(id="svc-sticky", name="Sticky", type="recording", config={"cleanup_fail": "permission denied"}),
    ServiceConfig(id="svc-off", name="Retired", type="recording", is_active=False),
    ServiceConfig(id="svc-lingering", name="Lingering", type="recording", config={"cleanup_delay": 0.3}),
    ServiceConfig(id="svc-brief", name="Brief", type="recording", config={"credential_minutes": 10}),
]


def _template(template_id: str, *service_ids: str, duration: timedelta = timedelta(hours=2)) -> LabTemplate:
    return LabTemplate(
        id=template_id,
        name=f"{template_id} lab",
        expiration_duration=duration,
        services=[ServiceReference(service_id=item, name=item.upper()) for item in service_ids],
    )


TEMPLATES = [
    _template("basic", "svc-a", "svc-b"),
    _template("partial", "svc-a", "svc-fail"),
    _template("slow", "svc-slow"),
    _template("queued", "svc-slow", "svc-slow-2"),
    _template("sticky", "svc-a", "svc-sticky"),
    _template("retired", "svc-off"),
    _template("short", "svc-a", duration=timedelta(minutes=5)),
    _template("lingering", "svc-a", "svc-lingering"),
    _template("brief", "svc-brief"),
]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> AppConfig:
    return AppConfig(
        provisioning=ProvisioningConfig(
            setup_timeout_seconds=5,
            cleanup_timeout_seconds=5,
            max_workers=4,
            min_duration_minutes=1,
            max_duration_minutes=480,
        ),
        reaper=ReaperConfig(enabled=False, error_retention_minutes=60, expired_retention_minutes=1440),
    )


@pytest.fixture
def journal() -> Journal:
    return Journal()


@pytest.fixture
def repository() -> InMemoryLabRepository:
    return InMemoryLabRepository()


@pytest.fixture
def registry(repository, journal) -> ServiceRegistry:
    registry = ServiceRegistry(repository)
    registry.register(RecordingPlugin.type_name, lambda config: RecordingPlugin(config, journal))
    for config in SERVICE_CONFIGS:
        registry.add_config(config)
    for template in TEMPLATES:
        registry.add_template(template)
    return registry


@pytest.fixture
def graph(settings, repository, registry):
    graph = build_graph(settings, repository=repository, registry=registry, audit=AuditEventPublisher(None))
    yield graph
    graph.reaper.stop(timeout=1)
    graph.lab_service.shutdown()


@pytest.fixture
def lab_service(graph):
    return graph.lab_service


@pytest.fixture
def settle(graph):
    """Return a helper that waits for a lab's provisioning run and reloads it."""

    def _settle(lab_id: str, timeout: float = 5.0):
        assert graph.provisioning.wait(lab_id, timeout=timeout)
        return graph.repository.get_lab_by_id(lab_id)

    return _settle
