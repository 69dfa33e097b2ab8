"""Application entrypoint for the lab service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import redis
from fastapi import FastAPI

from .api.routes import router as api_router
from .config import AppConfig, get_settings
from .events.consumer import EventConsumer
from .events.publisher import AuditEventPublisher, RabbitMQPublisher
from .orchestration.cleanup import CleanupOrchestrator
from .orchestration.lab_service import LabService
from .orchestration.provisioning import ProvisioningOrchestrator
from .orchestration.reaper import ExpirationReaper
from .orchestration.registry import ServiceRegistry
from .plugins.builtin import register_builtin_plugins
from .services.progress import ProgressTracker
from .services.redis_repository import RedisLabRepository
from .services.repository import InMemoryLabRepository, LabRepository

LOGGER = logging.getLogger(__name__)


@dataclass
class ServiceGraph:
    """Every long-lived object the application wires together at startup."""

    settings: AppConfig
    repository: LabRepository
    registry: ServiceRegistry
    progress: ProgressTracker
    audit: AuditEventPublisher
    provisioning: ProvisioningOrchestrator
    cleanup: CleanupOrchestrator
    lab_service: LabService
    reaper: ExpirationReaper
    event_consumer: Optional[EventConsumer] = None
    redis_client: Optional[redis.Redis] = None


def build_graph(
    settings: AppConfig,
    repository: Optional[LabRepository] = None,
    registry: Optional[ServiceRegistry] = None,
    audit: Optional[AuditEventPublisher] = None,
) -> ServiceGraph:
    redis_client: Optional[redis.Redis] = None
    if repository is None:
        if settings.redis is not None:
            redis_client = redis.from_url(settings.redis.url, decode_responses=True)
            repository = RedisLabRepository(redis_client, prefix=settings.redis.key_prefix)
        else:
            LOGGER.warning("Redis not configured; lab records are kept in memory only")
            repository = InMemoryLabRepository()

    if registry is None:
        registry = ServiceRegistry(repository)
        register_builtin_plugins(registry, settings)
        if settings.config_dir:
            registry.load_directory(settings.config_dir)

    if audit is None:
        audit = AuditEventPublisher(RabbitMQPublisher(settings.rabbitmq) if settings.rabbitmq else None)

    progress = ProgressTracker()
    provisioning = ProvisioningOrchestrator(repository, registry, progress, audit, settings.provisioning)
    cleanup = CleanupOrchestrator(repository, registry, progress, audit, settings.provisioning)
    lab_service = LabService(repository, registry, progress, provisioning, cleanup, settings)
    reaper = ExpirationReaper(repository, lab_service, settings.reaper)
    event_consumer = (
        EventConsumer(settings.rabbitmq, lab_service.handle_event) if settings.rabbitmq else None
    )
    return ServiceGraph(
        settings=settings,
        repository=repository,
        registry=registry,
        progress=progress,
        audit=audit,
        provisioning=provisioning,
        cleanup=cleanup,
        lab_service=lab_service,
        reaper=reaper,
        event_consumer=event_consumer,
        redis_client=redis_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    graph: ServiceGraph = app.state.graph
    LOGGER.info("Starting lab service", extra={"service": graph.settings.service_name})
    if graph.settings.reaper.enabled:
        graph.reaper.start()
    if graph.event_consumer is not None:
        graph.event_consumer.start()
    yield
    LOGGER.info("Shutting down lab service")
    if graph.event_consumer is not None:
        graph.event_consumer.stop()
    graph.reaper.stop()
    graph.lab_service.shutdown()
    if graph.redis_client is not None:
        graph.redis_client.close()


def create_app(
    settings: Optional[AppConfig] = None,
    repository: Optional[LabRepository] = None,
    registry: Optional[ServiceRegistry] = None,
    audit: Optional[AuditEventPublisher] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    logging.basicConfig(level=settings.logging.level, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    graph = build_graph(settings, repository=repository, registry=registry, audit=audit)

    app = FastAPI(
        title="Lab Provisioning Service",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix=settings.api_prefix)

    app.state.settings = settings
    app.state.graph = graph
    app.state.lab_service = graph.lab_service

    return app


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("labby.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)
