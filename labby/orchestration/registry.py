"""Service registry: plugin factories, service configs, limits and templates."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from ..errors import (
    ConfigurationError,
    ServiceConfigNotFound,
    TemplateNotFound,
    UnknownServiceType,
)
from ..models import LabTemplate, ServiceConfig, ServiceLimit
from ..services.repository import LabRepository
from .plugin import ServicePlugin

LOGGER = logging.getLogger(__name__)

PluginFactory = Callable[[ServiceConfig], ServicePlugin]

LIMITS_FILE = "limits.yaml"
TEMPLATES_DIR = "templates"
_YAML_SUFFIXES = (".yaml", ".yml")


class ServiceRegistry:
    """Maps type names to plugin factories and service ids to configs.

    The registry is built once at startup (``register`` calls followed by
    ``load_directory``) and then only read. When a repository is supplied,
    loaded configs and limits are mirrored into it, and config lookups fall back
    to it so that labs created by an earlier process can still be torn down.
    """

    def __init__(self, repository: Optional[LabRepository] = None) -> None:
        self._repository = repository
        self._factories: Dict[str, PluginFactory] = {}
        self._configs: Dict[str, ServiceConfig] = {}
        self._limits: Dict[str, ServiceLimit] = {}
        self._templates: Dict[str, LabTemplate] = {}

    # ------------------------------------------------------------------
    # Plugin factories
    # ------------------------------------------------------------------
    def register(self, type_name: str, factory: PluginFactory) -> None:
        if not type_name:
            raise ValueError("Plugin type name must not be empty")
        if type_name in self._factories:
            raise ValueError(f"Plugin type '{type_name}' is already registered")
        self._factories[type_name] = factory
        LOGGER.debug("Registered plugin factory", extra={"service_type": type_name})

    def registered_types(self) -> List[str]:
        return sorted(self._factories)

    def resolve(self, config: ServiceConfig) -> ServicePlugin:
        factory = self._factories.get(config.type)
        if factory is None:
            raise UnknownServiceType(config.type)
        return factory(config)

    # ------------------------------------------------------------------
    # Service configs
    # ------------------------------------------------------------------
    def add_config(self, config: ServiceConfig) -> None:
        self._configs[config.id] = config
        if self._repository is not None:
            self._repository.save_service_config(config)

    def get_config(self, service_id: str, include_inactive: bool = False) -> Optional[ServiceConfig]:
        config = self._configs.get(service_id)
        if config is None and self._repository is not None:
            config = self._repository.get_service_config(service_id)
        if config is None or (not config.is_active and not include_inactive):
            return None
        return config

    def lookup_config(self, service_id: str) -> ServiceConfig:
        config = self.get_config(service_id, include_inactive=True)
        if config is None:
            raise ServiceConfigNotFound(service_id)
        if not config.is_active:
            raise ServiceConfigNotFound(service_id, reason="is inactive")
        return config

    def list_configs(self) -> List[ServiceConfig]:
        return [self._configs[key] for key in sorted(self._configs)]

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------
    def add_limit(self, limit: ServiceLimit) -> None:
        self._limits[limit.service_id] = limit
        if self._repository is not None:
            self._repository.save_service_limit(limit)

    def lookup_limit(self, service_id: str) -> Optional[ServiceLimit]:
        """Return the active limit for ``service_id``; ``None`` means unlimited."""

        limit = self._limits.get(service_id)
        if limit is None and self._repository is not None:
            limit = self._repository.get_service_limit_by_service_id(service_id)
        if limit is None or not limit.is_active:
            return None
        return limit

    def list_limits(self) -> List[ServiceLimit]:
        return [self._limits[key] for key in sorted(self._limits)]

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------
    def add_template(self, template: LabTemplate) -> None:
        self._templates[template.id] = template

    def get_template(self, template_id: str) -> LabTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        return template

    def list_templates(self) -> List[LabTemplate]:
        return [self._templates[key] for key in sorted(self._templates)]

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load_directory(self, path: Union[str, Path]) -> None:
        """Load service configs, ``limits.yaml`` and ``templates/`` from ``path``.

        Service configs are loaded first so that template references can be
        checked against them.
        """

        root = Path(path)
        if not root.is_dir():
            raise ConfigurationError(f"Configuration directory '{root}' does not exist")

        templates_dir = root / TEMPLATES_DIR
        config_files: List[Path] = []
        limit_files: List[Path] = []
        for file_path in sorted(root.rglob("*")):
            if not file_path.is_file() or file_path.suffix.lower() not in _YAML_SUFFIXES:
                continue
            if templates_dir in file_path.parents:
                continue
            if file_path.name == LIMITS_FILE:
                limit_files.append(file_path)
            else:
                config_files.append(file_path)

        for file_path in config_files:
            self._load_config_file(file_path)
        for file_path in limit_files:
            self._load_limits_file(file_path)
        if templates_dir.is_dir():
            for file_path in sorted(templates_dir.rglob("*")):
                if file_path.is_file() and file_path.suffix.lower() in _YAML_SUFFIXES:
                    self._load_template_file(file_path)

        LOGGER.info(
            "Loaded lab configuration",
            extra={
                "config_dir": str(root),
                "service_configs": len(self._configs),
                "service_limits": len(self._limits),
                "templates": len(self._templates),
            },
        )

    def _read_yaml(self, file_path: Path) -> Any:
        try:
            with open(file_path) as handle:
                return yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Failed to parse {file_path}: {exc}") from exc

    def _load_config_file(self, file_path: Path) -> None:
        data = self._read_yaml(file_path)
        if not isinstance(data, dict):
            raise ConfigurationError(f"{file_path}: service config must be a mapping")
        try:
            config = ServiceConfig.from_dict(data)
        except ConfigurationError as exc:
            raise ConfigurationError(f"{file_path}: {exc}") from exc
        if config.type not in self._factories:
            raise ConfigurationError(
                f"{file_path}: no plugin registered for service type '{config.type}'"
            )
        self.add_config(config)
        LOGGER.debug(
            "Loaded service config",
            extra={"service_id": config.id, "service_type": config.type, "file": str(file_path)},
        )

    def _load_limits_file(self, file_path: Path) -> None:
        data = self._read_yaml(file_path) or []
        if not isinstance(data, list):
            raise ConfigurationError(f"{file_path}: limits file must contain a list")
        for index, raw in enumerate(data):
            if not isinstance(raw, dict):
                raise ConfigurationError(f"{file_path}: limit {index} must be a mapping")
            try:
                limit = ServiceLimit.from_dict(raw)
            except ConfigurationError as exc:
                raise ConfigurationError(f"{file_path}: limit {index}: {exc}") from exc
            self.add_limit(limit)

    def _load_template_file(self, file_path: Path) -> None:
        data = self._read_yaml(file_path)
        if not isinstance(data, dict):
            raise ConfigurationError(f"{file_path}: template must be a mapping")
        try:
            template = LabTemplate.from_dict(data)
        except ConfigurationError as exc:
            raise ConfigurationError(f"{file_path}: {exc}") from exc
        for service_id in template.service_ids:
            if service_id not in self._configs:
                LOGGER.warning(
                    "Template references an unknown service config",
                    extra={"template_id": template.id, "service_id": service_id},
                )
        self.add_template(template)


__all__ = ["PluginFactory", "ServiceRegistry"]
