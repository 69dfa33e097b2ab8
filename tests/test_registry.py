"""Service registry and the YAML configuration loader."""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from textwrap import dedent

import pytest

from labby.errors import (
    ConfigurationError,
    ServiceConfigNotFound,
    TemplateNotFound,
    UnknownServiceType,
)
from labby.models import ServiceConfig, ServiceLimit
from labby.orchestration.registry import ServiceRegistry
from labby.services.repository import InMemoryLabRepository

from conftest import Journal, RecordingPlugin


@pytest.fixture
def empty_registry() -> ServiceRegistry:
    registry = ServiceRegistry(InMemoryLabRepository())
    journal = Journal()
    registry.register(RecordingPlugin.type_name, lambda config: RecordingPlugin(config, journal))
    return registry


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dedent(content))


class TestFactories:
    def test_duplicate_type_rejected(self, empty_registry) -> None:
        with pytest.raises(ValueError):
            empty_registry.register("recording", lambda config: None)

    def test_empty_type_rejected(self, empty_registry) -> None:
        with pytest.raises(ValueError):
            empty_registry.register("", lambda config: None)

    def test_resolve_builds_plugin_for_config(self, empty_registry) -> None:
        plugin = empty_registry.resolve(ServiceConfig(id="svc", name="Service", type="recording"))

        assert isinstance(plugin, RecordingPlugin)
        assert plugin.name == "svc"
        assert plugin.display_name == "Service"

    def test_unknown_type(self, empty_registry) -> None:
        with pytest.raises(UnknownServiceType) as excinfo:
            empty_registry.resolve(ServiceConfig(id="svc", name="Service", type="vmware"))
        assert excinfo.value.service_type == "vmware"


class TestLookups:
    def test_lookup_missing_config(self, empty_registry) -> None:
        with pytest.raises(ServiceConfigNotFound):
            empty_registry.lookup_config("nope")

    def test_inactive_config_visible_only_for_cleanup(self, empty_registry) -> None:
        empty_registry.add_config(ServiceConfig(id="old", name="Old", type="recording", is_active=False))

        assert empty_registry.get_config("old") is None
        assert empty_registry.get_config("old", include_inactive=True).id == "old"
        with pytest.raises(ServiceConfigNotFound):
            empty_registry.lookup_config("old")

    def test_config_falls_back_to_repository(self) -> None:
        repository = InMemoryLabRepository()
        repository.save_service_config(ServiceConfig(id="persisted", name="Persisted", type="recording"))
        registry = ServiceRegistry(repository)

        assert registry.lookup_config("persisted").name == "Persisted"

    def test_inactive_limit_means_unlimited(self, empty_registry) -> None:
        empty_registry.add_limit(ServiceLimit(id="l1", service_id="svc", max_labs=1, is_active=False))

        assert empty_registry.lookup_limit("svc") is None

    def test_missing_template(self, empty_registry) -> None:
        with pytest.raises(TemplateNotFound):
            empty_registry.get_template("nope")


class TestLoadDirectory:
    def test_loads_configs_limits_and_templates(self, empty_registry, tmp_path) -> None:
        _write(
            tmp_path / "services" / "k8s.yaml",
            """
            id: k8s
            name: Kubernetes namespace
            type: recording
            description: Per-lab namespace
            config:
              namespace_prefix: training
            """,
        )
        _write(
            tmp_path / "limits.yaml",
            """
            - id: k8s-limit
              service_id: k8s
              max_labs: 3
              max_duration: 120
            """,
        )
        _write(
            tmp_path / "templates" / "intro.yml",
            """
            id: intro
            name: Intro to Kubernetes
            expiration_duration: 1h30m
            services:
              - service_id: k8s
                name: Cluster access
            """,
        )

        empty_registry.load_directory(tmp_path)

        config = empty_registry.lookup_config("k8s")
        assert config.config == {"namespace_prefix": "training"}
        assert empty_registry.lookup_limit("k8s").max_labs == 3
        template = empty_registry.get_template("intro")
        assert template.expiration_duration == timedelta(minutes=90)
        assert template.service_ids == ["k8s"]

    def test_missing_directory(self, empty_registry, tmp_path) -> None:
        with pytest.raises(ConfigurationError):
            empty_registry.load_directory(tmp_path / "absent")

    def test_unregistered_type_is_rejected(self, empty_registry, tmp_path) -> None:
        _write(tmp_path / "vm.yaml", "id: vm\nname: VM\ntype: vsphere\n")

        with pytest.raises(ConfigurationError) as excinfo:
            empty_registry.load_directory(tmp_path)
        assert "vm.yaml" in str(excinfo.value)

    def test_invalid_yaml_is_a_configuration_error(self, empty_registry, tmp_path) -> None:
        _write(tmp_path / "broken.yaml", "id: [unclosed\n")

        with pytest.raises(ConfigurationError):
            empty_registry.load_directory(tmp_path)

    def test_template_requires_duration(self, empty_registry, tmp_path) -> None:
        _write(tmp_path / "templates" / "bad.yaml", "id: bad\nname: Bad\nservices: []\n")

        with pytest.raises(ConfigurationError) as excinfo:
            empty_registry.load_directory(tmp_path)
        assert "expiration_duration" in str(excinfo.value)

    def test_limit_must_be_positive(self, empty_registry, tmp_path) -> None:
        _write(tmp_path / "limits.yaml", "- id: l\n  service_id: s\n  max_labs: 0\n")

        with pytest.raises(ConfigurationError):
            empty_registry.load_directory(tmp_path)

    def test_loaded_configs_are_mirrored_to_repository(self, tmp_path) -> None:
        repository = InMemoryLabRepository()
        registry = ServiceRegistry(repository)
        registry.register("recording", lambda config: RecordingPlugin(config, Journal()))
        _write(tmp_path / "svc.yaml", "id: svc\nname: Svc\ntype: recording\n")

        registry.load_directory(tmp_path)

        assert [config.id for config in repository.get_all_service_configs()] == ["svc"]
