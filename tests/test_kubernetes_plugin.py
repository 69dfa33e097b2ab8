"""Kubernetes namespace plugin with the Pulumi Automation API stubbed out."""
from __future__ import annotations

import threading
import time
from datetime import timedelta
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

import labby.plugins.kubernetes_namespace as k8s_module
from labby.config import PulumiConfig
from labby.errors import CleanupFailed, SetupFailed
from labby.models import Lab, ServiceConfig, utcnow
from labby.orchestration.plugin import CleanupContext, ServiceDataScope, SetupContext
from labby.plugins.kubernetes_namespace import KubernetesNamespacePlugin
from labby.services.repository import InMemoryLabRepository


class StackNotFound(Exception):
    pass


class FakeWorkspace:
    def __init__(self) -> None:
        self.plugins: List[tuple] = []
        self.removed: List[str] = []

    def install_plugin(self, name: str, version: str) -> None:
        self.plugins.append((name, version))

    def remove_stack(self, stack_name: str) -> None:
        self.removed.append(stack_name)


class FakeStack:
    def __init__(self, name: str, token: Optional[str] = "sa-token", fail_up: bool = False, fail_destroy: bool = False):
        self.name = name
        self.token = token
        self.fail_up = fail_up
        self.fail_destroy = fail_destroy
        self.workspace = FakeWorkspace()
        self.config: Dict[str, Any] = {}
        self.actions: List[str] = []

    def set_config(self, key: str, value: Any) -> None:
        self.config[key] = value

    def refresh(self, on_output=None) -> None:
        self.actions.append("refresh")

    def up(self, on_output=None):
        self.actions.append("up")
        if self.fail_up:
            raise RuntimeError("cluster unreachable")
        outputs = {"namespace": SimpleNamespace(value="ns")}
        if self.token is not None:
            outputs["token"] = SimpleNamespace(value=self.token)
        return SimpleNamespace(outputs=outputs)

    def destroy(self, on_output=None) -> None:
        self.actions.append("destroy")
        if self.fail_destroy:
            raise RuntimeError("finalizer stuck")


class FakeAutomation:
    """Replaces ``pulumi.automation`` inside the plugin module."""

    StackNotFoundError = StackNotFound

    def __init__(self, **stack_options: Any) -> None:
        self.stack_options = stack_options
        self.stacks: Dict[str, FakeStack] = {}
        self.selected: List[dict] = []

    @staticmethod
    def ConfigValue(value: str, secret: bool = False):
        return SimpleNamespace(value=value, secret=secret)

    def create_or_select_stack(self, stack_name: str, project_name: str, program) -> FakeStack:
        self.selected.append({"stack_name": stack_name, "project_name": project_name, "program": program})
        stack = self.stacks.setdefault(stack_name, FakeStack(stack_name, **self.stack_options))
        return stack

    def select_stack(self, stack_name: str, project_name: str, program) -> FakeStack:
        self.selected.append({"stack_name": stack_name, "project_name": project_name, "program": program})
        if stack_name not in self.stacks:
            raise StackNotFound(stack_name)
        return self.stacks[stack_name]


@pytest.fixture
def lab_repo():
    repository = InMemoryLabRepository()
    now = utcnow()
    lab = Lab(id="abc123", name="Intro", owner_id="Alice@Example.com", started_at=now, ends_at=now + timedelta(hours=1))
    repository.create_lab(lab)
    return repository, lab


def _install(monkeypatch, **stack_options) -> FakeAutomation:
    fake = FakeAutomation(**stack_options)
    monkeypatch.setattr(k8s_module, "auto", fake)
    return fake


def _plugin(**config) -> KubernetesNamespacePlugin:
    return KubernetesNamespacePlugin(
        ServiceConfig(id="k8s", name="Kubernetes", type="kubernetes_namespace", config=config),
        PulumiConfig(),
    )


def _setup_context(repository, lab, credentials) -> SetupContext:
    return SetupContext(
        lab_id=lab.id,
        lab_name=lab.name,
        owner_id=lab.owner_id,
        cancel_event=threading.Event(),
        deadline=time.monotonic() + 30,
        duration=lab.duration,
        ends_at=lab.ends_at,
        service_data=ServiceDataScope(repository, lab.id, "k8s"),
        credential_sink=credentials.append,
        service_id="k8s",
    )


def _cleanup_context(lab, data) -> CleanupContext:
    return CleanupContext(
        lab_id=lab.id,
        lab_name=lab.name,
        owner_id=lab.owner_id,
        cancel_event=threading.Event(),
        deadline=time.monotonic() + 30,
        service_data=data,
        service_id="k8s",
    )


class TestSetup:
    def test_provisions_namespace_and_issues_token(self, monkeypatch, lab_repo) -> None:
        repository, lab = lab_repo
        fake = _install(monkeypatch)
        credentials = []

        _plugin(api_server="https://k8s.example:6443").execute_setup(_setup_context(repository, lab, credentials))

        stack = fake.stacks["lab-abc123-k8s"]
        assert fake.selected[0]["project_name"] == "labby-labs"
        assert stack.actions == ["refresh", "up"]
        assert stack.workspace.plugins == [("kubernetes", "v4.6.0")]
        [credential] = credentials
        assert credential.username == "system:serviceaccount:lab-abc123:lab-user"
        assert credential.password == "sa-token"
        assert credential.url == "https://k8s.example:6443"
        assert credential.notes == "Namespace: lab-abc123"
        assert repository.get_lab_by_id(lab.id).service_data["k8s"] == {
            "stack_name": "lab-abc123-k8s",
            "namespace": "lab-abc123",
        }

    def test_kubeconfig_and_context_are_passed_to_stack(self, monkeypatch, lab_repo) -> None:
        repository, lab = lab_repo
        fake = _install(monkeypatch)

        _plugin(kubeconfig="apiVersion: v1", context="training", namespace_prefix="Course").execute_setup(
            _setup_context(repository, lab, [])
        )

        stack = fake.stacks["lab-abc123-k8s"]
        assert stack.config["kubernetes:kubeconfig"].secret is True
        assert stack.config["kubernetes:context"].value == "training"
        assert repository.get_lab_by_id(lab.id).service_data["k8s"]["namespace"] == "course-abc123"

    def test_stack_data_recorded_even_when_update_fails(self, monkeypatch, lab_repo) -> None:
        repository, lab = lab_repo
        _install(monkeypatch, fail_up=True)

        with pytest.raises(SetupFailed) as excinfo:
            _plugin().execute_setup(_setup_context(repository, lab, []))

        assert "cluster unreachable" in excinfo.value.message
        assert repository.get_lab_by_id(lab.id).service_data["k8s"]["stack_name"] == "lab-abc123-k8s"

    def test_missing_token_fails_setup(self, monkeypatch, lab_repo) -> None:
        repository, lab = lab_repo
        _install(monkeypatch, token=None)
        credentials = []

        with pytest.raises(SetupFailed):
            _plugin().execute_setup(_setup_context(repository, lab, credentials))
        assert credentials == []

    def test_organization_scopes_stack_name(self, monkeypatch, lab_repo) -> None:
        repository, lab = lab_repo
        fake = _install(monkeypatch)
        plugin = KubernetesNamespacePlugin(
            ServiceConfig(id="k8s", name="Kubernetes", type="kubernetes_namespace"),
            PulumiConfig(organization="acme"),
        )

        plugin.execute_setup(_setup_context(repository, lab, []))

        assert list(fake.stacks) == ["acme/labby-labs/lab-abc123-k8s"]


class TestCleanup:
    def test_destroys_and_removes_stack(self, monkeypatch, lab_repo) -> None:
        repository, lab = lab_repo
        fake = _install(monkeypatch)
        _plugin().execute_setup(_setup_context(repository, lab, []))
        data = repository.get_lab_by_id(lab.id).service_data["k8s"]

        _plugin().execute_cleanup(_cleanup_context(lab, data))

        stack = fake.stacks["lab-abc123-k8s"]
        assert stack.actions[-1] == "destroy"
        assert stack.workspace.removed == ["lab-abc123-k8s"]
        assert fake.selected[-1]["program"] is not None

    def test_nothing_recorded_is_a_noop(self, monkeypatch, lab_repo) -> None:
        _, lab = lab_repo
        fake = _install(monkeypatch)

        _plugin().execute_cleanup(_cleanup_context(lab, {}))

        assert fake.selected == []

    def test_missing_stack_is_already_clean(self, monkeypatch, lab_repo) -> None:
        _, lab = lab_repo
        _install(monkeypatch)

        _plugin().execute_cleanup(_cleanup_context(lab, {"stack_name": "lab-abc123-k8s"}))

    def test_destroy_failure_raises_cleanup_failed(self, monkeypatch, lab_repo) -> None:
        repository, lab = lab_repo
        fake = _install(monkeypatch, fail_destroy=True)
        _plugin().execute_setup(_setup_context(repository, lab, []))

        with pytest.raises(CleanupFailed) as excinfo:
            _plugin().execute_cleanup(_cleanup_context(lab, {"stack_name": "lab-abc123-k8s"}))

        assert "finalizer stuck" in excinfo.value.message
        assert fake.stacks["lab-abc123-k8s"].workspace.removed == []
