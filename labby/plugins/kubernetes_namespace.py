"""Per-lab Kubernetes namespace provisioned through the Pulumi Automation API."""
from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, Optional

import pulumi
from pulumi import automation as auto

from ..config import PulumiConfig
from ..errors import CleanupFailed, SetupFailed
from ..models import ServiceConfig, StepStatus
from ..orchestration.plugin import CleanupContext, ServicePlugin, SetupContext
from .pulumi_programs.namespace import NamespaceSpec, QuotaSpec, build_lab_namespace
from .pulumi_programs.network import CIDRRule, NetworkPolicyProfile
from .pulumi_programs.storage import VolumeSpec

LOGGER = logging.getLogger(__name__)

STEP_STACK = "Preparing Pulumi stack"
STEP_NAMESPACE = "Provisioning namespace"
STEP_ACCESS = "Issuing access token"

_INVALID_NAME = re.compile(r"[^a-z0-9-]+")


def _dns_label(value: str) -> str:
    return _INVALID_NAME.sub("-", value.lower()).strip("-")[:63]


class KubernetesNamespacePlugin(ServicePlugin):
    """Give each lab its own namespace, service account and access token.

    Recognised ``config`` keys: ``namespace_prefix``, ``cluster_role``,
    ``api_server``, ``kubeconfig``, ``context``, ``network_profile``,
    ``allowed_egress`` (list of ``{cidr, ports}``), ``scratch_volume_size``,
    ``storage_class`` and ``quota`` (``{cpu, memory, pods}``).
    """

    type_name = "kubernetes_namespace"
    steps = (STEP_STACK, STEP_NAMESPACE, STEP_ACCESS)

    def __init__(self, config: ServiceConfig, pulumi_config: PulumiConfig) -> None:
        super().__init__(config)
        self._pulumi = pulumi_config

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------
    def _stack_name(self, lab_id: str) -> str:
        base = f"{self._pulumi.stack_prefix}-{lab_id}-{_dns_label(self.name)}"
        if self._pulumi.organization:
            return f"{self._pulumi.organization}/{self._pulumi.project_name}/{base}"
        return base

    def _namespace_name(self, lab_id: str) -> str:
        prefix = _dns_label(str(self.config.config.get("namespace_prefix", "lab")))
        return _dns_label(f"{prefix}-{lab_id}")

    def _namespace_spec(self, ctx: SetupContext, namespace: str) -> NamespaceSpec:
        options = self.config.config
        volumes = []
        if options.get("scratch_volume_size"):
            volumes.append(
                VolumeSpec(
                    name="scratch",
                    size=str(options["scratch_volume_size"]),
                    storage_class=options.get("storage_class"),
                )
            )
        quota_options = options.get("quota") or {}
        return NamespaceSpec(
            name=namespace,
            labels={
                "app.kubernetes.io/managed-by": "labby",
                "labby.io/lab-id": ctx.lab_id,
                "labby.io/owner": _dns_label(ctx.owner_id),
            },
            annotations={"labby.io/ends-at": ctx.ends_at.isoformat() if ctx.ends_at else ""},
            cluster_role=str(options.get("cluster_role", "edit")),
            network_profile=NetworkPolicyProfile(options.get("network_profile", NetworkPolicyProfile.ISOLATED.value)),
            egress_rules=[CIDRRule.from_dict(item) for item in options.get("allowed_egress") or []],
            volumes=volumes,
            quota=QuotaSpec(**quota_options) if quota_options else None,
        )

    # ------------------------------------------------------------------
    # Stack helpers
    # ------------------------------------------------------------------
    def _program(self, spec: Optional[NamespaceSpec]) -> Callable[[], None]:
        def pulumi_program() -> None:
            if spec is None:
                return
            token = build_lab_namespace(spec)
            pulumi.export("namespace", spec.name)
            pulumi.export("token", token)

        return pulumi_program

    def _configure(self, stack: auto.Stack) -> None:
        stack.workspace.install_plugin("kubernetes", self._pulumi.kubernetes_plugin_version)
        options = self.config.config
        if options.get("kubeconfig"):
            stack.set_config("kubernetes:kubeconfig", auto.ConfigValue(value=str(options["kubeconfig"]), secret=True))
        if options.get("context"):
            stack.set_config("kubernetes:context", auto.ConfigValue(value=str(options["context"])))

    # ------------------------------------------------------------------
    # Plugin contract
    # ------------------------------------------------------------------
    def execute_setup(self, ctx: SetupContext) -> None:
        stack_name = self._stack_name(ctx.lab_id)
        namespace = self._namespace_name(ctx.lab_id)
        spec = self._namespace_spec(ctx, namespace)

        ctx.update_progress(STEP_STACK, StepStatus.RUNNING, f"Selecting stack {stack_name}")
        # Recorded before the update so a failed or interrupted run can still be destroyed.
        ctx.service_data.update({"stack_name": stack_name, "namespace": namespace})
        try:
            stack = auto.create_or_select_stack(
                stack_name=stack_name,
                project_name=self._pulumi.project_name,
                program=self._program(spec),
            )
            self._configure(stack)
        except Exception as exc:
            ctx.update_progress(STEP_STACK, StepStatus.FAILED, str(exc))
            raise SetupFailed(self.name, cause=exc, message=f"failed to prepare stack: {exc}") from exc
        ctx.update_progress(STEP_STACK, StepStatus.COMPLETED, "Stack ready")

        ctx.raise_if_cancelled()
        ctx.update_progress(STEP_NAMESPACE, StepStatus.RUNNING, f"Creating namespace {namespace}")
        try:
            if self._pulumi.refresh_before_update:
                stack.refresh(on_output=LOGGER.debug)
            result = stack.up(on_output=LOGGER.info)
        except Exception as exc:
            LOGGER.exception("Pulumi stack update failed", extra={"stack": stack_name, "lab_id": ctx.lab_id})
            ctx.update_progress(STEP_NAMESPACE, StepStatus.FAILED, str(exc))
            raise SetupFailed(self.name, cause=exc, message=f"stack update failed: {exc}") from exc
        ctx.update_progress(STEP_NAMESPACE, StepStatus.COMPLETED, f"Namespace {namespace} created")

        ctx.update_progress(STEP_ACCESS, StepStatus.RUNNING, "Reading service account token")
        outputs: Dict[str, Any] = result.outputs or {}
        token_output = outputs.get("token")
        token = token_output.value if token_output is not None else ""
        if not token:
            ctx.update_progress(STEP_ACCESS, StepStatus.FAILED, "Service account token was not issued")
            raise SetupFailed(self.name, message="service account token was not issued")
        ctx.add_credential(
            label=self.display_name,
            username=f"system:serviceaccount:{namespace}:{spec.service_account}",
            password=token,
            url=self.config.config.get("api_server"),
            notes=f"Namespace: {namespace}",
        )
        ctx.update_progress(STEP_ACCESS, StepStatus.COMPLETED, "Access token issued")
        LOGGER.info("Lab namespace provisioned", extra={"lab_id": ctx.lab_id, "stack": stack_name})

    def execute_cleanup(self, ctx: CleanupContext) -> None:
        stack_name = ctx.service_data.get("stack_name")
        if not stack_name:
            LOGGER.debug("No stack recorded; nothing to destroy", extra={"lab_id": ctx.lab_id})
            return
        LOGGER.info("Destroying lab namespace stack", extra={"stack": stack_name, "lab_id": ctx.lab_id})
        try:
            stack = auto.select_stack(
                stack_name=stack_name,
                project_name=self._pulumi.project_name,
                program=self._program(None),
            )
        except auto.StackNotFoundError:
            LOGGER.info("Stack not found; nothing to destroy", extra={"stack": stack_name})
            return
        try:
            self._configure(stack)
            stack.destroy(on_output=LOGGER.info)
        except Exception as exc:
            LOGGER.exception("Pulumi stack destroy failed", extra={"stack": stack_name, "lab_id": ctx.lab_id})
            raise CleanupFailed(self.name, cause=exc, message=f"stack destroy failed: {exc}") from exc
        stack.workspace.remove_stack(stack_name)


__all__ = ["KubernetesNamespacePlugin"]
