"""Pulumi program pieces for a per-lab Kubernetes namespace."""
from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pulumi
from pulumi_kubernetes.core.v1 import Namespace, ResourceQuota, Secret, ServiceAccount
from pulumi_kubernetes.rbac.v1 import RoleBinding

from .network import CIDRRule, NetworkPolicyProfile, build_network_policy
from .storage import VolumeSpec, create_pvc


@dataclass
class QuotaSpec:
    """Hard limits applied to the whole namespace."""

    cpu: Optional[str] = None
    memory: Optional[str] = None
    pods: Optional[int] = None

    def hard(self) -> Dict[str, str]:
        values: Dict[str, str] = {}
        if self.cpu:
            values["limits.cpu"] = self.cpu
        if self.memory:
            values["limits.memory"] = self.memory
        if self.pods:
            values["pods"] = str(self.pods)
        return values


@dataclass
class NamespaceSpec:
    """Everything needed to build one lab namespace."""

    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    service_account: str = "lab-user"
    cluster_role: str = "edit"
    network_profile: NetworkPolicyProfile = NetworkPolicyProfile.ISOLATED
    egress_rules: List[CIDRRule] = field(default_factory=list)
    volumes: List[VolumeSpec] = field(default_factory=list)
    quota: Optional[QuotaSpec] = None


def _decode_token(data: Optional[Dict[str, str]]) -> str:
    encoded = (data or {}).get("token")
    return base64.b64decode(encoded).decode("utf-8") if encoded else ""


def build_lab_namespace(spec: NamespaceSpec) -> pulumi.Output:
    """Declare the namespace and its access objects; return the token output."""

    namespace = Namespace(
        resource_name=spec.name,
        metadata={"name": spec.name, "labels": spec.labels, "annotations": spec.annotations},
    )
    scoped = pulumi.ResourceOptions(depends_on=[namespace])

    account = ServiceAccount(
        resource_name=f"{spec.name}-sa",
        metadata={"name": spec.service_account, "namespace": spec.name},
        opts=scoped,
    )
    RoleBinding(
        resource_name=f"{spec.name}-binding",
        metadata={"name": f"{spec.service_account}-{spec.cluster_role}", "namespace": spec.name},
        role_ref={
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": spec.cluster_role,
        },
        subjects=[{"kind": "ServiceAccount", "name": spec.service_account, "namespace": spec.name}],
        opts=pulumi.ResourceOptions(depends_on=[account]),
    )
    token_secret = Secret(
        resource_name=f"{spec.name}-token",
        metadata={
            "name": f"{spec.service_account}-token",
            "namespace": spec.name,
            "annotations": {"kubernetes.io/service-account.name": spec.service_account},
        },
        type="kubernetes.io/service-account-token",
        opts=pulumi.ResourceOptions(depends_on=[account], additional_secret_outputs=["data"]),
    )

    build_network_policy(
        name=spec.name,
        namespace=spec.name,
        profile=spec.network_profile,
        egress_rules=spec.egress_rules,
        opts=scoped,
    )
    for volume in spec.volumes:
        create_pvc(spec.name, spec.name, volume, opts=scoped)
    if spec.quota and spec.quota.hard():
        ResourceQuota(
            resource_name=f"{spec.name}-quota",
            metadata={"name": f"{spec.name}-quota", "namespace": spec.name},
            spec={"hard": spec.quota.hard()},
            opts=scoped,
        )

    return pulumi.Output.secret(token_secret.data.apply(_decode_token))


__all__ = ["NamespaceSpec", "QuotaSpec", "build_lab_namespace"]
