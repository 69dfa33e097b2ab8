"""Pulumi helpers for generating lab namespace network policies."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import pulumi
from pulumi_kubernetes.networking.v1 import NetworkPolicy


class NetworkPolicyProfile(str, Enum):
    """How much traffic a lab namespace may exchange with the outside."""

    ISOLATED = "isolated"
    RESTRICTED = "restricted"
    OPEN = "open"


@dataclass
class CIDRRule:
    """Egress destination allowed for a restricted namespace."""

    cidr: str
    ports: List[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CIDRRule":
        return cls(cidr=str(data["cidr"]), ports=[int(port) for port in data.get("ports") or []])


def _ports(ports: List[int]) -> List[dict]:
    return [{"port": port, "protocol": "TCP"} for port in ports]


_DNS_EGRESS = {
    "to": [{"namespaceSelector": {}, "podSelector": {"matchLabels": {"k8s-app": "kube-dns"}}}],
    "ports": [{"port": 53, "protocol": "UDP"}, {"port": 53, "protocol": "TCP"}],
}


def build_network_policy(
    name: str,
    namespace: str,
    profile: NetworkPolicyProfile,
    egress_rules: Optional[Iterable[CIDRRule]] = None,
    opts: Optional[pulumi.ResourceOptions] = None,
) -> NetworkPolicy:
    """Create the namespace-wide policy for ``profile``.

    Pods may always talk to each other inside the lab namespace. ``isolated``
    allows nothing else, ``restricted`` adds DNS and the listed CIDRs, ``open``
    allows all egress.
    """

    same_namespace = {"podSelector": {}}
    ingress = [{"from": [same_namespace]}]
    egress: List[dict] = [{"to": [same_namespace]}]

    if profile == NetworkPolicyProfile.RESTRICTED:
        egress.append(_DNS_EGRESS)
        for rule in egress_rules or []:
            entry: Dict[str, Any] = {"to": [{"ipBlock": {"cidr": rule.cidr}}]}
            if rule.ports:
                entry["ports"] = _ports(rule.ports)
            egress.append(entry)
    elif profile == NetworkPolicyProfile.OPEN:
        egress = [{}]

    return NetworkPolicy(
        resource_name=f"{name}-network-policy",
        metadata={"name": f"{name}-np", "namespace": namespace},
        spec={
            "podSelector": {},
            "policyTypes": ["Ingress", "Egress"],
            "ingress": ingress,
            "egress": egress,
        },
        opts=opts,
    )


__all__ = ["CIDRRule", "NetworkPolicyProfile", "build_network_policy"]
