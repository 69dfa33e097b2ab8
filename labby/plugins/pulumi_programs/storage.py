"""Pulumi helpers for lab scratch volumes."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import pulumi
from pulumi_kubernetes.core.v1 import PersistentVolumeClaim


@dataclass
class VolumeSpec:
    """Specification for a persistent volume claim."""

    name: str
    size: str
    storage_class: Optional[str] = None
    access_modes: List[str] = field(default_factory=lambda: ["ReadWriteOnce"])


def create_pvc(
    name: str,
    namespace: str,
    spec: VolumeSpec,
    opts: Optional[pulumi.ResourceOptions] = None,
) -> PersistentVolumeClaim:
    """Create a single PVC inside the lab namespace."""

    claim_spec = {
        "accessModes": spec.access_modes,
        "resources": {"requests": {"storage": spec.size}},
    }
    if spec.storage_class:
        claim_spec["storageClassName"] = spec.storage_class
    return PersistentVolumeClaim(
        resource_name=f"{name}-{spec.name}-pvc",
        metadata={"name": f"{name}-{spec.name}", "namespace": namespace},
        spec=claim_spec,
        opts=opts,
    )


__all__ = ["VolumeSpec", "create_pvc"]
