"""Explicit startup registration of the bundled plugins."""
from __future__ import annotations

from ..config import AppConfig
from ..orchestration.registry import ServiceRegistry
from .kubernetes_namespace import KubernetesNamespacePlugin
from .proxmox_user import ProxmoxUserPlugin


def register_builtin_plugins(registry: ServiceRegistry, settings: AppConfig) -> None:
    registry.register(
        KubernetesNamespacePlugin.type_name,
        lambda config: KubernetesNamespacePlugin(config, settings.pulumi),
    )
    registry.register(
        ProxmoxUserPlugin.type_name,
        lambda config: ProxmoxUserPlugin(config, settings.proxmox),
    )


__all__ = ["register_builtin_plugins"]
