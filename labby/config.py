"""Application configuration module."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RabbitMQConfig(BaseModel):
    """Configuration options for RabbitMQ connections."""

    url: str = Field(..., description="AMQP URL for the RabbitMQ broker")
    exchange: str = Field("labby.events", description="Topic exchange for lab events")
    queue: str = Field("labby.commands", description="Queue name to consume lab commands from")
    prefetch_count: int = Field(5, ge=1, le=50, description="Consumer prefetch count")


class RedisConfig(BaseModel):
    """Configuration for the Redis connection used for lab records."""

    url: str = Field(..., description="Redis connection URL")
    key_prefix: str = Field("labby", description="Namespace prepended to every Redis key")


class PulumiConfig(BaseModel):
    """Pulumi Automation API configuration for the namespace plugin."""

    project_name: str = Field("labby-labs", description="Pulumi project name for lab stacks")
    stack_prefix: str = Field("lab", description="Prefix for generated Pulumi stack names")
    organization: Optional[str] = Field(
        None,
        description=(
            "Optional Pulumi organization name. When provided, stacks will be scoped as"
            " '<org>/<project>/<stack>'."
        ),
    )
    kubernetes_plugin_version: str = Field("v4.6.0", description="pulumi-kubernetes plugin to install")
    refresh_before_update: bool = Field(
        True, description="Refresh stack state from the provider before updating"
    )

    @field_validator("stack_prefix")
    def _normalize_stack_prefix(cls, value: str) -> str:
        return value.replace(" ", "-").lower()


class ProxmoxConfig(BaseModel):
    """Defaults for the Proxmox user plugin; service configs may override them."""

    uri: Optional[str] = None
    admin_user: Optional[str] = None
    admin_pass: Optional[str] = None
    skip_tls_verify: bool = False
    request_timeout_seconds: float = Field(30.0, gt=0)


class ProvisioningConfig(BaseModel):
    """Limits applied to setup and cleanup runs."""

    setup_timeout_seconds: float = Field(900.0, gt=0, description="Per-service setup deadline")
    cleanup_timeout_seconds: float = Field(600.0, gt=0, description="Per-service cleanup deadline")
    max_workers: int = Field(8, ge=1, le=64, description="Concurrent plugin calls per process")
    min_duration_minutes: int = Field(15, ge=1)
    max_duration_minutes: int = Field(480, ge=1)

    @model_validator(mode="after")
    def _check_duration_bounds(self) -> "ProvisioningConfig":
        if self.min_duration_minutes > self.max_duration_minutes:
            raise ValueError("min_duration_minutes must not exceed max_duration_minutes")
        return self


class ReaperConfig(BaseModel):
    """Background expiration reaper settings."""

    enabled: bool = True
    interval_seconds: float = Field(60.0, gt=0)
    error_retention_minutes: int = Field(
        60, ge=1, description="How long a lab may stay in error before it is reaped"
    )
    expired_retention_minutes: int = Field(
        1440, ge=0, description="How long stopped labs stay visible before the record is purged"
    )
    max_workers: int = Field(4, ge=1, le=32)


class LoggingConfig(BaseModel):
    """Simple logging configuration."""

    level: str = Field("INFO", description="Application log level")


class AppConfig(BaseSettings):
    """Top-level application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LABBY_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    redis: Optional[RedisConfig] = None
    rabbitmq: Optional[RabbitMQConfig] = None
    pulumi: PulumiConfig = Field(default_factory=PulumiConfig)
    proxmox: ProxmoxConfig = Field(default_factory=ProxmoxConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    reaper: ReaperConfig = Field(default_factory=ReaperConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    config_dir: Optional[str] = Field(
        None,
        description="Directory holding service configs, limits.yaml and templates/",
    )
    api_prefix: str = Field("/api/v1", description="Base prefix for FastAPI routes")
    service_name: str = Field("labby-lab-service", description="Service identifier")


@lru_cache
def get_settings() -> AppConfig:
    """Return a cached instance of the application settings."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "RabbitMQConfig",
    "RedisConfig",
    "PulumiConfig",
    "ProxmoxConfig",
    "ProvisioningConfig",
    "ReaperConfig",
    "LoggingConfig",
    "get_settings",
]
