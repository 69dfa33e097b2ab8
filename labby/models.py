"""Domain models for labs, credentials, service configs and templates."""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError


class LabStatus(str, Enum):
    """Lifecycle states of a lab lease."""

    PROVISIONING = "provisioning"
    READY = "ready"
    ERROR = "error"
    EXPIRED = "expired"


class StepStatus(str, Enum):
    """Progress states reported for each service and sub-step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({LabStatus.PROVISIONING, LabStatus.READY})

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Return a short, human readable identifier."""

    return uuid.uuid4().hex[:8]


def parse_duration(value: Any) -> timedelta:
    """Parse ``"90m"``, ``"2h"``, ``"1h30m"`` or a number of minutes."""

    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(minutes=value)
    text = str(value).strip().lower()
    if not text:
        raise ConfigurationError("Duration must not be empty")
    position = 0
    total = timedelta()
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        amount = float(match.group(1))
        unit = match.group(2)
        if unit == "h":
            total += timedelta(hours=amount)
        elif unit == "m":
            total += timedelta(minutes=amount)
        else:
            total += timedelta(seconds=amount)
        position = match.end()
    if position != len(text) or total <= timedelta():
        raise ConfigurationError(f"Invalid duration format: {value!r}")
    return total


def _dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Credential:
    """One access grant produced by a plugin during setup."""

    lab_id: str
    label: str
    username: str
    password: str
    expires_at: datetime
    url: Optional[str] = None
    notes: Optional[str] = None
    service_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lab_id": self.lab_id,
            "label": self.label,
            "username": self.username,
            "password": self.password,
            "url": self.url,
            "expires_at": _iso(self.expires_at),
            "notes": self.notes,
            "service_id": self.service_id,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        return cls(
            id=data["id"],
            lab_id=data["lab_id"],
            label=data["label"],
            username=data["username"],
            password=data["password"],
            url=data.get("url"),
            expires_at=_dt(data["expires_at"]),
            notes=data.get("notes"),
            service_id=data.get("service_id"),
            created_at=_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class Lab:
    """A time-boxed lease of external resources owned by one user."""

    id: str
    name: str
    owner_id: str
    started_at: datetime
    ends_at: datetime
    status: LabStatus = LabStatus.PROVISIONING
    template_id: Optional[str] = None
    used_services: List[str] = field(default_factory=list)
    service_data: Dict[str, Dict[str, str]] = field(default_factory=dict)
    credentials: List[Credential] = field(default_factory=list)
    setup_failures: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def duration(self) -> timedelta:
        return self.ends_at - self.started_at

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.ends_at

    def to_dict(self, include_credentials: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "ends_at": _iso(self.ends_at),
            "template_id": self.template_id,
            "used_services": list(self.used_services),
            "service_data": {key: dict(value) for key, value in self.service_data.items()},
            "setup_failures": dict(self.setup_failures),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_credentials:
            payload["credentials"] = [credential.to_dict() for credential in self.credentials]
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lab":
        return cls(
            id=data["id"],
            name=data["name"],
            owner_id=data["owner_id"],
            status=LabStatus(data.get("status", LabStatus.PROVISIONING.value)),
            started_at=_dt(data["started_at"]),
            ends_at=_dt(data["ends_at"]),
            template_id=data.get("template_id"),
            used_services=list(data.get("used_services") or []),
            service_data={key: dict(value) for key, value in (data.get("service_data") or {}).items()},
            credentials=[Credential.from_dict(item) for item in data.get("credentials") or []],
            setup_failures=dict(data.get("setup_failures") or {}),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass
class ServiceConfig:
    """A named configuration for one plugin type."""

    id: str
    name: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    logo: Optional[str] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "config": dict(self.config),
            "description": self.description,
            "logo": self.logo,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceConfig":
        for key in ("id", "name", "type"):
            if not data.get(key):
                raise ConfigurationError(f"Service config {key} is required")
        config = data.get("config") or {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"Service config '{data['id']}' config must be a mapping")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            type=str(data["type"]),
            config=dict(config),
            description=data.get("description") or "",
            logo=data.get("logo"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class ServiceLimit:
    """Capacity constraint for one service id."""

    id: str
    service_id: str
    max_labs: int = 10
    max_duration: int = 480
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service_id": self.service_id,
            "max_labs": self.max_labs,
            "max_duration": self.max_duration,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceLimit":
        if not data.get("id"):
            raise ConfigurationError("Service limit id is required")
        if not data.get("service_id"):
            raise ConfigurationError("Service limit service_id is required")
        limit = cls(
            id=str(data["id"]),
            service_id=str(data["service_id"]),
            max_labs=int(data.get("max_labs", 10)),
            max_duration=int(data.get("max_duration", 480)),
            is_active=bool(data.get("is_active", True)),
        )
        if limit.max_labs <= 0:
            raise ConfigurationError("Service limit max_labs must be greater than 0")
        if limit.max_duration <= 0:
            raise ConfigurationError("Service limit max_duration must be greater than 0")
        return limit


@dataclass(frozen=True)
class ServiceReference:
    """A template's reference to a service config, by id."""

    service_id: str
    name: str
    description: str = ""


@dataclass
class LabTemplate:
    """A named bundle of services with a default lease length."""

    id: str
    name: str
    expiration_duration: timedelta
    services: List[ServiceReference] = field(default_factory=list)
    description: str = ""

    @property
    def service_ids(self) -> List[str]:
        return [service.service_id for service in self.services]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "expiration_minutes": int(self.expiration_duration.total_seconds() // 60),
            "services": [
                {"service_id": ref.service_id, "name": ref.name, "description": ref.description}
                for ref in self.services
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LabTemplate":
        if not data.get("id"):
            raise ConfigurationError("Template id is required")
        if not data.get("name"):
            raise ConfigurationError("Template name is required")
        if not data.get("expiration_duration"):
            raise ConfigurationError("Template expiration_duration is required")
        services: List[ServiceReference] = []
        for index, raw in enumerate(data.get("services") or []):
            if not raw.get("name"):
                raise ConfigurationError(f"Template service {index} name is required")
            if not raw.get("service_id"):
                raise ConfigurationError(f"Template service {index} service_id is required")
            services.append(
                ServiceReference(
                    service_id=str(raw["service_id"]),
                    name=str(raw["name"]),
                    description=raw.get("description") or "",
                )
            )
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            description=data.get("description") or "",
            expiration_duration=parse_duration(data["expiration_duration"]),
            services=services,
        )


@dataclass
class ServiceUsage:
    """Current usage of a service against its limit."""

    service_id: str
    active_labs: int
    limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"service_id": self.service_id, "active_labs": self.active_labs, "limit": self.limit}


__all__ = [
    "ACTIVE_STATUSES",
    "Credential",
    "Lab",
    "LabStatus",
    "LabTemplate",
    "ServiceConfig",
    "ServiceLimit",
    "ServiceReference",
    "ServiceUsage",
    "StepStatus",
    "generate_id",
    "parse_duration",
    "utcnow",
]
