"""Contract every provisionable backend implements."""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, ClassVar, Dict, Mapping, Optional, Sequence

from ..models import Credential, ServiceConfig, StepStatus
from ..services.repository import LabRepository

LOGGER = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised by ``raise_if_cancelled`` once the lab's cancel signal is set."""


class ServiceDataScope:
    """Write-through view of one service's slice of a lab's ``service_data``.

    A plugin only ever receives the scope for its own service id, so it cannot
    read or overwrite another plugin's state. Every ``set`` is persisted
    immediately so teardown information survives a process restart.
    """

    def __init__(
        self,
        repository: LabRepository,
        lab_id: str,
        service_id: str,
        initial: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._repository = repository
        self._lab_id = lab_id
        self._service_id = service_id
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    @property
    def service_id(self) -> str:
        return self._service_id

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = str(value)
            snapshot = dict(self._data)
        self._repository.set_service_data(self._lab_id, self._service_id, snapshot)

    def update(self, values: Mapping[str, str]) -> None:
        with self._lock:
            self._data.update({key: str(value) for key, value in values.items()})
            snapshot = dict(self._data)
        self._repository.set_service_data(self._lab_id, self._service_id, snapshot)

    def as_dict(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data


@dataclass
class _BaseContext:
    lab_id: str
    lab_name: str
    owner_id: str
    cancel_event: threading.Event
    deadline: float

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining_seconds(self) -> float:
        """Seconds left before the orchestrator stops waiting for this call."""

        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelled(f"Operation cancelled for lab '{self.lab_id}'")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` early if cancelled."""

        return self.cancel_event.wait(min(seconds, self.remaining_seconds()))


@dataclass
class SetupContext(_BaseContext):
    """Everything a plugin may see or touch while setting up one service."""

    duration: timedelta = field(default_factory=timedelta)
    ends_at: Optional[datetime] = None
    service_data: Optional[ServiceDataScope] = None
    credential_sink: Optional[Callable[[Credential], None]] = None
    progress_sink: Optional[Callable[[str, StepStatus, str], None]] = None
    service_id: str = ""

    def add_credential(
        self,
        label: str,
        username: str,
        password: str,
        url: Optional[str] = None,
        notes: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Credential:
        if self.ends_at is not None:
            if expires_at is None or expires_at > self.ends_at:
                expires_at = self.ends_at
        credential = Credential(
            lab_id=self.lab_id,
            label=label,
            username=username,
            password=password,
            url=url,
            notes=notes,
            expires_at=expires_at,
            service_id=self.service_id or None,
        )
        if self.credential_sink is not None:
            self.credential_sink(credential)
        return credential

    def update_progress(self, step: str, status: StepStatus, message: str = "") -> None:
        if self.progress_sink is not None:
            self.progress_sink(step, StepStatus(status), message)


@dataclass
class CleanupContext(_BaseContext):
    """Read-only view handed to a plugin when tearing down one service."""

    service_data: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    service_id: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.service_data, MappingProxyType):
            self.service_data = MappingProxyType(dict(self.service_data))


class ServicePlugin(ABC):
    """Base class for backend integrations.

    Subclasses set ``type_name`` (the registry discriminator) and ``steps`` (the
    sub-steps announced to the progress tracker), and implement setup and
    cleanup. Errors are raised; the orchestrators turn them into recorded
    failures for this service only.
    """

    type_name: ClassVar[str] = ""
    steps: ClassVar[Sequence[str]] = ()

    def __init__(self, config: ServiceConfig) -> None:
        self.config = config

    @property
    def name(self) -> str:
        return self.config.id

    @property
    def display_name(self) -> str:
        return self.config.name

    @abstractmethod
    def execute_setup(self, ctx: SetupContext) -> None:
        """Create external resources and record what cleanup needs."""

    @abstractmethod
    def execute_cleanup(self, ctx: CleanupContext) -> None:
        """Reverse ``execute_setup``. Must tolerate partial or missing state."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


__all__ = [
    "CleanupContext",
    "OperationCancelled",
    "ServiceDataScope",
    "ServicePlugin",
    "SetupContext",
]
