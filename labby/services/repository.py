"""Storage interface for labs, credentials, service configs and limits."""
from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..errors import LabNotFound
from ..models import (
    ACTIVE_STATUSES,
    Credential,
    Lab,
    LabStatus,
    ServiceConfig,
    ServiceLimit,
    utcnow,
)

LOGGER = logging.getLogger(__name__)


class LabRepository(ABC):
    """Everything the orchestrator and reaper need from durable storage.

    Lab objects returned by a repository are detached copies: mutating them has
    no effect until ``update_lab`` (or one of the field-level writers) is called.
    The field-level writers exist so that concurrently running plugins can each
    record their own progress without overwriting one another.
    """

    # Labs ------------------------------------------------------------------
    @abstractmethod
    def create_lab(self, lab: Lab) -> None: ...

    @abstractmethod
    def get_lab_by_id(self, lab_id: str) -> Lab: ...

    @abstractmethod
    def get_labs_by_owner_id(self, owner_id: str) -> List[Lab]: ...

    @abstractmethod
    def get_all_labs(self) -> List[Lab]: ...

    @abstractmethod
    def update_lab(self, lab: Lab) -> None:
        """Persist scalar lab fields (name, owner, times, template)."""

    @abstractmethod
    def delete_lab(self, lab_id: str) -> None:
        """Remove the lab and every credential it owns."""

    @abstractmethod
    def get_expired_labs(self, now: datetime) -> List[Lab]:
        """Labs not yet ``expired`` whose ``ends_at`` is at or before ``now``."""

    @abstractmethod
    def transition_status(
        self, lab_id: str, expected: Iterable[LabStatus], target: LabStatus
    ) -> bool:
        """Atomically move the lab to ``target`` if its status is in ``expected``."""

    @abstractmethod
    def append_used_service(self, lab_id: str, service_id: str) -> None: ...

    @abstractmethod
    def set_service_data(self, lab_id: str, service_id: str, data: Dict[str, str]) -> None: ...

    @abstractmethod
    def record_setup_failure(self, lab_id: str, service_id: str, message: str) -> None: ...

    def count_active_labs_using(self, service_id: str) -> int:
        return sum(
            1
            for lab in self.get_all_labs()
            if lab.status in ACTIVE_STATUSES and service_id in lab.used_services
        )

    # Credentials -----------------------------------------------------------
    @abstractmethod
    def create_credential(self, credential: Credential) -> None: ...

    @abstractmethod
    def get_credentials_by_lab_id(self, lab_id: str) -> List[Credential]: ...

    @abstractmethod
    def delete_credential(self, credential_id: str) -> None: ...

    @abstractmethod
    def delete_credentials_by_lab_id(self, lab_id: str) -> None: ...

    # Service configs and limits -------------------------------------------
    @abstractmethod
    def save_service_config(self, config: ServiceConfig) -> None: ...

    @abstractmethod
    def get_service_config(self, service_id: str) -> Optional[ServiceConfig]: ...

    @abstractmethod
    def get_all_service_configs(self) -> List[ServiceConfig]: ...

    @abstractmethod
    def delete_service_config(self, service_id: str) -> None: ...

    @abstractmethod
    def save_service_limit(self, limit: ServiceLimit) -> None: ...

    @abstractmethod
    def get_service_limit_by_service_id(self, service_id: str) -> Optional[ServiceLimit]: ...

    @abstractmethod
    def get_all_service_limits(self) -> List[ServiceLimit]: ...

    @abstractmethod
    def delete_service_limit(self, service_id: str) -> None: ...


class InMemoryLabRepository(LabRepository):
    """Process-local repository guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._labs: Dict[str, Lab] = {}
        self._credentials: Dict[str, Credential] = {}
        self._configs: Dict[str, ServiceConfig] = {}
        self._limits: Dict[str, ServiceLimit] = {}

    def _require(self, lab_id: str) -> Lab:
        lab = self._labs.get(lab_id)
        if lab is None:
            raise LabNotFound(lab_id)
        return lab

    def _detached(self, lab: Lab) -> Lab:
        result = copy.deepcopy(lab)
        result.credentials = [
            copy.deepcopy(credential)
            for credential in self._credentials.values()
            if credential.lab_id == lab.id
        ]
        return result

    def create_lab(self, lab: Lab) -> None:
        with self._lock:
            if lab.id in self._labs:
                raise ValueError(f"Lab '{lab.id}' already exists")
            stored = copy.deepcopy(lab)
            stored.credentials = []
            self._labs[lab.id] = stored
            for credential in lab.credentials:
                self._credentials[credential.id] = copy.deepcopy(credential)
        LOGGER.debug("Created lab record", extra={"lab_id": lab.id})

    def get_lab_by_id(self, lab_id: str) -> Lab:
        with self._lock:
            return self._detached(self._require(lab_id))

    def get_labs_by_owner_id(self, owner_id: str) -> List[Lab]:
        with self._lock:
            return [self._detached(lab) for lab in self._labs.values() if lab.owner_id == owner_id]

    def get_all_labs(self) -> List[Lab]:
        with self._lock:
            return [self._detached(lab) for lab in self._labs.values()]

    def update_lab(self, lab: Lab) -> None:
        with self._lock:
            stored = self._require(lab.id)
            stored.name = lab.name
            stored.owner_id = lab.owner_id
            stored.started_at = lab.started_at
            stored.ends_at = lab.ends_at
            stored.template_id = lab.template_id
            stored.updated_at = utcnow()

    def delete_lab(self, lab_id: str) -> None:
        with self._lock:
            self._labs.pop(lab_id, None)
            self.delete_credentials_by_lab_id(lab_id)
        LOGGER.debug("Deleted lab record", extra={"lab_id": lab_id})

    def get_expired_labs(self, now: datetime) -> List[Lab]:
        with self._lock:
            return [
                self._detached(lab)
                for lab in self._labs.values()
                if lab.status != LabStatus.EXPIRED and lab.ends_at <= now
            ]

    def transition_status(
        self, lab_id: str, expected: Iterable[LabStatus], target: LabStatus
    ) -> bool:
        allowed = set(expected)
        with self._lock:
            lab = self._require(lab_id)
            if lab.status not in allowed:
                return False
            lab.status = target
            lab.updated_at = utcnow()
            return True

    def append_used_service(self, lab_id: str, service_id: str) -> None:
        with self._lock:
            lab = self._require(lab_id)
            if service_id not in lab.used_services:
                lab.used_services.append(service_id)
                lab.updated_at = utcnow()

    def set_service_data(self, lab_id: str, service_id: str, data: Dict[str, str]) -> None:
        with self._lock:
            lab = self._require(lab_id)
            lab.service_data[service_id] = dict(data)
            lab.updated_at = utcnow()

    def record_setup_failure(self, lab_id: str, service_id: str, message: str) -> None:
        with self._lock:
            lab = self._require(lab_id)
            lab.setup_failures[service_id] = message
            lab.updated_at = utcnow()

    def create_credential(self, credential: Credential) -> None:
        with self._lock:
            self._require(credential.lab_id)
            self._credentials[credential.id] = copy.deepcopy(credential)

    def get_credentials_by_lab_id(self, lab_id: str) -> List[Credential]:
        with self._lock:
            return [
                copy.deepcopy(credential)
                for credential in self._credentials.values()
                if credential.lab_id == lab_id
            ]

    def delete_credential(self, credential_id: str) -> None:
        with self._lock:
            self._credentials.pop(credential_id, None)

    def delete_credentials_by_lab_id(self, lab_id: str) -> None:
        with self._lock:
            for credential_id in [
                key for key, value in self._credentials.items() if value.lab_id == lab_id
            ]:
                del self._credentials[credential_id]

    def save_service_config(self, config: ServiceConfig) -> None:
        with self._lock:
            self._configs[config.id] = copy.deepcopy(config)

    def get_service_config(self, service_id: str) -> Optional[ServiceConfig]:
        with self._lock:
            config = self._configs.get(service_id)
            return copy.deepcopy(config) if config else None

    def get_all_service_configs(self) -> List[ServiceConfig]:
        with self._lock:
            return [copy.deepcopy(config) for config in self._configs.values()]

    def delete_service_config(self, service_id: str) -> None:
        with self._lock:
            self._configs.pop(service_id, None)

    def save_service_limit(self, limit: ServiceLimit) -> None:
        with self._lock:
            self._limits[limit.service_id] = copy.deepcopy(limit)

    def get_service_limit_by_service_id(self, service_id: str) -> Optional[ServiceLimit]:
        with self._lock:
            limit = self._limits.get(service_id)
            return copy.deepcopy(limit) if limit else None

    def get_all_service_limits(self) -> List[ServiceLimit]:
        with self._lock:
            return [copy.deepcopy(limit) for limit in self._limits.values()]

    def delete_service_limit(self, service_id: str) -> None:
        with self._lock:
            self._limits.pop(service_id, None)


__all__ = ["LabRepository", "InMemoryLabRepository"]
