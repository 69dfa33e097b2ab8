"""Redis-backed lab repository."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from redis import Redis
from redis.client import Pipeline
from redis.exceptions import WatchError

from ..errors import LabNotFound
from ..models import Credential, Lab, LabStatus, ServiceConfig, ServiceLimit, utcnow
from .repository import LabRepository

LOGGER = logging.getLogger(__name__)


class RedisLabRepository(LabRepository):
    """Persist labs and their satellites using Redis.

    Each lab is split across several keys so that concurrently running plugins
    can append to ``used_services``, ``service_data`` and credentials without a
    read-modify-write of the whole record. Status changes go through
    ``WATCH``/``MULTI`` so they behave as compare-and-set.

    The client must be created with ``decode_responses=True``.
    """

    LAB_KEY_TEMPLATE = "{prefix}:lab:{lab_id}"
    STATUS_KEY_TEMPLATE = "{prefix}:lab:{lab_id}:status"
    HISTORY_KEY_TEMPLATE = "{prefix}:lab:{lab_id}:history"
    SERVICES_KEY_TEMPLATE = "{prefix}:lab:{lab_id}:services"
    SERVICE_DATA_KEY_TEMPLATE = "{prefix}:lab:{lab_id}:service_data"
    FAILURES_KEY_TEMPLATE = "{prefix}:lab:{lab_id}:failures"
    LAB_CREDENTIALS_KEY_TEMPLATE = "{prefix}:lab:{lab_id}:credentials"
    CREDENTIAL_KEY_TEMPLATE = "{prefix}:credential:{credential_id}"
    OWNER_KEY_TEMPLATE = "{prefix}:owner:{owner_id}:labs"
    CONFIG_KEY_TEMPLATE = "{prefix}:service_config:{service_id}"
    LIMIT_KEY_TEMPLATE = "{prefix}:service_limit:{service_id}"

    def __init__(self, redis_client: Redis, prefix: str = "labby") -> None:
        self._redis = redis_client
        self._prefix = prefix

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------
    def _key(self, template: str, **kwargs: str) -> str:
        return template.format(prefix=self._prefix, **kwargs)

    @property
    def _labs_index(self) -> str:
        return f"{self._prefix}:labs"

    @property
    def _ends_at_index(self) -> str:
        return f"{self._prefix}:labs:ends_at"

    @property
    def _configs_index(self) -> str:
        return f"{self._prefix}:service_configs"

    @property
    def _limits_index(self) -> str:
        return f"{self._prefix}:service_limits"

    def _lab_keys(self, lab_id: str) -> List[str]:
        return [
            self._key(template, lab_id=lab_id)
            for template in (
                self.LAB_KEY_TEMPLATE,
                self.STATUS_KEY_TEMPLATE,
                self.HISTORY_KEY_TEMPLATE,
                self.SERVICES_KEY_TEMPLATE,
                self.SERVICE_DATA_KEY_TEMPLATE,
                self.FAILURES_KEY_TEMPLATE,
                self.LAB_CREDENTIALS_KEY_TEMPLATE,
            )
        ]

    @staticmethod
    def _load_json(raw: Optional[str], **context: Any) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Stored payload is invalid JSON", extra=context)
            return None

    @staticmethod
    def _scalar_payload(lab: Lab) -> str:
        payload = lab.to_dict(include_credentials=False)
        for key in ("status", "used_services", "service_data", "setup_failures"):
            payload.pop(key, None)
        return json.dumps(payload)

    # ------------------------------------------------------------------
    # Labs
    # ------------------------------------------------------------------
    def create_lab(self, lab: Lab) -> None:
        lab_key = self._key(self.LAB_KEY_TEMPLATE, lab_id=lab.id)
        if self._redis.exists(lab_key):
            raise ValueError(f"Lab '{lab.id}' already exists")
        LOGGER.debug("Persisting lab record", extra={"lab_id": lab.id})
        pipe = self._redis.pipeline()
        pipe.set(lab_key, self._scalar_payload(lab))
        pipe.set(self._key(self.STATUS_KEY_TEMPLATE, lab_id=lab.id), lab.status.value)
        pipe.lpush(
            self._key(self.HISTORY_KEY_TEMPLATE, lab_id=lab.id),
            json.dumps({"status": lab.status.value, "timestamp": utcnow().isoformat()}),
        )
        if lab.used_services:
            pipe.rpush(self._key(self.SERVICES_KEY_TEMPLATE, lab_id=lab.id), *lab.used_services)
        for service_id, data in lab.service_data.items():
            pipe.hset(self._key(self.SERVICE_DATA_KEY_TEMPLATE, lab_id=lab.id), service_id, json.dumps(data))
        for service_id, message in lab.setup_failures.items():
            pipe.hset(self._key(self.FAILURES_KEY_TEMPLATE, lab_id=lab.id), service_id, message)
        pipe.sadd(self._labs_index, lab.id)
        pipe.sadd(self._key(self.OWNER_KEY_TEMPLATE, owner_id=lab.owner_id), lab.id)
        pipe.zadd(self._ends_at_index, {lab.id: lab.ends_at.timestamp()})
        pipe.execute()
        for credential in lab.credentials:
            self.create_credential(credential)

    def get_lab_by_id(self, lab_id: str) -> Lab:
        payload = self._load_json(
            self._redis.get(self._key(self.LAB_KEY_TEMPLATE, lab_id=lab_id)), lab_id=lab_id
        )
        status = self._redis.get(self._key(self.STATUS_KEY_TEMPLATE, lab_id=lab_id))
        if payload is None or status is None:
            raise LabNotFound(lab_id)
        payload["status"] = status
        payload["used_services"] = self._redis.lrange(
            self._key(self.SERVICES_KEY_TEMPLATE, lab_id=lab_id), 0, -1
        )
        raw_data = self._redis.hgetall(self._key(self.SERVICE_DATA_KEY_TEMPLATE, lab_id=lab_id))
        payload["service_data"] = {
            service_id: self._load_json(value, lab_id=lab_id, service_id=service_id) or {}
            for service_id, value in raw_data.items()
        }
        payload["setup_failures"] = self._redis.hgetall(
            self._key(self.FAILURES_KEY_TEMPLATE, lab_id=lab_id)
        )
        lab = Lab.from_dict(payload)
        lab.credentials = self.get_credentials_by_lab_id(lab_id)
        return lab

    def _get_many(self, lab_ids: Iterable[str]) -> List[Lab]:
        labs: List[Lab] = []
        for lab_id in sorted(lab_ids):
            try:
                labs.append(self.get_lab_by_id(lab_id))
            except LabNotFound:
                LOGGER.debug("Dangling lab index entry", extra={"lab_id": lab_id})
        return labs

    def get_labs_by_owner_id(self, owner_id: str) -> List[Lab]:
        return self._get_many(self._redis.smembers(self._key(self.OWNER_KEY_TEMPLATE, owner_id=owner_id)))

    def get_all_labs(self) -> List[Lab]:
        return self._get_many(self._redis.smembers(self._labs_index))

    def update_lab(self, lab: Lab) -> None:
        lab_key = self._key(self.LAB_KEY_TEMPLATE, lab_id=lab.id)
        if not self._redis.exists(lab_key):
            raise LabNotFound(lab.id)
        lab.updated_at = utcnow()
        pipe = self._redis.pipeline()
        pipe.set(lab_key, self._scalar_payload(lab))
        pipe.zadd(self._ends_at_index, {lab.id: lab.ends_at.timestamp()})
        pipe.execute()

    def delete_lab(self, lab_id: str) -> None:
        raw = self._redis.get(self._key(self.LAB_KEY_TEMPLATE, lab_id=lab_id))
        payload = self._load_json(raw, lab_id=lab_id) or {}
        self.delete_credentials_by_lab_id(lab_id)
        keys = self._lab_keys(lab_id)
        LOGGER.debug("Clearing Redis keys", extra={"lab_id": lab_id, "keys": keys})
        pipe = self._redis.pipeline()
        pipe.delete(*keys)
        pipe.srem(self._labs_index, lab_id)
        pipe.zrem(self._ends_at_index, lab_id)
        if payload.get("owner_id"):
            pipe.srem(self._key(self.OWNER_KEY_TEMPLATE, owner_id=payload["owner_id"]), lab_id)
        pipe.execute()

    def get_expired_labs(self, now: datetime) -> List[Lab]:
        candidates = self._redis.zrangebyscore(self._ends_at_index, "-inf", now.timestamp())
        return [lab for lab in self._get_many(candidates) if lab.status != LabStatus.EXPIRED]

    def transition_status(
        self, lab_id: str, expected: Iterable[LabStatus], target: LabStatus
    ) -> bool:
        allowed = {status.value for status in expected}
        status_key = self._key(self.STATUS_KEY_TEMPLATE, lab_id=lab_id)
        lab_key = self._key(self.LAB_KEY_TEMPLATE, lab_id=lab_id)
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(status_key, lab_key)
                    current = pipe.get(status_key)
                    payload = self._load_json(pipe.get(lab_key), lab_id=lab_id)
                    if current is None or payload is None:
                        pipe.unwatch()
                        raise LabNotFound(lab_id)
                    if current not in allowed:
                        pipe.unwatch()
                        LOGGER.debug(
                            "Status transition rejected",
                            extra={"lab_id": lab_id, "current": current, "target": target.value},
                        )
                        return False
                    now = utcnow().isoformat()
                    payload["updated_at"] = now
                    pipe.multi()
                    pipe.set(status_key, target.value)
                    pipe.set(lab_key, json.dumps(payload))
                    pipe.lpush(
                        self._key(self.HISTORY_KEY_TEMPLATE, lab_id=lab_id),
                        json.dumps({"status": target.value, "timestamp": now}),
                    )
                    pipe.execute()
                    return True
                except WatchError:
                    LOGGER.debug("Concurrent status write detected; retrying", extra={"lab_id": lab_id})
                    continue

    def _write_to_lab(self, lab_id: str, write: Callable[[Pipeline], Any]) -> None:
        """Run ``write`` in a transaction that only commits while the lab exists."""

        lab_key = self._key(self.LAB_KEY_TEMPLATE, lab_id=lab_id)
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(lab_key)
                    if not pipe.exists(lab_key):
                        pipe.unwatch()
                        raise LabNotFound(lab_id)
                    pipe.multi()
                    write(pipe)
                    pipe.execute()
                    return
                except WatchError:
                    LOGGER.debug("Lab changed during write; retrying", extra={"lab_id": lab_id})
                    continue

    def append_used_service(self, lab_id: str, service_id: str) -> None:
        services_key = self._key(self.SERVICES_KEY_TEMPLATE, lab_id=lab_id)
        lab_key = self._key(self.LAB_KEY_TEMPLATE, lab_id=lab_id)
        with self._redis.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(lab_key, services_key)
                    if not pipe.exists(lab_key):
                        pipe.unwatch()
                        raise LabNotFound(lab_id)
                    if service_id in pipe.lrange(services_key, 0, -1):
                        pipe.unwatch()
                        return
                    pipe.multi()
                    pipe.rpush(services_key, service_id)
                    pipe.execute()
                    return
                except WatchError:
                    continue

    def set_service_data(self, lab_id: str, service_id: str, data: Dict[str, str]) -> None:
        key = self._key(self.SERVICE_DATA_KEY_TEMPLATE, lab_id=lab_id)
        self._write_to_lab(lab_id, lambda pipe: pipe.hset(key, service_id, json.dumps(data)))

    def record_setup_failure(self, lab_id: str, service_id: str, message: str) -> None:
        key = self._key(self.FAILURES_KEY_TEMPLATE, lab_id=lab_id)
        self._write_to_lab(lab_id, lambda pipe: pipe.hset(key, service_id, message))

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    def create_credential(self, credential: Credential) -> None:
        credential_key = self._key(self.CREDENTIAL_KEY_TEMPLATE, credential_id=credential.id)
        index_key = self._key(self.LAB_CREDENTIALS_KEY_TEMPLATE, lab_id=credential.lab_id)

        def write(pipe: Pipeline) -> None:
            pipe.set(credential_key, json.dumps(credential.to_dict()))
            pipe.sadd(index_key, credential.id)

        self._write_to_lab(credential.lab_id, write)

    def get_credentials_by_lab_id(self, lab_id: str) -> List[Credential]:
        credential_ids = self._redis.smembers(self._key(self.LAB_CREDENTIALS_KEY_TEMPLATE, lab_id=lab_id))
        credentials: List[Credential] = []
        for credential_id in credential_ids:
            payload = self._load_json(
                self._redis.get(self._key(self.CREDENTIAL_KEY_TEMPLATE, credential_id=credential_id)),
                credential_id=credential_id,
            )
            if payload:
                credentials.append(Credential.from_dict(payload))
        credentials.sort(key=lambda item: item.created_at)
        return credentials

    def delete_credential(self, credential_id: str) -> None:
        credential_key = self._key(self.CREDENTIAL_KEY_TEMPLATE, credential_id=credential_id)
        payload = self._load_json(self._redis.get(credential_key), credential_id=credential_id)
        pipe = self._redis.pipeline()
        pipe.delete(credential_key)
        if payload:
            pipe.srem(self._key(self.LAB_CREDENTIALS_KEY_TEMPLATE, lab_id=payload["lab_id"]), credential_id)
        pipe.execute()

    def delete_credentials_by_lab_id(self, lab_id: str) -> None:
        index_key = self._key(self.LAB_CREDENTIALS_KEY_TEMPLATE, lab_id=lab_id)
        credential_ids = list(self._redis.smembers(index_key))
        keys = [self._key(self.CREDENTIAL_KEY_TEMPLATE, credential_id=item) for item in credential_ids]
        keys.append(index_key)
        self._redis.delete(*keys)

    # ------------------------------------------------------------------
    # Service configs and limits
    # ------------------------------------------------------------------
    def save_service_config(self, config: ServiceConfig) -> None:
        pipe = self._redis.pipeline()
        pipe.set(self._key(self.CONFIG_KEY_TEMPLATE, service_id=config.id), json.dumps(config.to_dict()))
        pipe.sadd(self._configs_index, config.id)
        pipe.execute()

    def get_service_config(self, service_id: str) -> Optional[ServiceConfig]:
        payload = self._load_json(
            self._redis.get(self._key(self.CONFIG_KEY_TEMPLATE, service_id=service_id)),
            service_id=service_id,
        )
        return ServiceConfig.from_dict(payload) if payload else None

    def get_all_service_configs(self) -> List[ServiceConfig]:
        configs = [self.get_service_config(service_id) for service_id in sorted(self._redis.smembers(self._configs_index))]
        return [config for config in configs if config is not None]

    def delete_service_config(self, service_id: str) -> None:
        pipe = self._redis.pipeline()
        pipe.delete(self._key(self.CONFIG_KEY_TEMPLATE, service_id=service_id))
        pipe.srem(self._configs_index, service_id)
        pipe.execute()

    def save_service_limit(self, limit: ServiceLimit) -> None:
        pipe = self._redis.pipeline()
        pipe.set(self._key(self.LIMIT_KEY_TEMPLATE, service_id=limit.service_id), json.dumps(limit.to_dict()))
        pipe.sadd(self._limits_index, limit.service_id)
        pipe.execute()

    def get_service_limit_by_service_id(self, service_id: str) -> Optional[ServiceLimit]:
        payload = self._load_json(
            self._redis.get(self._key(self.LIMIT_KEY_TEMPLATE, service_id=service_id)),
            service_id=service_id,
        )
        return ServiceLimit.from_dict(payload) if payload else None

    def get_all_service_limits(self) -> List[ServiceLimit]:
        limits = [
            self.get_service_limit_by_service_id(service_id)
            for service_id in sorted(self._redis.smembers(self._limits_index))
        ]
        return [limit for limit in limits if limit is not None]

    def delete_service_limit(self, service_id: str) -> None:
        pipe = self._redis.pipeline()
        pipe.delete(self._key(self.LIMIT_KEY_TEMPLATE, service_id=service_id))
        pipe.srem(self._limits_index, service_id)
        pipe.execute()


__all__ = ["RedisLabRepository"]
