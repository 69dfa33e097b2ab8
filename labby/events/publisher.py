"""RabbitMQ publishers for lab lifecycle and audit events."""
from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pika

from ..config import RabbitMQConfig

LOGGER = logging.getLogger(__name__)

PERSISTENT_DELIVERY = 2


class RabbitMQPublisher:
    """Publish JSON messages to the lab events exchange.

    Each message opens and closes its own connection.
    """

    def __init__(self, config: RabbitMQConfig) -> None:
        self._config = config
        self._parameters = pika.URLParameters(config.url)

    def _properties(self, routing_key: str, headers: Optional[Dict[str, Any]]) -> pika.BasicProperties:
        merged = {"x-event-type": routing_key, "x-message-id": uuid.uuid4().hex}
        merged.update(headers or {})
        return pika.BasicProperties(
            content_type="application/json",
            delivery_mode=PERSISTENT_DELIVERY,
            message_id=merged["x-message-id"],
            headers=merged,
        )

    def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        exchange = self._config.exchange
        body = json.dumps(payload, default=str).encode("utf-8")
        connection = pika.BlockingConnection(self._parameters)
        try:
            channel = connection.channel()
            channel.exchange_declare(exchange=exchange, exchange_type="topic", durable=True)
            channel.basic_publish(
                exchange=exchange,
                routing_key=routing_key,
                body=body,
                properties=self._properties(routing_key, headers),
            )
        finally:
            if connection.is_open:
                connection.close()
        LOGGER.debug("Published %s to %s", routing_key, exchange)


class AuditEventPublisher:
    """Publish lab lifecycle events; never raises.

    Without a broker the events are only logged, which keeps the orchestrators
    usable in tests and single-node deployments.
    """

    def __init__(self, publisher: Optional[RabbitMQPublisher] = None) -> None:
        self._publisher = publisher

    def publish(
        self,
        lab_id: str,
        action: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        LOGGER.info("Lab event", extra={"lab_id": lab_id, "action": action, "outcome": outcome})
        if self._publisher is None:
            return
        message = {
            "type": action,
            "labId": lab_id,
            "outcome": outcome,
            "details": details or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._publisher.publish(action, message)
        except Exception:
            LOGGER.exception("Could not deliver lab event", extra={"lab_id": lab_id, "action": action})


__all__ = ["AuditEventPublisher", "RabbitMQPublisher"]
