"""RabbitMQ consumer for lab stop and cleanup commands."""
from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Optional

import pika

from ..config import RabbitMQConfig
from .models import COMMAND_EVENTS, EventType, LabEvent

LOGGER = logging.getLogger(__name__)

RECONNECT_DELAY_SECONDS = 5.0


class EventConsumer:
    """Background thread that consumes lab commands from RabbitMQ."""

    def __init__(self, config: RabbitMQConfig, handler: Callable[[LabEvent], None]) -> None:
        self._config = config
        self._handler = handler
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Optional[pika.adapters.blocking_connection.BlockingChannel] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="lab-event-consumer", daemon=True)
        self._thread.start()
        LOGGER.info("Listening for lab commands", extra={"queue": self._config.queue})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        connection = self._connection
        if connection is not None and connection.is_open:
            # BlockingConnection is not thread safe; close it from its own loop.
            connection.add_callback_threadsafe(connection.close)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        LOGGER.info("Lab command consumer stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._connect()
                self._consume()
            except pika.exceptions.AMQPConnectionError:
                LOGGER.warning(
                    "Lost connection to RabbitMQ, retrying",
                    extra={"retry_in": RECONNECT_DELAY_SECONDS},
                    exc_info=True,
                )
            except Exception:  # pragma: no cover - keeps the thread alive
                LOGGER.exception("Lab command consumer crashed, restarting")
            finally:
                self._close()
            self._stop_event.wait(RECONNECT_DELAY_SECONDS)

    def _connect(self) -> None:
        self._connection = pika.BlockingConnection(pika.URLParameters(self._config.url))
        self._channel = self._connection.channel()
        self._channel.basic_qos(prefetch_count=self._config.prefetch_count)
        self._channel.exchange_declare(exchange=self._config.exchange, exchange_type="topic", durable=True)
        self._channel.queue_declare(queue=self._config.queue, durable=True)
        for event_type in COMMAND_EVENTS:
            self._channel.queue_bind(
                queue=self._config.queue,
                exchange=self._config.exchange,
                routing_key=event_type.value,
            )
        LOGGER.info("Connected to RabbitMQ", extra={"queue": self._config.queue})

    def _consume(self) -> None:
        assert self._channel is not None
        channel = self._channel
        for method, properties, body in channel.consume(self._config.queue, inactivity_timeout=1):
            if self._stop_event.is_set():
                break
            if method is None:
                continue
            headers = properties.headers if properties else None
            try:
                event = parse_event(body, headers)
            except ValueError as exc:
                LOGGER.warning("Dropping malformed lab command", extra={"reason": str(exc)})
                channel.basic_reject(method.delivery_tag, requeue=False)
                continue
            try:
                self._handler(event)
            except Exception:
                # One redelivery per command; a second failure dead-letters it.
                requeue = not method.redelivered
                LOGGER.exception(
                    "Lab command failed",
                    extra={"lab_id": event.lab_id, "event_type": event.type.value, "requeue": requeue},
                )
                channel.basic_nack(method.delivery_tag, requeue=requeue)
            else:
                channel.basic_ack(method.delivery_tag)

    def _close(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        if channel is not None and channel.is_open:
            channel.close()
        if connection is not None and connection.is_open:
            connection.close()


def parse_event(body: bytes, headers: Optional[dict] = None) -> LabEvent:
    """Decode a command message; raises ``ValueError`` for anything unusable.

    The event type may come from the JSON body or the ``x-event-type`` header,
    the lab id from ``labId`` (or ``lab_id``).
    """

    headers = headers or {}
    payload = json.loads(body.decode("utf-8")) if body else {}
    if not isinstance(payload, dict):
        raise ValueError("Lab command body must be a JSON object")
    raw_type = payload.get("type") or headers.get("x-event-type")
    if not raw_type:
        raise ValueError("Received message without event type")
    try:
        event_type = EventType(raw_type)
    except ValueError as exc:
        raise ValueError(f"Unsupported event type: {raw_type}") from exc
    if event_type not in COMMAND_EVENTS:
        raise ValueError(f"Event type {raw_type} is not a command")
    lab_id = payload.get("labId") or payload.get("lab_id")
    if not lab_id:
        raise ValueError("Event payload missing labId")
    event = LabEvent(
        type=event_type,
        lab_id=str(lab_id),
        payload=payload.get("data") or payload,
        message_id=headers.get("x-message-id"),
    )
    LOGGER.debug("Parsed lab command", extra={"event_type": event_type.value, "lab_id": event.lab_id})
    return event


__all__ = ["EventConsumer", "parse_event"]
