"""Event types and payloads exchanged on the message bus."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class EventType(str, Enum):
    """Routing keys for lab commands (consumed) and lifecycle events (published)."""

    LAB_STOP_REQUESTED = "lab.stop_requested"
    LAB_CLEANUP_REQUESTED = "lab.cleanup_requested"
    LAB_READY = "lab.ready"
    LAB_ERROR = "lab.error"
    LAB_EXPIRED = "lab.expired"
    LAB_CLEANUP_FAILED = "lab.cleanup_failed"


COMMAND_EVENTS = (EventType.LAB_STOP_REQUESTED, EventType.LAB_CLEANUP_REQUESTED)


@dataclass
class LabEvent:
    """Command received from the message bus."""

    type: EventType
    lab_id: str
    payload: Optional[Dict[str, Any]] = None
    message_id: Optional[str] = None


__all__ = ["COMMAND_EVENTS", "EventType", "LabEvent"]
