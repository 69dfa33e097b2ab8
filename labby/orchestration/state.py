"""Legal lab status transitions."""
from __future__ import annotations

import logging
from typing import Dict, FrozenSet

from ..errors import InvalidStateTransition
from ..models import LabStatus
from ..services.repository import LabRepository

LOGGER = logging.getLogger(__name__)

TRANSITIONS: Dict[LabStatus, FrozenSet[LabStatus]] = {
    LabStatus.PROVISIONING: frozenset({LabStatus.READY, LabStatus.ERROR}),
    LabStatus.READY: frozenset({LabStatus.EXPIRED}),
    LabStatus.ERROR: frozenset({LabStatus.EXPIRED}),
    LabStatus.EXPIRED: frozenset(),
}


def can_transition(current: LabStatus, target: LabStatus) -> bool:
    return LabStatus(target) in TRANSITIONS[LabStatus(current)]


def sources_for(target: LabStatus) -> FrozenSet[LabStatus]:
    """Statuses from which ``target`` may be entered."""

    return frozenset(source for source, targets in TRANSITIONS.items() if target in targets)


def ensure_transition(lab_id: str, current: LabStatus, target: LabStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(lab_id, LabStatus(current).value, LabStatus(target).value)


def apply_transition(repository: LabRepository, lab_id: str, target: LabStatus) -> bool:
    """Move ``lab_id`` to ``target`` with a compare-and-set on its current status.

    Returns ``False`` when another actor already moved the lab somewhere
    ``target`` cannot be reached from. Raises ``InvalidStateTransition`` only
    when the stored status could never legally reach ``target``.
    """

    target = LabStatus(target)
    if repository.transition_status(lab_id, sources_for(target), target):
        LOGGER.info("Lab status changed", extra={"lab_id": lab_id, "status": target.value})
        return True
    current = repository.get_lab_by_id(lab_id).status
    if current == target:
        return False
    ensure_transition(lab_id, current, target)
    # Lost a race with a concurrent writer; the status it wrote is legal.
    return False


__all__ = [
    "TRANSITIONS",
    "apply_transition",
    "can_transition",
    "ensure_transition",
    "sources_for",
]
