"""Error classes raised by the lab orchestration core.

Pre-flight errors (unknown type, missing config, capacity, bad duration) are
raised synchronously to the caller of ``create_lab_from_template`` before any
lab record exists. ``SetupFailed`` and ``CleanupFailed`` describe a single
plugin's failure; the orchestrators record them as values on progress steps and
reports instead of letting them abort sibling services.
"""
from __future__ import annotations

from typing import Optional


class LabbyError(Exception):
    """Base exception for labby."""


class ConfigurationError(LabbyError):
    """A service config, limit or template definition is invalid."""


class UnknownServiceType(LabbyError):
    """No plugin factory is registered for a service config's type."""

    def __init__(self, service_type: str) -> None:
        super().__init__(f"No plugin registered for service type '{service_type}'")
        self.service_type = service_type


class ServiceConfigNotFound(LabbyError):
    """A service id does not resolve to an active service config."""

    def __init__(self, service_id: str, reason: str = "not found") -> None:
        super().__init__(f"Service config '{service_id}' {reason}")
        self.service_id = service_id
        self.reason = reason


class ServiceCapacityExceeded(LabbyError):
    """The service already serves ``max_labs`` active labs."""

    def __init__(self, service_id: str, active_labs: int, max_labs: int) -> None:
        super().__init__(
            f"Service '{service_id}' is at capacity ({active_labs}/{max_labs} active labs)"
        )
        self.service_id = service_id
        self.active_labs = active_labs
        self.max_labs = max_labs


class TemplateNotFound(LabbyError):
    def __init__(self, template_id: str) -> None:
        super().__init__(f"Lab template '{template_id}' not found")
        self.template_id = template_id


class InvalidLabDuration(LabbyError):
    """The requested lease length falls outside the allowed bounds."""


class LabNotFound(LabbyError):
    def __init__(self, lab_id: str) -> None:
        super().__init__(f"Lab '{lab_id}' not found")
        self.lab_id = lab_id


class InvalidStateTransition(LabbyError):
    def __init__(self, lab_id: str, current: str, target: str) -> None:
        super().__init__(f"Lab '{lab_id}' cannot move from '{current}' to '{target}'")
        self.lab_id = lab_id
        self.current = current
        self.target = target


class ProvisioningAlreadyStarted(LabbyError):
    def __init__(self, lab_id: str) -> None:
        super().__init__(f"Provisioning already started for lab '{lab_id}'")
        self.lab_id = lab_id


class SetupFailed(LabbyError):
    """One service's setup failed; the lab ends in ``error``."""

    def __init__(self, service_id: str, cause: Optional[BaseException] = None, message: Optional[str] = None) -> None:
        self.service_id = service_id
        self.cause = cause
        self.message = message or (str(cause) if cause is not None else "setup failed")
        super().__init__(f"Setup of service '{service_id}' failed: {self.message}")


class CleanupFailed(LabbyError):
    """One service's cleanup failed; reported to operators, never fatal to teardown."""

    def __init__(self, service_id: str, cause: Optional[BaseException] = None, message: Optional[str] = None) -> None:
        self.service_id = service_id
        self.cause = cause
        self.message = message or (str(cause) if cause is not None else "cleanup failed")
        super().__init__(f"Cleanup of service '{service_id}' failed: {self.message}")


class DoubleCleanupAttempt(LabbyError):
    """Cleanup ran for a lab that was not claimed through the single-flight guard.

    Indicates a bug in the caller, never a user-facing condition.
    """


__all__ = [
    "LabbyError",
    "ConfigurationError",
    "UnknownServiceType",
    "ServiceConfigNotFound",
    "ServiceCapacityExceeded",
    "TemplateNotFound",
    "InvalidLabDuration",
    "LabNotFound",
    "InvalidStateTransition",
    "ProvisioningAlreadyStarted",
    "SetupFailed",
    "CleanupFailed",
    "DoubleCleanupAttempt",
]
