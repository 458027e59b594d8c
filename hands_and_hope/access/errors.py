"""
Caregiver access error taxonomy.

Every failure of a grant, evaluator or activity operation is raised as a
subclass of :class:`CaregiverAccessError`. ``DenyError`` is a normal
business outcome (the caregiver lacks a capability) and must not be
retried by callers the way a storage failure might be.
"""

from __future__ import annotations

from typing import Any, Iterable
from uuid import UUID


class CaregiverAccessError(Exception):
    """Base class for caregiver access errors."""

    code = "caregiver_access_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class ValidationError(CaregiverAccessError):
    """Malformed or missing input. User-correctable."""

    code = "validation_error"


class UnknownPresetError(ValidationError):
    """A permission level string that names no known preset."""

    code = "unknown_preset"

    def __init__(self, level: str) -> None:
        super().__init__(f"Unknown permission level: {level!r}")
        self.level = level


class NotFoundError(CaregiverAccessError):
    """Unknown grant or owner account."""

    code = "not_found"


class InvalidStateError(CaregiverAccessError):
    """Operation not legal for the grant's current status."""

    code = "invalid_state"

    def __init__(self, message: str, current_status: str, allowed: Iterable[str]) -> None:
        super().__init__(message)
        self.current_status = current_status
        self.allowed_transitions = list(allowed)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["currentStatus"] = self.current_status
        data["allowedTransitions"] = self.allowed_transitions
        return data


class ConflictError(CaregiverAccessError):
    """A live grant already exists for the same caregiver and owner."""

    code = "conflict"

    def __init__(self, message: str, existing_grant_id: UUID) -> None:
        super().__init__(message)
        self.existing_grant_id = existing_grant_id

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["existingGrantId"] = str(self.existing_grant_id)
        return data


class DenyError(CaregiverAccessError):
    """The access evaluator denied a caregiver action."""

    code = "access_denied"

    def __init__(self, decision: Any) -> None:
        super().__init__(
            f"Capability {decision.capability.value} denied for grant "
            f"{decision.grant_id}: {decision.reason.value}"
        )
        self.decision = decision

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.decision.reason.value
        data["capability"] = self.decision.capability.value
        return data


class ActivityLogError(CaregiverAccessError):
    """An activity record could not be written after retrying."""

    code = "activity_log_unavailable"
