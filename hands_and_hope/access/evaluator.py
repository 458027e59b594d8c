"""
Access Evaluator — caregiver capability enforcement.

Every caregiver-initiated mutation passes through this evaluator before it
executes. The check is a flat lookup of one flag on the grant's permission
set; there is no capability hierarchy. Decisions are:

- ALLOW: grant is active and the capability flag is set
- DENY (grant_inactive): grant unknown, pending, or revoked
- DENY (capability_not_granted): grant active but flag not set

Evaluation reads the grant row in a fresh session each time, so a revoke
that has committed is observed by every later evaluation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from hands_and_hope.access.errors import DenyError, ValidationError
from hands_and_hope.access.grants import grant_from_row, load_grant
from hands_and_hope.access.schema import (
    Capability,
    GrantStatus,
    PermissionSet,
    PermissionSummary,
    parse_grant_id,
)
from hands_and_hope.ledger.database import Database
from hands_and_hope.ledger.models import CaregiverGrantDB

logger = logging.getLogger(__name__)


class AccessOutcome(str, Enum):
    """Result of an access evaluation."""

    ALLOW = "allow"
    DENY = "deny"


class DenyReason(str, Enum):
    GRANT_INACTIVE = "grant_inactive"
    CAPABILITY_NOT_GRANTED = "capability_not_granted"


@dataclass
class AccessDecision:
    """Result of evaluating one capability against one grant."""

    outcome: AccessOutcome
    grant_id: str
    capability: Capability
    reason: DenyReason | None = None

    @property
    def is_allowed(self) -> bool:
        return self.outcome == AccessOutcome.ALLOW

    def to_dict(self) -> dict:
        return {
            "grantId": self.grant_id,
            "capability": self.capability.value,
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
        }


def parse_capability(capability: Capability | str) -> Capability:
    """Coerce a capability name (camelCase or snake_case) to :class:`Capability`."""
    if isinstance(capability, Capability):
        return capability
    parsed = Capability.lookup(str(capability))
    if parsed is None:
        raise ValidationError(f"Unknown capability: {capability!r}")
    return parsed


class AccessEvaluator:
    """
    Decides whether a caregiver may exercise a capability under a grant.

    This evaluator has no side effects; recording the action afterwards is
    the job of the activity logger (see ``pipeline.CaregiverActionPipeline``).
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    def evaluate(
        self,
        grant_id: UUID | str,
        capability: Capability | str,
    ) -> AccessDecision:
        """
        Evaluate a requested capability against a grant.

        Args:
            grant_id: Grant the caregiver session is tagged with.
            capability: Capability required by the action.

        Returns:
            AccessDecision with outcome and, on deny, the reason.

        Raises:
            ValidationError: ``capability`` names no known capability.
        """
        requested = parse_capability(capability)
        parsed_id = parse_grant_id(grant_id)

        with self.db.SessionLocal() as session:
            row = session.get(CaregiverGrantDB, parsed_id) if parsed_id is not None else None
            status = row.status if row is not None else None
            permissions = row.permissions if row is not None else None

        if status != GrantStatus.ACTIVE.value:
            decision = AccessDecision(
                outcome=AccessOutcome.DENY,
                grant_id=str(grant_id),
                capability=requested,
                reason=DenyReason.GRANT_INACTIVE,
            )
        elif not PermissionSet.model_validate(permissions).allows(requested):
            decision = AccessDecision(
                outcome=AccessOutcome.DENY,
                grant_id=str(grant_id),
                capability=requested,
                reason=DenyReason.CAPABILITY_NOT_GRANTED,
            )
        else:
            return AccessDecision(
                outcome=AccessOutcome.ALLOW,
                grant_id=str(grant_id),
                capability=requested,
            )

        logger.info(
            "Caregiver access denied: grant=%s capability=%s reason=%s",
            grant_id, requested.value, decision.reason.value,
        )
        return decision

    def require(
        self,
        grant_id: UUID | str,
        capability: Capability | str,
    ) -> AccessDecision:
        """Evaluate and raise :class:`DenyError` unless allowed."""
        decision = self.evaluate(grant_id, capability)
        if not decision.is_allowed:
            raise DenyError(decision)
        return decision

    def permission_summary(self, grant_id: UUID | str) -> PermissionSummary:
        """
        The caregiver's read-only view of its own grant.

        Raises:
            NotFoundError: Unknown grant.
        """
        with self.db.SessionLocal() as session:
            grant = grant_from_row(load_grant(session, grant_id))
        return PermissionSummary(
            grant_id=grant.grant_id,
            owner_account_id=grant.owner_account_id,
            permission_level=grant.permission_level,
            status=grant.status,
            permissions=grant.permissions,
            granted=grant.permissions.granted(),
        )
