"""
Caregiver action pipeline — evaluate, execute, record.

A caregiver action runs in three steps:

1. The access evaluator must allow the capability the action needs
   (``DenyError`` otherwise, nothing executes)
2. The caller's operation runs
3. The action is written to the activity log, stamped with the time the
   operation completed

The log write never undoes a completed action. If it still fails after the
logger's own retries, the record is queued in ``pending_records`` and an
error is logged. The queue is retried before every later write and by
``flush_pending``. A grant's records are written strictly in the order its
actions completed: while a grant has queued records, its new records queue
behind them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import UUID

from hands_and_hope.access.errors import ActivityLogError, ValidationError
from hands_and_hope.access.evaluator import AccessDecision, AccessEvaluator, parse_capability
from hands_and_hope.access.schema import (
    ActivityAction,
    ActivityRecord,
    Capability,
    parse_grant_id,
)
from hands_and_hope.ledger.service import ActivityLogger, parse_action

logger = logging.getLogger(__name__)


ACTION_CAPABILITIES: dict[ActivityAction, Capability] = {
    ActivityAction.EDITED_PRODUCT: Capability.MANAGE_PRODUCTS,
    ActivityAction.ADDED_PRODUCT: Capability.MANAGE_PRODUCTS,
    ActivityAction.DELETED_PRODUCT: Capability.MANAGE_PRODUCTS,
    ActivityAction.RESPONDED_TO_INQUIRY: Capability.RESPOND_TO_INQUIRIES,
    ActivityAction.WITHDREW_FUNDS: Capability.WITHDRAW_MONEY,
    ActivityAction.UPDATED_SHIPMENT: Capability.MANAGE_SHIPMENTS,
    ActivityAction.EDITED_PROFILE: Capability.EDIT_PROFILE,
    ActivityAction.EDITED_BIO: Capability.EDIT_BIO,
    ActivityAction.EDITED_STORE_NAME: Capability.EDIT_STORE_NAME,
    ActivityAction.VIEWED_RESOURCE: Capability.VIEW_PROFILE,
}


@dataclass
class PendingActivity:
    """An activity record whose write is still outstanding."""

    grant_id: str
    action: ActivityAction
    action_details: str
    resource_type: str
    occurred_at: datetime
    resource_name: str | None = None


@dataclass
class ActionOutcome:
    """What happened when a caregiver action went through the pipeline."""

    decision: AccessDecision
    result: Any = None
    record: ActivityRecord | None = None

    @property
    def queued(self) -> bool:
        """True when the action ran but its activity record is still queued."""
        return self.record is None


class CaregiverActionPipeline:
    """
    Runs caregiver actions through the evaluator and into the activity log.

    Safe to share between request threads: the queue and every log write go
    through one lock, so a grant's records cannot overtake each other.
    """

    def __init__(self, evaluator: AccessEvaluator, activity_logger: ActivityLogger) -> None:
        self.evaluator = evaluator
        self.activity_logger = activity_logger
        self.pending_records: list[PendingActivity] = []
        self._lock = threading.RLock()

    def perform(
        self,
        grant_id: UUID | str,
        action: ActivityAction | str,
        action_details: str,
        resource_type: str,
        resource_name: str | None = None,
        operation: Callable[[], Any] | None = None,
        capability: Capability | str | None = None,
    ) -> ActionOutcome:
        """
        Perform a caregiver action.

        Args:
            grant_id: Grant the caregiver session is tagged with.
            action: Activity tag describing the action.
            action_details: Free-text description for the owner's log.
            resource_type: Kind of resource touched (product, inquiry, ...).
            resource_name: Name of the resource, if any.
            operation: The mutation itself; runs only when allowed.
            capability: Required capability. Defaults to the one mapped to
                ``action`` in ``ACTION_CAPABILITIES``.

        Raises:
            DenyError: The grant does not allow the capability.
            ValidationError: Unknown action or capability.
        """
        parsed_action = parse_action(action)
        if not (resource_type or "").strip():
            raise ValidationError("resourceType is required")
        required = (
            parse_capability(capability)
            if capability is not None
            else ACTION_CAPABILITIES[parsed_action]
        )

        decision = self.evaluator.require(grant_id, required)
        result = operation() if operation is not None else None

        pending = PendingActivity(
            grant_id=str(parse_grant_id(grant_id)),
            action=parsed_action,
            action_details=action_details,
            resource_type=resource_type,
            occurred_at=datetime.now(timezone.utc),
            resource_name=resource_name,
        )
        with self._lock:
            if self._has_pending(pending.grant_id):
                self._flush()
            if self._has_pending(pending.grant_id):
                self.pending_records.append(pending)
                logger.error(
                    "Caregiver action completed; earlier records still queued, "
                    "queued behind them: grant=%s action=%s queued=%d",
                    pending.grant_id, parsed_action.value, len(self.pending_records),
                )
                return ActionOutcome(decision=decision, result=result)
            try:
                record = self._write(pending)
            except ActivityLogError as exc:
                self.pending_records.append(pending)
                logger.error(
                    "Caregiver action completed but not logged; queued for retry: "
                    "grant=%s action=%s error=%s",
                    pending.grant_id, parsed_action.value, exc,
                )
                record = None

        return ActionOutcome(decision=decision, result=result, record=record)

    def flush_pending(self) -> int:
        """
        Retry queued activity records in order.

        A grant whose record still fails keeps that record and every later
        one queued, so per-grant order is kept; other grants still flush.
        Returns the number of records written.
        """
        with self._lock:
            return self._flush()

    def _flush(self) -> int:
        written = 0
        blocked: set[str] = set()
        remaining: list[PendingActivity] = []
        for pending in self.pending_records:
            if pending.grant_id in blocked:
                remaining.append(pending)
                continue
            try:
                self._write(pending)
            except ActivityLogError as exc:
                blocked.add(pending.grant_id)
                remaining.append(pending)
                logger.error(
                    "Queued activity record still failing: grant=%s error=%s",
                    pending.grant_id, exc,
                )
                continue
            written += 1
        self.pending_records[:] = remaining
        return written

    def _has_pending(self, grant_id: str) -> bool:
        return any(p.grant_id == grant_id for p in self.pending_records)

    def _write(self, pending: PendingActivity) -> ActivityRecord:
        return self.activity_logger.record(
            grant_id=pending.grant_id,
            action=pending.action,
            action_details=pending.action_details,
            resource_type=pending.resource_type,
            resource_name=pending.resource_name,
            occurred_at=pending.occurred_at,
        )
