"""
Caregiver Activity Logger — append-only, hash-chained per grant.

This service records every completed caregiver action against an owner
account and serves the owner's audit views:

- Append a record (per-grant sequence number, SHA-256 chain link)
- Page through a grant's log, newest first
- Combined, filterable feed across all caregivers of an owner
- Verify a grant's chain

Records outlive their grant: revoking a grant never removes its log.
Writes are retried on transient storage errors before giving up with
``ActivityLogError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from hands_and_hope.access.errors import ActivityLogError, NotFoundError, ValidationError
from hands_and_hope.access.grants import load_grant
from hands_and_hope.access.schema import (
    ActivityAction,
    ActivityPage,
    ActivityRecord,
    parse_grant_id,
)
from hands_and_hope.config import settings
from hands_and_hope.ledger.database import Database
from hands_and_hope.ledger.models import ActivityRecordDB, CaregiverGrantDB

logger = logging.getLogger(__name__)


GENESIS_HASH = "0" * 64  # The "previous hash" of each grant's first record

# Storage errors worth another attempt: lock timeouts, dropped connections,
# and two writers racing for the same sequence number.
_TRANSIENT_ERRORS = (OperationalError, IntegrityError)


def record_from_row(
    row: ActivityRecordDB,
    owner_account_id: str | None = None,
) -> ActivityRecord:
    return ActivityRecord(
        activity_id=row.id,
        grant_id=row.grant_id,
        sequence_number=row.sequence_number,
        caregiver_name=row.caregiver_name,
        action=ActivityAction(row.action),
        action_details=row.action_details or "",
        timestamp=row.timestamp,
        resource_type=row.resource_type,
        resource_name=row.resource_name,
        previous_hash=row.previous_hash,
        entry_hash=row.entry_hash,
        owner_account_id=owner_account_id,
    )


def _as_utc(value: datetime) -> datetime:
    # Naive values are taken to be UTC already
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_action(action: ActivityAction | str) -> ActivityAction:
    if isinstance(action, ActivityAction):
        return action
    try:
        return ActivityAction(action)
    except ValueError:
        raise ValidationError(f"Unknown activity action: {action!r}") from None


class ActivityLogger:
    """
    Append-only activity log for caregiver grants.

    Usage:
        activity = ActivityLogger(db)
        record = activity.record(
            grant_id=grant.grant_id,
            action="edited_product",
            action_details="Updated price of Handwoven Basket to $45",
            resource_type="product",
            resource_name="Handwoven Basket",
        )
        page = activity.list_for_grant(grant.grant_id, limit=20)
    """

    def __init__(
        self,
        database: Database,
        retries: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        """
        Args:
            database: Shared caregiver access database.
            retries: Extra attempts after a transient write failure.
            retry_delay: Seconds before the first retry; doubles each time.
        """
        self.db = database
        self.retries = settings.activity_log_retries if retries is None else retries
        self.retry_delay = (
            settings.activity_log_retry_delay_seconds if retry_delay is None else retry_delay
        )

    def record(
        self,
        grant_id: UUID | str,
        action: ActivityAction | str,
        action_details: str,
        resource_type: str,
        resource_name: str | None = None,
        occurred_at: datetime | None = None,
    ) -> ActivityRecord:
        """
        Append an activity record to a grant's log.

        The grant's ``total_actions`` and ``last_action_at`` are updated in
        the same transaction. ``occurred_at`` is when the action completed;
        it defaults to now and is stored in place of the write time.

        Raises:
            ValidationError: Unknown action tag or missing resource type.
            NotFoundError: Unknown grant.
            ActivityLogError: Storage kept failing after all retries.
        """
        parsed_action = parse_action(action)
        resource_type = (resource_type or "").strip()
        if not resource_type:
            raise ValidationError("resourceType is required")
        timestamp = _as_utc(occurred_at or datetime.now(timezone.utc))

        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._append(
                    grant_id, parsed_action, action_details or "", resource_type, resource_name,
                    timestamp,
                )
            except _TRANSIENT_ERRORS as exc:
                if attempt == attempts:
                    raise ActivityLogError(
                        f"Activity record for grant {grant_id} not written after "
                        f"{attempts} attempts: {exc.__class__.__name__}"
                    ) from exc
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Activity write failed (attempt %d/%d), retrying in %.2fs: grant=%s error=%s",
                    attempt, attempts, delay, grant_id, exc,
                )
                time.sleep(delay)

    def _append(
        self,
        grant_id: UUID | str,
        action: ActivityAction,
        action_details: str,
        resource_type: str,
        resource_name: str | None,
        timestamp: datetime,
    ) -> ActivityRecord:
        with self.db.SessionLocal() as session:
            grant = session.execute(
                select(CaregiverGrantDB)
                .where(CaregiverGrantDB.id == parse_grant_id(grant_id))
                .with_for_update()
            ).scalar_one_or_none()
            if grant is None:
                raise NotFoundError(f"Caregiver grant not found: {grant_id}")

            last = session.execute(
                select(ActivityRecordDB)
                .where(ActivityRecordDB.grant_id == grant.id)
                .order_by(ActivityRecordDB.sequence_number.desc())
                .limit(1)
            ).scalar_one_or_none()

            sequence_number = last.sequence_number + 1 if last else 1
            previous_hash = last.entry_hash if last else GENESIS_HASH
            activity_id = uuid4()

            entry_hash = self._compute_hash(
                activity_id=activity_id,
                grant_id=grant.id,
                sequence_number=sequence_number,
                previous_hash=previous_hash,
                timestamp=timestamp,
                caregiver_name=grant.caregiver_name,
                action=action.value,
                action_details=action_details,
                resource_type=resource_type,
                resource_name=resource_name,
            )

            row = ActivityRecordDB(
                id=activity_id,
                grant_id=grant.id,
                sequence_number=sequence_number,
                previous_hash=previous_hash,
                entry_hash=entry_hash,
                timestamp=timestamp,
                caregiver_name=grant.caregiver_name,
                action=action.value,
                action_details=action_details,
                resource_type=resource_type,
                resource_name=resource_name,
            )
            session.add(row)
            grant.total_actions = (grant.total_actions or 0) + 1
            grant.last_action_at = timestamp
            session.commit()

            logger.info(
                "Caregiver activity recorded: grant=%s seq=%d action=%s hash=%s",
                grant.id, sequence_number, action.value, entry_hash[:16],
            )
            return record_from_row(row)

    # ── Queries ─────────────────────────────────────────────────

    def list_for_grant(
        self,
        grant_id: UUID | str,
        cursor: int | None = None,
        limit: int | None = None,
    ) -> ActivityPage:
        """
        A page of a grant's activity, newest first.

        Args:
            grant_id: Grant whose log to read.
            cursor: ``next_cursor`` from the previous page; omit for the newest.
            limit: Page size, capped at ``activity_page_size_max``.

        Raises:
            NotFoundError: Unknown grant.
            ValidationError: Non-positive limit or cursor.
        """
        page_size = self._page_size(limit)
        if cursor is not None and cursor < 1:
            raise ValidationError("cursor must be a positive sequence number")

        with self.db.SessionLocal() as session:
            grant = load_grant(session, grant_id)
            stmt = select(ActivityRecordDB).where(ActivityRecordDB.grant_id == grant.id)
            if cursor is not None:
                stmt = stmt.where(ActivityRecordDB.sequence_number < cursor)
            rows = session.execute(
                stmt.order_by(ActivityRecordDB.sequence_number.desc()).limit(page_size + 1)
            ).scalars().all()

        has_more = len(rows) > page_size
        rows = rows[:page_size]
        return ActivityPage(
            records=[record_from_row(r) for r in rows],
            next_cursor=rows[-1].sequence_number if has_more else None,
        )

    def list_for_owner(
        self,
        owner_account_id: str,
        action: ActivityAction | str | None = None,
        resource_type: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ActivityRecord]:
        """
        Combined activity of every caregiver (including revoked ones) on an
        owner account, newest first.
        """
        return self._feed(
            CaregiverGrantDB.owner_account_id == owner_account_id,
            action=action, resource_type=resource_type, since=since, limit=limit,
        )

    def list_for_caregiver(
        self,
        caregiver_email: str,
        action: ActivityAction | str | None = None,
        resource_type: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ActivityRecord]:
        """
        Everything one caregiver did, across every account it manages or
        used to manage, newest first. Records carry ``owner_account_id``.
        """
        email = (caregiver_email or "").strip().lower()
        if not email:
            raise ValidationError("caregiverEmail is required")
        return self._feed(
            CaregiverGrantDB.caregiver_email == email,
            action=action, resource_type=resource_type, since=since, limit=limit,
        )

    def list_recent(
        self,
        action: ActivityAction | str | None = None,
        resource_type: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ActivityRecord]:
        """Platform-wide recent caregiver activity for admins, newest first."""
        return self._feed(
            action=action, resource_type=resource_type, since=since, limit=limit,
        )

    def _feed(
        self,
        *criteria,
        action: ActivityAction | str | None = None,
        resource_type: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[ActivityRecord]:
        page_size = self._page_size(limit)
        stmt = (
            select(ActivityRecordDB, CaregiverGrantDB.owner_account_id)
            .join(CaregiverGrantDB, CaregiverGrantDB.id == ActivityRecordDB.grant_id)
            .where(*criteria)
        )
        if action is not None:
            stmt = stmt.where(ActivityRecordDB.action == parse_action(action).value)
        if resource_type:
            stmt = stmt.where(ActivityRecordDB.resource_type == resource_type)
        if since is not None:
            stmt = stmt.where(ActivityRecordDB.timestamp >= _as_utc(since))
        stmt = stmt.order_by(
            ActivityRecordDB.timestamp.desc(), ActivityRecordDB.sequence_number.desc()
        ).limit(page_size)

        with self.db.SessionLocal() as session:
            return [
                record_from_row(row, owner_account_id=owner)
                for row, owner in session.execute(stmt).all()
            ]

    def grants_with_activity(self) -> list[UUID]:
        """Ids of every grant that has at least one activity record."""
        with self.db.SessionLocal() as session:
            return list(
                session.execute(
                    select(ActivityRecordDB.grant_id).distinct()
                ).scalars().all()
            )

    # ── Integrity ───────────────────────────────────────────────

    def verify_chain(self, grant_id: UUID | str) -> tuple[bool, int, str]:
        """
        Verify a grant's activity chain.

        Walks the records in sequence order, recomputing each hash and
        checking each link to the previous record.

        Returns:
            Tuple of (is_valid, records_verified, message).
        """
        with self.db.SessionLocal() as session:
            grant = load_grant(session, grant_id)
            rows = session.execute(
                select(ActivityRecordDB)
                .where(ActivityRecordDB.grant_id == grant.id)
                .order_by(ActivityRecordDB.sequence_number.asc())
            ).scalars().all()

        previous_hash = GENESIS_HASH
        for i, row in enumerate(rows):
            if row.sequence_number != i + 1:
                return (
                    False, i,
                    f"Sequence gap: expected {i + 1}, found {row.sequence_number}",
                )
            if row.previous_hash != previous_hash:
                return (
                    False, i,
                    f"Chain break at sequence {row.sequence_number}: "
                    f"previous_hash does not match prior record's hash",
                )
            expected_hash = self._compute_hash(
                activity_id=row.id,
                grant_id=row.grant_id,
                sequence_number=row.sequence_number,
                previous_hash=row.previous_hash,
                timestamp=row.timestamp,
                caregiver_name=row.caregiver_name,
                action=row.action,
                action_details=row.action_details or "",
                resource_type=row.resource_type,
                resource_name=row.resource_name,
            )
            if row.entry_hash != expected_hash:
                return (
                    False, i,
                    f"Hash mismatch at sequence {row.sequence_number}: "
                    f"stored={row.entry_hash[:16]}... computed={expected_hash[:16]}...",
                )
            previous_hash = row.entry_hash

        return True, len(rows), f"Chain verified: {len(rows)} records, integrity intact"

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _page_size(limit: int | None) -> int:
        if limit is None:
            return settings.activity_page_size
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        return min(limit, settings.activity_page_size_max)

    @staticmethod
    def _canonical_timestamp(timestamp: datetime) -> str:
        # Some backends hand back naive UTC; hash the same text either way
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
        return timestamp.isoformat()

    @classmethod
    def _compute_hash(
        cls,
        activity_id: UUID,
        grant_id: UUID,
        sequence_number: int,
        previous_hash: str,
        timestamp: datetime,
        caregiver_name: str,
        action: str,
        action_details: str,
        resource_type: str,
        resource_name: str | None,
    ) -> str:
        """Hash = SHA-256(previous_hash || canonical_json(record_fields))."""
        hashable: dict[str, Any] = {
            "id": str(activity_id),
            "grant_id": str(grant_id),
            "sequence_number": sequence_number,
            "previous_hash": previous_hash,
            "timestamp": cls._canonical_timestamp(timestamp),
            "caregiver_name": caregiver_name,
            "action": action,
            "action_details": action_details,
            "resource_type": resource_type,
            "resource_name": resource_name,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (previous_hash + canonical).encode("utf-8")
        ).hexdigest()
