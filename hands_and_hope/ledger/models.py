"""
Caregiver access storage — SQLAlchemy models for grants and activity.

Two tables:

1. ``caregiver_grants`` — one row per grant, keyed by grant id. All grant
   mutations and every access evaluation read this row, so it is the single
   consistency domain for revocation.
2. ``caregiver_activity`` — append-only, hash-chained per grant. Rows are
   never updated or deleted, including after the grant is revoked.
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for caregiver access models."""
    pass


class AppendOnlyViolation(Exception):
    """Raised when code attempts to modify or delete an activity row."""
    pass


class CaregiverGrantDB(Base):
    """
    A caregiver grant over an owner account.

    ``permissions`` holds the wire-form (camelCase) permission set. Grants are
    never deleted; revocation is a status change.
    """

    __tablename__ = "caregiver_grants"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    owner_account_id = Column(
        String(100), nullable=False,
        comment="Owner (delegating) account",
    )
    caregiver_email = Column(
        String(320), nullable=False,
        comment="Lower-cased caregiver login email",
    )
    caregiver_name = Column(String(200), nullable=False)
    relationship_type = Column(
        String(20), nullable=False,
        comment="parent, guardian, caregiver, helper, or other",
    )
    relationship_details = Column(Text, nullable=True)

    permission_level = Column(
        String(30), nullable=False,
        comment="full, financial_only, product_management, view_only, or custom",
    )
    permissions = Column(JSON, nullable=False)

    status = Column(
        String(20), nullable=False, default="pending",
        comment="pending, active, or revoked",
    )
    created_at = Column(DateTime(timezone=True), nullable=False)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    # Derived from the activity log, maintained in the same transaction
    total_actions = Column(Integer, nullable=False, default=0)
    last_action_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_grant_owner_caregiver", "owner_account_id", "caregiver_email"),
        Index("ix_grant_caregiver_email", "caregiver_email"),
        Index("ix_grant_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<CaregiverGrant id={self.id} owner={self.owner_account_id} "
            f"caregiver={self.caregiver_email} status={self.status}>"
        )


class ActivityRecordDB(Base):
    """
    A single caregiver action recorded against an owner account.

    This table is APPEND-ONLY. ``sequence_number`` is strictly increasing
    within a grant and ``entry_hash`` = SHA-256(previous_hash || record).
    """

    __tablename__ = "caregiver_activity"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    grant_id = Column(
        Uuid(as_uuid=True), ForeignKey("caregiver_grants.id"), nullable=False,
    )
    sequence_number = Column(
        Integer, nullable=False,
        comment="Per-grant sequence, starting at 1",
    )
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False, unique=True)

    timestamp = Column(DateTime(timezone=True), nullable=False)
    caregiver_name = Column(
        String(200), nullable=False,
        comment="Snapshot of the caregiver's name at the time of the action",
    )
    action = Column(String(50), nullable=False)
    action_details = Column(Text, nullable=False, default="")
    resource_type = Column(String(50), nullable=False)
    resource_name = Column(String(200), nullable=True)

    __table_args__ = (
        UniqueConstraint("grant_id", "sequence_number", name="uq_activity_grant_sequence"),
        Index("ix_activity_action", "action"),
        Index("ix_activity_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<ActivityRecord grant={self.grant_id} seq={self.sequence_number} "
            f"action={self.action} hash={self.entry_hash[:12]}...>"
        )


@event.listens_for(ActivityRecordDB, "before_update")
def _refuse_activity_update(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f"Activity records are immutable: {target!r}")


@event.listens_for(ActivityRecordDB, "before_delete")
def _refuse_activity_delete(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f"Activity records cannot be deleted: {target!r}")
