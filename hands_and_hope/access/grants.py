"""
Caregiver Grant lifecycle manager.

A grant binds a caregiver to an owner account with a permission set. Its
status moves pending → active → revoked, and revoked is terminal:
re-admitting a caregiver means creating a new grant.

Only the owner mutates a grant. Mutations lock the grant row
(``SELECT ... FOR UPDATE`` where the backend supports it) so a revoke is
visible to every evaluation that starts after it commits.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

import pydantic
from sqlalchemy import select
from sqlalchemy.orm import Session

from hands_and_hope.access.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from hands_and_hope.access.identity import (
    CredentialIssuer,
    OwnerAccountDirectory,
    TemporaryPasswordIssuer,
)
from hands_and_hope.access.presets import parse_level, resolve
from hands_and_hope.access.schema import (
    CaregiverGrant,
    GrantStatus,
    OwnerAccountSummary,
    PermissionLevel,
    PermissionSet,
    RelationshipType,
    parse_grant_id,
)
from hands_and_hope.ledger.database import Database
from hands_and_hope.ledger.models import CaregiverGrantDB

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[GrantStatus, tuple[GrantStatus, ...]] = {
    GrantStatus.PENDING: (GrantStatus.ACTIVE, GrantStatus.REVOKED),
    GrantStatus.ACTIVE: (GrantStatus.REVOKED,),
    GrantStatus.REVOKED: (),
}

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ADMIN_STATUS_FILTERS = ("all", "active", "pending", "revoked")


def grant_from_row(row: CaregiverGrantDB) -> CaregiverGrant:
    """Convert a stored grant row into its schema model."""
    return CaregiverGrant(
        grant_id=row.id,
        owner_account_id=row.owner_account_id,
        caregiver_email=row.caregiver_email,
        caregiver_name=row.caregiver_name,
        relationship_type=RelationshipType(row.relationship_type),
        relationship_details=row.relationship_details,
        permission_level=PermissionLevel(row.permission_level),
        permissions=PermissionSet.model_validate(row.permissions),
        status=GrantStatus(row.status),
        created_at=row.created_at,
        activated_at=row.activated_at,
        revoked_at=row.revoked_at,
        last_login_at=row.last_login_at,
        total_actions=row.total_actions or 0,
        last_action_at=row.last_action_at,
    )


def load_grant(session: Session, grant_id: UUID | str) -> CaregiverGrantDB:
    """Fetch a grant row or raise NotFoundError."""
    parsed = parse_grant_id(grant_id)
    row = session.get(CaregiverGrantDB, parsed) if parsed is not None else None
    if row is None:
        raise NotFoundError(f"Caregiver grant not found: {grant_id}")
    return row


def coerce_permission_set(permissions: PermissionSet | dict[str, Any]) -> PermissionSet:
    """Validate a permission set arriving from outside the service."""
    if isinstance(permissions, PermissionSet):
        return permissions
    if not isinstance(permissions, dict):
        raise ValidationError("Permission set must be an object of boolean flags")
    try:
        return PermissionSet.model_validate(permissions)
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid permission set: {problems}") from None


def _invalid_state(grant: CaregiverGrantDB, operation: str) -> InvalidStateError:
    current = GrantStatus(grant.status)
    allowed = [s.value for s in ALLOWED_TRANSITIONS[current]]
    return InvalidStateError(
        f"Cannot {operation} grant {grant.id} in status '{current.value}' "
        f"(allowed transitions: {', '.join(allowed) or 'none'})",
        current_status=current.value,
        allowed=allowed,
    )


class GrantManager:
    """
    Creates, activates, edits and revokes caregiver grants.

    Usage:
        grants = GrantManager(db)
        grant = grants.create_grant(
            owner_account_id="usr_001",
            caregiver_email="maria.garcia@email.com",
            caregiver_name="Maria Garcia",
            relationship_type="parent",
            permission_level="product_management",
        )
        grants.record_login(grant.grant_id)   # pending → active
        grants.revoke(grant.grant_id)         # active → revoked
    """

    def __init__(
        self,
        database: Database,
        credential_issuer: CredentialIssuer | None = None,
        owner_directory: OwnerAccountDirectory | None = None,
    ) -> None:
        """
        Args:
            database: Shared caregiver access database.
            credential_issuer: Called after each grant is created.
                Defaults to :class:`TemporaryPasswordIssuer`.
            owner_directory: Validates owner account ids. When omitted
                every non-empty id is accepted.
        """
        self.db = database
        self.credential_issuer = credential_issuer or TemporaryPasswordIssuer()
        self.owner_directory = owner_directory

    # ── Creation ────────────────────────────────────────────────

    def create_grant(
        self,
        owner_account_id: str,
        caregiver_email: str,
        caregiver_name: str,
        relationship_type: RelationshipType | str,
        permission_level: PermissionLevel | str,
        relationship_details: str | None = None,
        permissions: PermissionSet | dict[str, Any] | None = None,
    ) -> CaregiverGrant:
        """
        Create a pending grant for a caregiver over an owner account.

        Named presets resolve to their canonical set. ``custom`` requires
        an explicit ``permissions`` set.

        Raises:
            ValidationError: Missing or malformed input.
            NotFoundError: The owner account is unknown.
            ConflictError: A pending or active grant already exists for this
                caregiver on this owner account.

        Errors from the credential issuer propagate and the grant is not
        stored.
        """
        owner_account_id = (owner_account_id or "").strip()
        email = (caregiver_email or "").strip().lower()
        name = (caregiver_name or "").strip()

        if not owner_account_id:
            raise ValidationError("ownerAccountId is required")
        if not email:
            raise ValidationError("caregiverEmail is required")
        if not name:
            raise ValidationError("caregiverName is required")
        if not _EMAIL_PATTERN.match(email):
            raise ValidationError(f"caregiverEmail is not a valid email address: {email!r}")

        try:
            relationship = RelationshipType(relationship_type)
        except ValueError:
            raise ValidationError(
                f"Unknown relationship type: {relationship_type!r}"
            ) from None

        level = parse_level(permission_level)
        if level == PermissionLevel.CUSTOM:
            if permissions is None:
                raise ValidationError("A custom permission level requires a permission set")
            permission_set = coerce_permission_set(permissions)
        else:
            if permissions is not None:
                raise ValidationError(
                    f"Permission set may only be supplied with the custom level, not {level.value!r}"
                )
            permission_set = resolve(level)

        if self.owner_directory is not None and not self.owner_directory.exists(owner_account_id):
            raise NotFoundError(f"Owner account not found: {owner_account_id}")

        details = (relationship_details or "").strip() or None

        with self.db.SessionLocal() as session:
            existing = session.execute(
                select(CaregiverGrantDB)
                .where(
                    CaregiverGrantDB.owner_account_id == owner_account_id,
                    CaregiverGrantDB.caregiver_email == email,
                    CaregiverGrantDB.status != GrantStatus.REVOKED.value,
                )
                .with_for_update()
                .limit(1)
            ).scalar_one_or_none()

            if existing is not None:
                raise ConflictError(
                    f"Caregiver {email} already has a {existing.status} grant "
                    f"on account {owner_account_id}",
                    existing_grant_id=existing.id,
                )

            row = CaregiverGrantDB(
                id=uuid4(),
                owner_account_id=owner_account_id,
                caregiver_email=email,
                caregiver_name=name,
                relationship_type=relationship.value,
                relationship_details=details,
                permission_level=level.value,
                permissions=permission_set.to_wire(),
                status=GrantStatus.PENDING.value,
                created_at=datetime.now(timezone.utc),
                total_actions=0,
            )
            session.add(row)
            session.flush()
            grant = grant_from_row(row)
            # Issued before commit: a failing issuer stores no grant
            self.credential_issuer.issue(grant)
            session.commit()

        logger.info(
            "Caregiver grant created: grant=%s owner=%s caregiver=%s level=%s",
            grant.grant_id, owner_account_id, email, level.value,
        )
        return grant

    # ── Lifecycle transitions ───────────────────────────────────

    def activate(self, grant_id: UUID | str) -> CaregiverGrant:
        """
        Transition a pending grant to active (first caregiver login).

        Raises:
            NotFoundError: Unknown grant.
            InvalidStateError: Grant is not pending.
        """
        with self.db.SessionLocal() as session:
            row = self._load_for_update(session, grant_id)
            if row.status != GrantStatus.PENDING.value:
                raise _invalid_state(row, "activate")
            self._activate_row(row, datetime.now(timezone.utc))
            session.commit()
            return grant_from_row(row)

    def record_login(self, grant_id: UUID | str) -> CaregiverGrant:
        """
        Register a successful caregiver authentication against a grant.

        Activates a pending grant and stamps ``last_login_at``.

        Raises:
            NotFoundError: Unknown grant.
            InvalidStateError: Grant has been revoked.
        """
        with self.db.SessionLocal() as session:
            row = self._load_for_update(session, grant_id)
            if row.status == GrantStatus.REVOKED.value:
                raise _invalid_state(row, "log in to")
            now = datetime.now(timezone.utc)
            if row.status == GrantStatus.PENDING.value:
                self._activate_row(row, now)
            row.last_login_at = now
            session.commit()
            return grant_from_row(row)

    def update_permissions(
        self,
        grant_id: UUID | str,
        permissions: PermissionSet | dict[str, Any],
        acting_account_id: str | None = None,
    ) -> CaregiverGrant:
        """
        Replace a grant's permission set. The level always becomes ``custom``,
        even when the new set equals a named preset.

        Raises:
            ValidationError: Malformed permission set.
            NotFoundError: Unknown grant, or not owned by ``acting_account_id``.
            InvalidStateError: Grant has been revoked.
        """
        permission_set = coerce_permission_set(permissions)

        with self.db.SessionLocal() as session:
            row = self._load_for_update(session, grant_id, acting_account_id)
            if row.status == GrantStatus.REVOKED.value:
                raise _invalid_state(row, "update permissions of")
            row.permissions = permission_set.to_wire()
            row.permission_level = PermissionLevel.CUSTOM.value
            session.commit()
            grant = grant_from_row(row)

        logger.info(
            "Caregiver permissions updated: grant=%s granted=%s",
            grant.grant_id, [c.value for c in permission_set.granted()],
        )
        return grant

    def revoke(
        self,
        grant_id: UUID | str,
        acting_account_id: str | None = None,
    ) -> CaregiverGrant:
        """
        Revoke a grant. Idempotent: revoking a revoked grant succeeds and
        changes nothing. Activity records are kept.

        Raises:
            NotFoundError: Unknown grant, or not owned by ``acting_account_id``.
        """
        with self.db.SessionLocal() as session:
            row = self._load_for_update(session, grant_id, acting_account_id)
            if row.status == GrantStatus.REVOKED.value:
                return grant_from_row(row)
            row.status = GrantStatus.REVOKED.value
            row.revoked_at = datetime.now(timezone.utc)
            session.commit()
            grant = grant_from_row(row)

        logger.info(
            "Caregiver grant revoked: grant=%s owner=%s caregiver=%s",
            grant.grant_id, grant.owner_account_id, grant.caregiver_email,
        )
        return grant

    # ── Queries ─────────────────────────────────────────────────

    def get_grant(self, grant_id: UUID | str) -> CaregiverGrant:
        """Retrieve a grant. Raises NotFoundError if unknown."""
        with self.db.SessionLocal() as session:
            return grant_from_row(load_grant(session, grant_id))

    def list_for_owner(
        self,
        owner_account_id: str,
        include_revoked: bool = False,
    ) -> list[CaregiverGrant]:
        """Grants on an owner account, newest first (active + pending by default)."""
        stmt = select(CaregiverGrantDB).where(
            CaregiverGrantDB.owner_account_id == owner_account_id
        )
        if not include_revoked:
            stmt = stmt.where(CaregiverGrantDB.status != GrantStatus.REVOKED.value)
        stmt = stmt.order_by(CaregiverGrantDB.created_at.desc())
        with self.db.SessionLocal() as session:
            return [grant_from_row(r) for r in session.execute(stmt).scalars().all()]

    def list_for_caregiver(self, caregiver_email: str) -> list[CaregiverGrant]:
        """Accounts a caregiver manages: its non-revoked grants."""
        email = (caregiver_email or "").strip().lower()
        if not email:
            raise ValidationError("caregiverEmail is required")
        with self.db.SessionLocal() as session:
            rows = session.execute(
                select(CaregiverGrantDB)
                .where(
                    CaregiverGrantDB.caregiver_email == email,
                    CaregiverGrantDB.status != GrantStatus.REVOKED.value,
                )
                .order_by(CaregiverGrantDB.created_at.asc())
            ).scalars().all()
            return [grant_from_row(r) for r in rows]

    def admin_overview(
        self,
        status: str = "all",
        query: str | None = None,
    ) -> list[OwnerAccountSummary]:
        """
        Platform-admin listing of owner accounts that have caregivers.

        Args:
            status: One of ``all``, ``active``, ``pending``, ``revoked``.
            query: Case-insensitive match on caregiver name/email or owner id.
        """
        if status not in ADMIN_STATUS_FILTERS:
            raise ValidationError(
                f"Unknown status filter {status!r}; expected one of {', '.join(ADMIN_STATUS_FILTERS)}"
            )

        stmt = select(CaregiverGrantDB)
        if status != "all":
            stmt = stmt.where(CaregiverGrantDB.status == status)
        stmt = stmt.order_by(
            CaregiverGrantDB.owner_account_id.asc(), CaregiverGrantDB.created_at.asc()
        )

        needle = (query or "").strip().lower()
        accounts: OrderedDict[str, OwnerAccountSummary] = OrderedDict()
        with self.db.SessionLocal() as session:
            for row in session.execute(stmt).scalars().all():
                if needle and not any(
                    needle in value.lower()
                    for value in (row.caregiver_name, row.caregiver_email, row.owner_account_id)
                ):
                    continue
                summary = accounts.setdefault(
                    row.owner_account_id,
                    OwnerAccountSummary(owner_account_id=row.owner_account_id),
                )
                summary.caregivers.append(grant_from_row(row))
        return list(accounts.values())

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _activate_row(row: CaregiverGrantDB, now: datetime) -> None:
        row.status = GrantStatus.ACTIVE.value
        row.activated_at = now
        logger.info("Caregiver grant activated: grant=%s", row.id)

    @staticmethod
    def _load_for_update(
        session: Session,
        grant_id: UUID | str,
        acting_account_id: str | None = None,
    ) -> CaregiverGrantDB:
        parsed = parse_grant_id(grant_id)
        row = None
        if parsed is not None:
            row = session.execute(
                select(CaregiverGrantDB)
                .where(CaregiverGrantDB.id == parsed)
                .with_for_update()
            ).scalar_one_or_none()
        # A grant owned by someone else is reported exactly like a missing one
        if row is None or (
            acting_account_id is not None and row.owner_account_id != acting_account_id
        ):
            raise NotFoundError(f"Caregiver grant not found: {grant_id}")
        return row
