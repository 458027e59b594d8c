"""
Caregiver Access Schema — Pydantic models for delegated caregiver access.

These models are the canonical data structures of the caregiver access
model. They govern the shape of grants, permission sets and activity
records as they cross the service boundary (HTTP payloads, CLI output)
and as they are returned from the grant manager and activity logger.

Wire form is camelCase (``viewProfile``, ``grantId``); Python attributes
are snake_case. Both are accepted on input.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictBool, computed_field
from pydantic.alias_generators import to_camel


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class CamelModel(BaseModel):
    """Base model serialising to camelCase and accepting either case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Capability(str, enum.Enum):
    """Atomic capabilities a caregiver may hold over an owner account."""

    VIEW_PROFILE = "viewProfile"
    EDIT_PROFILE = "editProfile"
    VIEW_PRODUCTS = "viewProducts"
    MANAGE_PRODUCTS = "manageProducts"
    RESPOND_TO_INQUIRIES = "respondToInquiries"
    VIEW_FINANCIALS = "viewFinancials"
    WITHDRAW_MONEY = "withdrawMoney"
    MANAGE_SHIPMENTS = "manageShipments"
    VIEW_ANALYTICS = "viewAnalytics"
    EDIT_BIO = "editBio"
    EDIT_STORE_NAME = "editStoreName"

    @property
    def field_name(self) -> str:
        """Attribute name of this capability on :class:`PermissionSet`."""
        return _CAMEL_BOUNDARY.sub("_", self.value).lower()

    @classmethod
    def lookup(cls, name: str) -> Capability | None:
        """Find a capability by its wire name or attribute name."""
        for capability in cls:
            if name in (capability.value, capability.field_name):
                return capability
        return None


class PermissionLevel(str, enum.Enum):
    """Named permission presets, plus ``custom`` for hand-edited sets."""

    FULL = "full"
    FINANCIAL_ONLY = "financial_only"
    PRODUCT_MANAGEMENT = "product_management"
    VIEW_ONLY = "view_only"
    CUSTOM = "custom"


class RelationshipType(str, enum.Enum):
    """How the caregiver relates to the account owner."""

    PARENT = "parent"
    GUARDIAN = "guardian"
    CAREGIVER = "caregiver"
    HELPER = "helper"
    OTHER = "other"


class GrantStatus(str, enum.Enum):
    """Grant lifecycle: pending → active → revoked (terminal)."""

    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"


class ActivityAction(str, enum.Enum):
    """Action tags recorded in the caregiver activity log."""

    EDITED_PRODUCT = "edited_product"
    ADDED_PRODUCT = "added_product"
    DELETED_PRODUCT = "deleted_product"
    RESPONDED_TO_INQUIRY = "responded_to_inquiry"
    WITHDREW_FUNDS = "withdrew_funds"
    UPDATED_SHIPMENT = "updated_shipment"
    EDITED_PROFILE = "edited_profile"
    EDITED_BIO = "edited_bio"
    EDITED_STORE_NAME = "edited_store_name"
    VIEWED_RESOURCE = "viewed_resource"


# ════════════════════════════════════════════════════════════════
# Permission Set
# ════════════════════════════════════════════════════════════════


class PermissionSet(CamelModel):
    """
    Closed record of capability flags.

    Every flag defaults to False. No flag implies another: ``manage_products``
    does not grant ``view_products``. Unknown keys and non-boolean values
    are rejected.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    view_profile: StrictBool = False
    edit_profile: StrictBool = False
    view_products: StrictBool = False
    manage_products: StrictBool = False
    respond_to_inquiries: StrictBool = False
    view_financials: StrictBool = False
    withdraw_money: StrictBool = False
    manage_shipments: StrictBool = False
    view_analytics: StrictBool = False
    edit_bio: StrictBool = False
    edit_store_name: StrictBool = False

    def allows(self, capability: Capability) -> bool:
        return getattr(self, capability.field_name)

    def granted(self) -> list[Capability]:
        """Capabilities set to True, in declaration order."""
        return [c for c in Capability if self.allows(c)]

    def to_wire(self) -> dict[str, bool]:
        return self.model_dump(by_alias=True)


# Canonical preset mappings. Pure data; resolution lives in presets.py.
PRESET_PERMISSIONS: dict[PermissionLevel, PermissionSet] = {
    PermissionLevel.FULL: PermissionSet(**{c.field_name: True for c in Capability}),
    PermissionLevel.FINANCIAL_ONLY: PermissionSet(
        view_profile=True,
        view_financials=True,
        withdraw_money=True,
        view_analytics=True,
    ),
    PermissionLevel.PRODUCT_MANAGEMENT: PermissionSet(
        view_profile=True,
        view_products=True,
        manage_products=True,
        respond_to_inquiries=True,
        manage_shipments=True,
        view_analytics=True,
    ),
    PermissionLevel.VIEW_ONLY: PermissionSet(
        view_profile=True,
        view_products=True,
        view_financials=True,
        view_analytics=True,
    ),
}

PRESET_LABELS: dict[PermissionLevel, tuple[str, str]] = {
    PermissionLevel.FULL: (
        "Full Access",
        "Complete access to all account features except personal info changes",
    ),
    PermissionLevel.FINANCIAL_ONLY: (
        "Financial Management",
        "View and manage financial aspects only",
    ),
    PermissionLevel.PRODUCT_MANAGEMENT: (
        "Product Management",
        "Manage products, inquiries, and shipments",
    ),
    PermissionLevel.VIEW_ONLY: (
        "View Only",
        "Can view account information but cannot make changes",
    ),
}

CAPABILITY_DESCRIPTIONS: dict[Capability, str] = {
    Capability.VIEW_PROFILE: "View your profile information",
    Capability.EDIT_PROFILE: "Edit your profile (except name, email, password)",
    Capability.VIEW_PRODUCTS: "View your product listings",
    Capability.MANAGE_PRODUCTS: "Add, edit, and delete products",
    Capability.RESPOND_TO_INQUIRIES: "Respond to buyer messages and inquiries",
    Capability.VIEW_FINANCIALS: "View earnings and transaction history",
    Capability.WITHDRAW_MONEY: "Initiate money withdrawals",
    Capability.MANAGE_SHIPMENTS: "Update shipping and tracking information",
    Capability.VIEW_ANALYTICS: "View sales and performance analytics",
    Capability.EDIT_BIO: "Edit your biography and store description",
    Capability.EDIT_STORE_NAME: "Change your store name",
}


# ════════════════════════════════════════════════════════════════
# Grants
# ════════════════════════════════════════════════════════════════


class CaregiverGrant(CamelModel):
    """
    A caregiver's authorization scope over one owner account.

    The same caregiver may hold grants on several owner accounts; each grant
    is independent and capabilities never carry over between them.
    """

    grant_id: UUID
    owner_account_id: str
    caregiver_email: str
    caregiver_name: str
    relationship_type: RelationshipType
    relationship_details: str | None = None
    permission_level: PermissionLevel
    permissions: PermissionSet
    status: GrantStatus
    created_at: datetime
    activated_at: datetime | None = None
    revoked_at: datetime | None = None
    last_login_at: datetime | None = None
    total_actions: int = 0
    last_action_at: datetime | None = None

    @computed_field(alias="isActive")
    @property
    def is_active(self) -> bool:
        return self.status == GrantStatus.ACTIVE


class PermissionSummary(CamelModel):
    """Read-only view a caregiver gets of its own grant."""

    grant_id: UUID
    owner_account_id: str
    permission_level: PermissionLevel
    status: GrantStatus
    permissions: PermissionSet
    granted: list[Capability] = Field(default_factory=list)


class OwnerAccountSummary(CamelModel):
    """Platform-admin view: an owner account and its caregivers."""

    owner_account_id: str
    caregivers: list[CaregiverGrant] = Field(default_factory=list)

    @computed_field(alias="totalCaregivers")
    @property
    def total_caregivers(self) -> int:
        return len(self.caregivers)


# ════════════════════════════════════════════════════════════════
# Activity Log
# ════════════════════════════════════════════════════════════════


class ActivityRecord(CamelModel):
    """
    One immutable entry in a grant's activity log.

    ``caregiver_name`` is a snapshot taken when the action was recorded.
    ``entry_hash`` chains to the previous record of the same grant.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    activity_id: UUID
    grant_id: UUID
    sequence_number: int
    caregiver_name: str
    action: ActivityAction
    action_details: str
    timestamp: datetime
    resource_type: str
    resource_name: str | None = None
    previous_hash: str
    entry_hash: str
    owner_account_id: str | None = Field(
        default=None,
        description="Set on cross-account feeds; not part of the hashed record",
    )


class ActivityPage(CamelModel):
    """A page of activity records, newest first."""

    records: list[ActivityRecord] = Field(default_factory=list)
    next_cursor: int | None = Field(
        default=None,
        description="Pass as cursor to fetch the next (older) page; None on the last page",
    )


def parse_grant_id(value: Any) -> UUID | None:
    """Coerce a grant identifier; returns None if it is not a valid UUID."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None
