"""
Tests for the Permission Set and Preset Resolver.

Validates:
- Canonical preset mappings
- Fail-closed resolution of unknown levels
- Closed, flat permission sets (no implied capabilities)
"""

from __future__ import annotations

import pydantic
import pytest

from hands_and_hope.access.errors import UnknownPresetError, ValidationError
from hands_and_hope.access.presets import (
    capability_catalogue,
    parse_level,
    preset_catalogue,
    resolve,
)
from hands_and_hope.access.schema import (
    PRESET_PERMISSIONS,
    Capability,
    PermissionLevel,
    PermissionSet,
)


class TestPresetResolver:
    """Test resolution of named permission levels."""

    def test_full_grants_everything(self):
        permissions = resolve("full")
        assert all(permissions.allows(c) for c in Capability)

    def test_view_only_grants_no_mutations(self):
        permissions = resolve(PermissionLevel.VIEW_ONLY)
        assert permissions.view_profile is True
        assert permissions.view_products is True
        assert permissions.view_financials is True
        assert permissions.view_analytics is True
        assert permissions.manage_products is False
        assert permissions.withdraw_money is False
        assert permissions.edit_profile is False
        assert permissions.manage_shipments is False

    def test_financial_only(self):
        permissions = resolve("financial_only")
        assert permissions.granted() == [
            Capability.VIEW_PROFILE,
            Capability.VIEW_FINANCIALS,
            Capability.WITHDRAW_MONEY,
            Capability.VIEW_ANALYTICS,
        ]

    def test_product_management(self):
        permissions = resolve("product_management")
        assert permissions.manage_products is True
        assert permissions.respond_to_inquiries is True
        assert permissions.manage_shipments is True
        assert permissions.view_financials is False
        assert permissions.withdraw_money is False

    def test_resolve_matches_canonical_table(self):
        for level, preset in PRESET_PERMISSIONS.items():
            assert resolve(level) == preset

    def test_unknown_level_fails_closed(self):
        """An unrecognised level must never fall back to full access."""
        with pytest.raises(UnknownPresetError) as exc_info:
            resolve("admin")
        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.level == "admin"

    def test_custom_has_no_preset(self):
        with pytest.raises(ValidationError) as exc_info:
            resolve("custom")
        assert not isinstance(exc_info.value, UnknownPresetError)

    def test_parse_level(self):
        assert parse_level("view_only") is PermissionLevel.VIEW_ONLY
        assert parse_level(PermissionLevel.CUSTOM) is PermissionLevel.CUSTOM
        with pytest.raises(UnknownPresetError):
            parse_level("Full")

    def test_catalogue_lists_named_presets(self):
        catalogue = preset_catalogue()
        levels = [entry["level"] for entry in catalogue]
        assert levels == ["full", "financial_only", "product_management", "view_only"]
        assert catalogue[0]["label"] == "Full Access"
        assert catalogue[3]["permissions"]["manageProducts"] is False
        assert set(capability_catalogue()) == {c.value for c in Capability}


class TestPermissionSet:
    """Test the closed permission set record."""

    def test_defaults_to_nothing(self):
        assert PermissionSet().granted() == []

    def test_no_implied_capabilities(self):
        permissions = PermissionSet(manage_products=True)
        assert permissions.allows(Capability.MANAGE_PRODUCTS)
        assert not permissions.allows(Capability.VIEW_PRODUCTS)

    def test_accepts_wire_and_attribute_names(self):
        wire = PermissionSet.model_validate({"viewProfile": True, "withdrawMoney": True})
        attrs = PermissionSet(view_profile=True, withdraw_money=True)
        assert wire == attrs
        assert wire.to_wire()["withdrawMoney"] is True
        assert wire.to_wire()["editStoreName"] is False

    def test_rejects_unknown_flags(self):
        with pytest.raises(pydantic.ValidationError):
            PermissionSet.model_validate({"viewProfile": True, "deleteAccount": True})

    def test_rejects_non_boolean_values(self):
        with pytest.raises(pydantic.ValidationError):
            PermissionSet.model_validate({"viewProfile": "yes"})

    def test_capability_lookup(self):
        assert Capability.lookup("manageProducts") is Capability.MANAGE_PRODUCTS
        assert Capability.lookup("manage_products") is Capability.MANAGE_PRODUCTS
        assert Capability.lookup("manage-products") is None
        assert Capability.RESPOND_TO_INQUIRIES.field_name == "respond_to_inquiries"
