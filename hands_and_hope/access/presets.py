"""
Permission Preset Resolver — maps a named permission level to its set.

Resolution is a table lookup against ``PRESET_PERMISSIONS``. An unknown
level fails closed with :class:`UnknownPresetError`; it never degrades to
``full``. The ``custom`` level has no canonical set, so callers holding a
custom grant must supply the set themselves.
"""

from __future__ import annotations

from hands_and_hope.access.errors import UnknownPresetError, ValidationError
from hands_and_hope.access.schema import (
    PRESET_LABELS,
    PRESET_PERMISSIONS,
    CAPABILITY_DESCRIPTIONS,
    PermissionLevel,
    PermissionSet,
)


def parse_level(level: PermissionLevel | str) -> PermissionLevel:
    """Coerce a level string to :class:`PermissionLevel`."""
    if isinstance(level, PermissionLevel):
        return level
    try:
        return PermissionLevel(level)
    except ValueError:
        raise UnknownPresetError(str(level)) from None


def resolve(level: PermissionLevel | str) -> PermissionSet:
    """
    Resolve a named preset to its canonical permission set.

    Raises:
        UnknownPresetError: level is not a known permission level.
        ValidationError: level is ``custom``.
    """
    parsed = parse_level(level)
    if parsed == PermissionLevel.CUSTOM:
        raise ValidationError(
            "The custom permission level has no preset; supply an explicit permission set"
        )
    return PRESET_PERMISSIONS[parsed].model_copy()


def preset_catalogue() -> list[dict]:
    """Presets with labels, descriptions and flags, for owner-facing pickers."""
    catalogue = []
    for level, preset in PRESET_PERMISSIONS.items():
        label, description = PRESET_LABELS[level]
        catalogue.append({
            "level": level.value,
            "label": label,
            "description": description,
            "permissions": preset.to_wire(),
        })
    return catalogue


def capability_catalogue() -> dict[str, str]:
    return {capability.value: text for capability, text in CAPABILITY_DESCRIPTIONS.items()}
