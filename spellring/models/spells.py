"""Spell and stored-entry models for the ring ledger."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..constants import (
    DEFAULT_SPELL_ATTACK_BONUS,
    DEFAULT_SPELL_SAVE_DC,
    SLOT_TYPE_SPELL,
    SLOT_TYPES,
)
from ._validation import (
    FieldSpec,
    ModelValidationError,
    ModelValidator,
    is_epoch_millis,
    is_non_empty_str,
    is_slot_level,
    is_spell_level,
    is_whole_number,
    validate_payload,
)


def _pop_alias(payload: dict[str, Any], target: str, *aliases: str) -> None:
    if target in payload:
        for alias in aliases:
            payload.pop(alias, None)
        return
    for alias in aliases:
        if alias in payload:
            payload[target] = payload.pop(alias)
            return


@dataclass(frozen=True, slots=True)
class CasterSnapshot:
    """Spellcasting statistics of the original caster, frozen at store time."""

    caster_id: str
    caster_name: str
    attack_bonus: int = DEFAULT_SPELL_ATTACK_BONUS
    save_dc: int = DEFAULT_SPELL_SAVE_DC

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CasterSnapshot":
        payload = dict(data)
        _pop_alias(payload, "id", "casterId", "caster_id")
        _pop_alias(payload, "name", "casterName", "caster_name")
        _pop_alias(payload, "spellAttackBonus", "attackBonus", "attack_bonus")
        _pop_alias(payload, "spellSaveDC", "saveDC", "save_dc")
        clean = validate_payload(cls, payload)
        attack = clean.get("spellAttackBonus")
        save_dc = clean.get("spellSaveDC")
        return cls(
            caster_id=str(clean.get("id") or ""),
            caster_name=str(clean.get("name") or ""),
            attack_bonus=DEFAULT_SPELL_ATTACK_BONUS if attack is None else int(attack),
            save_dc=DEFAULT_SPELL_SAVE_DC if save_dc is None else int(save_dc),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.caster_id,
            "name": self.caster_name,
            "spellAttackBonus": self.attack_bonus,
            "spellSaveDC": self.save_dc,
        }


class CasterSnapshotValidator(ModelValidator):
    model = CasterSnapshot
    fields = {
        "id": FieldSpec((str, int), "a caster identifier", required=False, allow_none=True),
        "name": FieldSpec(str, "a caster name", required=False, allow_none=True),
        "spellAttackBonus": FieldSpec(
            is_whole_number, "an integer attack bonus", required=False, allow_none=True
        ),
        "spellSaveDC": FieldSpec(
            is_whole_number, "an integer save DC", required=False, allow_none=True
        ),
    }


CasterSnapshot.validator = CasterSnapshotValidator


@dataclass(frozen=True, slots=True)
class SpellDescriptor:
    """The parts of a spell definition the ring cares about."""

    spell_id: str
    name: str
    base_level: int
    target_type: str | None = None

    @property
    def targets_self(self) -> bool:
        return (self.target_type or "").strip().lower() == "self"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SpellDescriptor":
        payload = dict(data)
        _pop_alias(payload, "id", "spellId", "spell_id")
        _pop_alias(payload, "level", "baseLevel", "base_level")
        _pop_alias(payload, "target", "targetType", "target_type")
        clean = validate_payload(cls, payload)
        target = clean.get("target")
        return cls(
            spell_id=str(clean["id"]),
            name=str(clean["name"]),
            base_level=int(clean["level"]),
            target_type=str(target) if target is not None else None,
        )


class SpellDescriptorValidator(ModelValidator):
    model = SpellDescriptor
    fields = {
        "id": FieldSpec((str, int), "a spell identifier"),
        "name": FieldSpec(is_non_empty_str, "a non-empty spell name"),
        "level": FieldSpec(is_slot_level, "a spell level between 1 and 9"),
        "target": FieldSpec(str, "a target type", required=False, allow_none=True),
    }


SpellDescriptor.validator = SpellDescriptorValidator


@dataclass(frozen=True, slots=True)
class StoredSpellEntry:
    """One spell parked in the ring."""

    spell_id: str
    name: str
    stored_level: int
    base_level: int
    caster_snapshot: CasterSnapshot
    stored_at: int
    slot_type: str = SLOT_TYPE_SPELL

    def __post_init__(self) -> None:
        if self.base_level < 1 or self.stored_level < self.base_level:
            raise ModelValidationError(
                type(self),
                [
                    f"stored level {self.stored_level} is below the spell's "
                    f"minimum level {self.base_level}"
                ],
            )
        if self.slot_type not in SLOT_TYPES:
            raise ModelValidationError(
                type(self), [f"unknown slot type {self.slot_type!r}"]
            )

    @property
    def stored_date(self) -> str:
        try:
            moment = datetime.fromtimestamp(self.stored_at / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return ""
        return moment.date().isoformat()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StoredSpellEntry":
        payload = dict(data)
        _pop_alias(payload, "id", "spellId", "spell_id")
        _pop_alias(payload, "level", "storedLevel", "stored_level")
        _pop_alias(payload, "originalLevel", "baseLevel", "base_level")
        _pop_alias(payload, "originalCaster", "casterSnapshot", "caster_snapshot")
        _pop_alias(payload, "storedAt", "storedAtEpochMillis", "stored_at")
        _pop_alias(payload, "spellType", "slotType", "slot_type")
        clean = validate_payload(cls, payload)

        level = int(clean["level"])
        base_level = clean.get("originalLevel")
        caster = clean["originalCaster"]
        if not isinstance(caster, CasterSnapshot):
            caster = CasterSnapshot.from_dict(caster)
        stored_at = clean.get("storedAt")
        return cls(
            spell_id=str(clean.get("id") or ""),
            name=str(clean["name"]),
            stored_level=level,
            base_level=level if base_level is None else int(base_level),
            caster_snapshot=caster,
            stored_at=0 if stored_at is None else int(stored_at),
            slot_type=str(clean.get("spellType") or SLOT_TYPE_SPELL),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.spell_id,
            "name": self.name,
            "level": self.stored_level,
            "originalLevel": self.base_level,
            "originalCaster": self.caster_snapshot.to_dict(),
            "storedAt": self.stored_at,
            "spellType": self.slot_type,
        }


class StoredSpellEntryValidator(ModelValidator):
    model = StoredSpellEntry
    fields = {
        "id": FieldSpec((str, int), "a spell identifier", required=False, allow_none=True),
        "name": FieldSpec(is_non_empty_str, "a non-empty spell name"),
        "level": FieldSpec(is_spell_level, "a stored level between 1 and 5"),
        "originalLevel": FieldSpec(
            is_spell_level, "the spell's minimum level", required=False, allow_none=True
        ),
        "originalCaster": FieldSpec(
            (CasterSnapshot, Mapping), "the original caster's statistics"
        ),
        "storedAt": FieldSpec(
            is_epoch_millis, "an epoch timestamp in milliseconds", required=False, allow_none=True
        ),
        "spellType": FieldSpec(
            lambda value: value in SLOT_TYPES, "a slot type", required=False, allow_none=True
        ),
    }


StoredSpellEntry.validator = StoredSpellEntryValidator


__all__ = [
    "CasterSnapshot",
    "SpellDescriptor",
    "StoredSpellEntry",
]
