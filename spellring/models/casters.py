"""Caster-side models: spell slot pools and spellcasting profiles."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..constants import (
    DEFAULT_SPELL_ATTACK_BONUS,
    DEFAULT_SPELL_SAVE_DC,
    MAX_STORED_SPELL_LEVEL,
    SLOT_TYPE_PACT,
    SLOT_TYPE_SPELL,
)
from ._validation import (
    FieldSpec,
    MappingSpec,
    ModelValidator,
    is_non_empty_str,
    is_slot_level,
    is_whole_number,
    validate_payload,
)
from .spells import CasterSnapshot, SpellDescriptor


def _coerce_count(value: Any, default: int = 0) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class SlotPool:
    """Remaining and maximum slots of a single level."""

    level: int
    value: int = 0
    max: int = 0

    def __post_init__(self) -> None:
        self.level = int(self.level)
        self.max = _coerce_count(self.max)
        self.value = min(_coerce_count(self.value), self.max)

    @property
    def available(self) -> bool:
        return self.value > 0

    def consume(self) -> bool:
        if self.value <= 0:
            return False
        self.value -= 1
        return True

    def restore(self) -> bool:
        if self.max <= 0:
            return False
        self.value = min(self.value + 1, self.max)
        return True

    @classmethod
    def from_mapping(cls, level: int, data: Mapping[str, Any]) -> "SlotPool":
        return cls(level=level, value=data.get("value", 0), max=data.get("max", 0))

    def to_dict(self) -> dict[str, int]:
        return {"level": self.level, "value": self.value, "max": self.max}


@dataclass(frozen=True, slots=True)
class SlotOption:
    """A slot level a caster could spend to store a given spell."""

    level: int
    slot_type: str
    available: int
    max: int

    @property
    def usable(self) -> bool:
        return self.available > 0

    @property
    def label(self) -> str:
        kind = " (Pact)" if self.slot_type == SLOT_TYPE_PACT else ""
        if self.available > 0:
            return f"Level {self.level}{kind} [{self.available}/{self.max} available]"
        return f"Level {self.level}{kind} [No slots]"


@dataclass(slots=True)
class CasterProfile:
    caster_id: str
    name: str
    attack_bonus: Optional[int] = None
    save_dc: Optional[int] = None
    spell_slots: Dict[int, SlotPool] = field(default_factory=dict)
    pact_slots: Optional[SlotPool] = None
    known_spells: List[SpellDescriptor] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.caster_id = str(self.caster_id)
        pools: Dict[int, SlotPool] = {}
        for level, pool in dict(self.spell_slots).items():
            if isinstance(pool, Mapping):
                pool = SlotPool.from_mapping(int(level), pool)
            pools[int(level)] = pool
        self.spell_slots = dict(sorted(pools.items()))
        if isinstance(self.pact_slots, Mapping):
            self.pact_slots = SlotPool(
                level=self.pact_slots.get("level", 1),
                value=self.pact_slots.get("value", 0),
                max=self.pact_slots.get("max", 0),
            )
        spells: List[SpellDescriptor] = []
        for spell in self.known_spells:
            if isinstance(spell, Mapping):
                spell = SpellDescriptor.from_dict(spell)
            spells.append(spell)
        self.known_spells = spells

    def snapshot(
        self,
        *,
        default_attack_bonus: int = DEFAULT_SPELL_ATTACK_BONUS,
        default_save_dc: int = DEFAULT_SPELL_SAVE_DC,
    ) -> CasterSnapshot:
        return CasterSnapshot(
            caster_id=self.caster_id,
            caster_name=self.name,
            attack_bonus=(
                default_attack_bonus if self.attack_bonus is None else self.attack_bonus
            ),
            save_dc=default_save_dc if self.save_dc is None else self.save_dc,
        )

    def pool(self, level: int, slot_type: str = SLOT_TYPE_SPELL) -> SlotPool | None:
        if slot_type == SLOT_TYPE_PACT:
            pact = self.pact_slots
            if pact is not None and pact.level == level:
                return pact
            return None
        return self.spell_slots.get(int(level))

    @property
    def has_spellcasting_ability(self) -> bool:
        if any(pool.max > 0 for pool in self.spell_slots.values()):
            return True
        if self.pact_slots is not None and self.pact_slots.max > 0:
            return True
        return any(spell.base_level > 0 for spell in self.known_spells)

    def slot_options(self, spell: SpellDescriptor) -> list[SlotOption]:
        """Slot levels that could power ``spell`` into the ring."""

        options: list[SlotOption] = []
        for level in range(spell.base_level, MAX_STORED_SPELL_LEVEL + 1):
            pool = self.spell_slots.get(level)
            if pool is not None and pool.max > 0:
                options.append(
                    SlotOption(level, SLOT_TYPE_SPELL, pool.value, pool.max)
                )
        pact = self.pact_slots
        if (
            pact is not None
            and pact.max > 0
            and spell.base_level <= pact.level <= MAX_STORED_SPELL_LEVEL
        ):
            options.append(SlotOption(pact.level, SLOT_TYPE_PACT, pact.value, pact.max))
        return options

    def storable_spells(self) -> list[SpellDescriptor]:
        """Known spells the ring can hold and this caster has slots for."""

        return [
            spell
            for spell in self.known_spells
            if 1 <= spell.base_level <= MAX_STORED_SPELL_LEVEL and self.slot_options(spell)
        ]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CasterProfile":
        payload = dict(data)
        if "caster_id" not in payload and "id" in payload:
            payload["caster_id"] = payload.pop("id")
        clean = validate_payload(cls, payload)
        slots = clean.get("spell_slots") or {}
        return cls(
            caster_id=str(clean["caster_id"]),
            name=str(clean["name"]),
            attack_bonus=clean.get("attack_bonus"),
            save_dc=clean.get("save_dc"),
            spell_slots={int(level): pool for level, pool in slots.items()},
            pact_slots=clean.get("pact_slots"),
            known_spells=list(clean.get("known_spells") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "caster_id": self.caster_id,
            "name": self.name,
            "spell_slots": {
                str(level): {"value": pool.value, "max": pool.max}
                for level, pool in self.spell_slots.items()
            },
            "known_spells": [
                {
                    "id": spell.spell_id,
                    "name": spell.name,
                    "level": spell.base_level,
                    "target": spell.target_type,
                }
                for spell in self.known_spells
            ],
        }
        if self.attack_bonus is not None:
            payload["attack_bonus"] = self.attack_bonus
        if self.save_dc is not None:
            payload["save_dc"] = self.save_dc
        if self.pact_slots is not None:
            payload["pact_slots"] = self.pact_slots.to_dict()
        return payload


def _is_slot_key(value: Any) -> bool:
    try:
        return is_slot_level(int(value))
    except (TypeError, ValueError):
        return False


def _is_spell_list(value: Any) -> bool:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        return False
    return all(isinstance(item, (Mapping, SpellDescriptor)) for item in value)


class CasterProfileValidator(ModelValidator):
    model = CasterProfile
    fields = {
        "caster_id": FieldSpec((str, int), "a caster identifier"),
        "name": FieldSpec(is_non_empty_str, "a non-empty caster name"),
        "attack_bonus": FieldSpec(
            is_whole_number, "an integer attack bonus", required=False, allow_none=True
        ),
        "save_dc": FieldSpec(
            is_whole_number, "an integer save DC", required=False, allow_none=True
        ),
        "spell_slots": FieldSpec(
            MappingSpec(_is_slot_key, (Mapping, SlotPool)),
            "a mapping of slot levels to slot pools",
            required=False,
        ),
        "pact_slots": FieldSpec(
            (Mapping, SlotPool), "a pact slot pool", required=False, allow_none=True
        ),
        "known_spells": FieldSpec(_is_spell_list, "a list of spells", required=False),
    }


CasterProfile.validator = CasterProfileValidator


__all__ = ["CasterProfile", "SlotOption", "SlotPool"]
