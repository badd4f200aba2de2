"""Ring operations as seen by a command or UI layer.

Every call loads a fresh ledger from the document store, performs a single
mutation and persists it straight away, so nothing here holds ring state
between calls.  Storing a spell spends one of the caster's slots; if the ring
cannot be saved afterwards the slot is handed back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .casters import CasterDirectory
from .config import RingConfig
from .constants import SLOT_TYPE_SPELL
from .ledger import ErrorKind, LedgerResult, SpellStorageLedger
from .models.spells import SpellDescriptor, StoredSpellEntry
from .storage import HostDocumentStore

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RingCasting:
    """What the host needs to resolve a spell released from the ring."""

    entry: StoredSpellEntry

    @property
    def spell_level(self) -> int:
        return self.entry.stored_level

    @property
    def attack_bonus(self) -> int:
        return self.entry.caster_snapshot.attack_bonus

    @property
    def save_dc(self) -> int:
        return self.entry.caster_snapshot.save_dc

    @property
    def consume_spell_slot(self) -> bool:
        return False

    def roll_options(self) -> dict[str, Any]:
        return {
            "spellLevel": self.spell_level,
            "spellAttackBonus": self.attack_bonus,
            "spellSaveDC": self.save_dc,
            "consumeSpellSlot": self.consume_spell_slot,
        }


@dataclass(frozen=True, slots=True)
class RingStatus:
    ring_id: str
    used_levels: int
    remaining_levels: int
    capacity_levels: int
    capacity_percentage: float
    spells: list[dict[str, Any]]


class RingService:
    def __init__(
        self,
        store: HostDocumentStore,
        casters: CasterDirectory,
        config: RingConfig | None = None,
    ) -> None:
        self.store = store
        self.casters = casters
        self.config = config or RingConfig()

    async def load_ledger(self, ring_id: str) -> SpellStorageLedger:
        raw = await self.store.load(ring_id)
        return SpellStorageLedger.load(raw, capacity_levels=self.config.capacity_levels)

    async def status(self, ring_id: str) -> RingStatus:
        ledger = await self.load_ledger(ring_id)
        return RingStatus(
            ring_id=ring_id,
            used_levels=ledger.used_levels(),
            remaining_levels=ledger.remaining_capacity(),
            capacity_levels=ledger.capacity_levels,
            capacity_percentage=ledger.capacity_percentage(),
            spells=ledger.display_entries(),
        )

    async def store_spell(
        self,
        ring_id: str,
        spell: SpellDescriptor,
        caster_id: str,
        level: int,
        *,
        slot_type: str = SLOT_TYPE_SPELL,
        now: int | None = None,
    ) -> LedgerResult[StoredSpellEntry]:
        if caster_id not in self.casters:
            return LedgerResult.failure(
                ErrorKind.UNKNOWN_CASTER, f"Unknown caster: {caster_id}"
            )
        if spell.targets_self and not self.config.allow_self_spells:
            return LedgerResult.failure(
                ErrorKind.NOT_ALLOWED,
                "Self-targeting spells cannot be stored in the ring.",
            )

        ledger = await self.load_ledger(ring_id)
        snapshot = self.casters.snapshot(caster_id)
        result = ledger.store(spell, snapshot, level, slot_type=slot_type, now=now)
        if not result.ok:
            return result

        try:
            consumed = await self.casters.consume_slot(caster_id, level, slot_type)
        except Exception:
            log.exception("Could not record slot use for caster %s", caster_id)
            return LedgerResult.failure(
                ErrorKind.PERSISTENCE_FAILURE,
                f"Failed to spend a level {level} slot; the ring was not updated.",
            )
        if not consumed:
            kind = "pact" if slot_type != SLOT_TYPE_SPELL else "spell"
            return LedgerResult.failure(
                ErrorKind.NO_SLOT, f"No available {kind} slots of level {level}."
            )

        if not await self._persist(ring_id, ledger):
            await self._restore_slot(caster_id, level, slot_type)
            return LedgerResult.failure(
                ErrorKind.PERSISTENCE_FAILURE,
                f"Failed to store {spell.name}; the ring was not updated.",
            )

        log.info(
            "Stored %s at level %d in ring %s for %s",
            spell.name,
            level,
            ring_id,
            snapshot.caster_name,
        )
        return result

    async def cast_spell(
        self, ring_id: str, index: int, *, equipped: bool = True
    ) -> LedgerResult[RingCasting]:
        if not equipped:
            return LedgerResult.failure(
                ErrorKind.NOT_ALLOWED, "The ring must be equipped to cast from it."
            )
        ledger = await self.load_ledger(ring_id)
        result = ledger.cast_at(index)
        if not result.ok:
            return LedgerResult(error=result.error)
        entry = result.value
        if not await self._persist(ring_id, ledger):
            return LedgerResult.failure(
                ErrorKind.PERSISTENCE_FAILURE,
                f"Failed to release {entry.name}; the ring was not updated.",
            )
        log.info("Cast %s from ring %s at level %d", entry.name, ring_id, entry.stored_level)
        return LedgerResult.success(RingCasting(entry))

    async def remove_spell(self, ring_id: str, index: int) -> LedgerResult[StoredSpellEntry]:
        ledger = await self.load_ledger(ring_id)
        result = ledger.remove_at(index)
        if not result.ok:
            return result
        if not await self._persist(ring_id, ledger):
            return LedgerResult.failure(
                ErrorKind.PERSISTENCE_FAILURE,
                f"Failed to remove {result.value.name}; the ring was not updated.",
            )
        log.info("Removed %s from ring %s", result.value.name, ring_id)
        return result

    async def clear_spells(self, ring_id: str) -> LedgerResult[list[StoredSpellEntry]]:
        ledger = await self.load_ledger(ring_id)
        removed = ledger.clear()
        if not await self._persist(ring_id, ledger):
            return LedgerResult.failure(
                ErrorKind.PERSISTENCE_FAILURE, "Failed to clear the ring."
            )
        log.info("Cleared %d spell(s) from ring %s", len(removed), ring_id)
        return LedgerResult.success(removed)

    async def export_ring(self, ring_id: str, *, now: int | None = None) -> dict[str, Any]:
        ledger = await self.load_ledger(ring_id)
        return ledger.export(now=now)

    async def import_ring(
        self, ring_id: str, data: Mapping[str, Any]
    ) -> LedgerResult[SpellStorageLedger]:
        result = SpellStorageLedger.from_export(
            data, capacity_levels=self.config.capacity_levels
        )
        if not result.ok:
            return result
        imported = result.value
        current = await self.load_ledger(ring_id)
        imported.revision = current.revision
        if not await self._persist(ring_id, imported):
            return LedgerResult.failure(
                ErrorKind.PERSISTENCE_FAILURE, "Failed to import ring data."
            )
        log.info("Imported %d spell(s) into ring %s", len(imported.entries), ring_id)
        return result

    async def _persist(self, ring_id: str, ledger: SpellStorageLedger) -> bool:
        try:
            saved = await self.store.save(
                ring_id, ledger.serialize(), expected_revision=ledger.revision
            )
        except Exception:
            log.exception("Persisting ring %s raised", ring_id)
            return False
        if not saved:
            log.warning("Ring %s was not saved", ring_id)
        return bool(saved)

    async def _restore_slot(self, caster_id: str, level: int, slot_type: str) -> Optional[bool]:
        try:
            restored = await self.casters.restore_slot(caster_id, level, slot_type)
        except Exception:
            log.exception(
                "Failed to restore %s slot %d for caster %s", slot_type, level, caster_id
            )
            return None
        if not restored:
            log.error(
                "Could not restore %s slot %d for caster %s", slot_type, level, caster_id
            )
        return restored


__all__ = ["RingCasting", "RingService", "RingStatus"]
