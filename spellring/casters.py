"""Caster directory: spellcasting statistics and spell slot bookkeeping."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from .config import RingConfig
from .constants import SLOT_TYPE_SPELL
from .models.casters import CasterProfile, SlotOption
from .models.spells import CasterSnapshot, SpellDescriptor
from .storage import CASTERS_COLLECTION, DataStore

log = logging.getLogger(__name__)


class UnknownCasterError(KeyError):
    """Raised when a caster id is not registered in the directory."""

    def __init__(self, caster_id: str) -> None:
        super().__init__(caster_id)
        self.caster_id = caster_id

    def __str__(self) -> str:
        return f"Unknown caster: {self.caster_id}"


class CasterDirectory:
    """Registry of caster profiles.

    When given a :class:`DataStore`, every slot change is written through to
    the ``casters`` collection so the profile survives restarts.
    """

    def __init__(
        self,
        profiles: Iterable[CasterProfile] = (),
        *,
        store: DataStore | None = None,
        config: RingConfig | None = None,
    ) -> None:
        self._profiles: Dict[str, CasterProfile] = {}
        self._store = store
        self._config = config or RingConfig()
        for profile in profiles:
            self.register(profile)

    @classmethod
    async def load(
        cls, store: DataStore, *, config: RingConfig | None = None
    ) -> "CasterDirectory":
        directory = cls(store=store, config=config)
        for key, payload in (await store.all(CASTERS_COLLECTION)).items():
            try:
                directory.register(CasterProfile.from_dict(payload))
            except ValueError as exc:
                log.warning("Skipping caster record %s: %s", key, exc)
        return directory

    def register(self, profile: CasterProfile) -> None:
        self._profiles[profile.caster_id] = profile

    def get(self, caster_id: str) -> Optional[CasterProfile]:
        return self._profiles.get(str(caster_id))

    def require(self, caster_id: str) -> CasterProfile:
        profile = self.get(caster_id)
        if profile is None:
            raise UnknownCasterError(str(caster_id))
        return profile

    def __contains__(self, caster_id: object) -> bool:
        return str(caster_id) in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def spellcasters(self) -> list[CasterProfile]:
        return [p for p in self._profiles.values() if p.has_spellcasting_ability]

    def snapshot(self, caster_id: str) -> CasterSnapshot:
        return self.require(caster_id).snapshot(
            default_attack_bonus=self._config.default_attack_bonus,
            default_save_dc=self._config.default_save_dc,
        )

    def has_spellcasting_ability(self, caster_id: str) -> bool:
        profile = self.get(caster_id)
        return profile is not None and profile.has_spellcasting_ability

    def valid_slot_levels(self, caster_id: str, spell: SpellDescriptor) -> list[SlotOption]:
        return self.require(caster_id).slot_options(spell)

    async def consume_slot(
        self, caster_id: str, level: int, slot_type: str = SLOT_TYPE_SPELL
    ) -> bool:
        profile = self.require(caster_id)
        pool = profile.pool(level, slot_type)
        if pool is None or not pool.consume():
            log.info(
                "No %s slot of level %d left for %s", slot_type, level, profile.name
            )
            return False
        try:
            await self._persist(profile)
        except Exception:
            pool.restore()
            raise
        log.debug("Consumed %s slot %d for %s (%d left)", slot_type, level, profile.name, pool.value)
        return True

    async def restore_slot(
        self, caster_id: str, level: int, slot_type: str = SLOT_TYPE_SPELL
    ) -> bool:
        profile = self.require(caster_id)
        pool = profile.pool(level, slot_type)
        if pool is None or not pool.restore():
            return False
        await self._persist(profile)
        log.debug("Restored %s slot %d for %s (%d left)", slot_type, level, profile.name, pool.value)
        return True

    async def _persist(self, profile: CasterProfile) -> None:
        if self._store is None:
            return
        await self._store.set(CASTERS_COLLECTION, profile.caster_id, profile.to_dict())


__all__ = ["CasterDirectory", "UnknownCasterError"]
