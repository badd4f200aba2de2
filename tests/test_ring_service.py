from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Mapping

import pytest

PROJECT_BASE = Path(__file__).resolve().parents[1]
if str(PROJECT_BASE) not in sys.path:
    sys.path.insert(0, str(PROJECT_BASE))

from spellring.casters import CasterDirectory
from spellring.config import RingConfig
from spellring.ledger import ErrorKind
from spellring.models.casters import CasterProfile, SlotPool
from spellring.models.spells import SpellDescriptor
from spellring.service import RingService
from spellring.storage import DataStore

SHIELD = SpellDescriptor(spell_id="shield", name="Shield", base_level=1, target_type="self")
FIREBALL = SpellDescriptor(spell_id="fireball", name="Fireball", base_level=3)
HOLD_PERSON = SpellDescriptor(spell_id="hold", name="Hold Person", base_level=2)


def make_directory() -> CasterDirectory:
    return CasterDirectory(
        [
            CasterProfile(
                caster_id="wiz",
                name="Mira",
                attack_bonus=7,
                save_dc=15,
                spell_slots={
                    1: SlotPool(1, 4, 4),
                    2: SlotPool(2, 3, 3),
                    3: SlotPool(3, 3, 3),
                    5: SlotPool(5, 1, 1),
                },
            ),
            CasterProfile(
                caster_id="lock",
                name="Vex",
                attack_bonus=5,
                save_dc=13,
                pact_slots=SlotPool(2, 2, 2),
            ),
        ]
    )


class FlakyStore:
    """In-memory document store whose writes can be switched off."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.accept_writes = True

    async def load(self, item_id: str) -> Mapping[str, Any] | None:
        return self.records.get(item_id)

    async def save(
        self, item_id: str, raw: Mapping[str, Any], *, expected_revision: int | None = None
    ) -> bool:
        if not self.accept_writes:
            return False
        self.records[item_id] = dict(raw)
        return True


def test_store_cast_remove_lifecycle(tmp_path: Path) -> None:
    casters = make_directory()
    service = RingService(DataStore(storage_root=tmp_path), casters)

    async def scenario() -> None:
        stored = await service.store_spell("ring", SHIELD, "wiz", 1, now=1)
        assert stored.ok
        stored = await service.store_spell("ring", FIREBALL, "wiz", 3, now=2)
        assert stored.ok

        status = await service.status("ring")
        assert (status.used_levels, status.remaining_levels) == (4, 1)
        assert [row["name"] for row in status.spells] == ["Shield", "Fireball"]

        full = await service.store_spell("ring", FIREBALL, "wiz", 3)
        assert full.error.kind is ErrorKind.INSUFFICIENT_CAPACITY
        assert (full.error.required, full.error.available) == (3, 1)

        cast = await service.cast_spell("ring", 1)
        assert cast.ok
        assert cast.value.roll_options() == {
            "spellLevel": 3,
            "spellAttackBonus": 7,
            "spellSaveDC": 15,
            "consumeSpellSlot": False,
        }

        removed = await service.remove_spell("ring", 0)
        assert removed.value.name == "Shield"

        missing = await service.cast_spell("ring", 0)
        assert missing.error.kind is ErrorKind.NOT_FOUND

        status = await service.status("ring")
        assert status.used_levels == 0

    asyncio.run(scenario())

    wizard = casters.get("wiz")
    assert wizard.spell_slots[1].value == 3
    assert wizard.spell_slots[3].value == 2


def test_rejected_store_does_not_spend_a_slot() -> None:
    casters = make_directory()
    service = RingService(FlakyStore(), casters)

    result = asyncio.run(service.store_spell("ring", FIREBALL, "wiz", 2))

    assert result.error.kind is ErrorKind.INVALID_LEVEL
    assert casters.get("wiz").spell_slots[2].value == 3


def test_store_without_slot_leaves_ring_untouched() -> None:
    store = FlakyStore()
    service = RingService(store, make_directory())

    result = asyncio.run(service.store_spell("ring", HOLD_PERSON, "wiz", 4))

    assert result.error.kind is ErrorKind.NO_SLOT
    assert store.records == {}


def test_pact_slot_is_spent_for_warlocks() -> None:
    casters = make_directory()
    service = RingService(FlakyStore(), casters)

    result = asyncio.run(
        service.store_spell("ring", HOLD_PERSON, "lock", 2, slot_type="pact")
    )

    assert result.ok
    assert result.value.slot_type == "pact"
    assert result.value.caster_snapshot.save_dc == 13
    assert casters.get("lock").pact_slots.value == 1


def test_failed_persist_restores_the_spent_slot(caplog: pytest.LogCaptureFixture) -> None:
    store = FlakyStore()
    store.accept_writes = False
    casters = make_directory()
    service = RingService(store, casters)

    with caplog.at_level(logging.WARNING, logger="spellring.service"):
        result = asyncio.run(service.store_spell("ring", FIREBALL, "wiz", 3))

    assert result.error.kind is ErrorKind.PERSISTENCE_FAILURE
    assert casters.get("wiz").spell_slots[3].value == 3
    assert "was not saved" in caplog.text


def test_failed_restore_is_logged_not_raised(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    store = FlakyStore()
    store.accept_writes = False
    casters = make_directory()
    service = RingService(store, casters)

    async def _broken_restore(*args: Any, **kwargs: Any) -> bool:
        raise RuntimeError("caster sheet locked")

    monkeypatch.setattr(casters, "restore_slot", _broken_restore)

    with caplog.at_level(logging.ERROR, logger="spellring.service"):
        result = asyncio.run(service.store_spell("ring", FIREBALL, "wiz", 3))

    assert result.error.kind is ErrorKind.PERSISTENCE_FAILURE
    assert casters.get("wiz").spell_slots[3].value == 2
    assert "Failed to restore spell slot 3" in caplog.text


def test_failed_persist_keeps_the_spell_on_cast() -> None:
    store = FlakyStore()
    service = RingService(store, make_directory())
    asyncio.run(service.store_spell("ring", FIREBALL, "wiz", 3))
    store.accept_writes = False

    result = asyncio.run(service.cast_spell("ring", 0))

    assert result.error.kind is ErrorKind.PERSISTENCE_FAILURE
    assert len(store.records["ring"]["storedSpells"]) == 1


def test_self_targeting_spells_follow_configuration() -> None:
    blocked = RingService(
        FlakyStore(), make_directory(), RingConfig(allow_self_spells=False)
    )
    allowed = RingService(FlakyStore(), make_directory())

    assert (
        asyncio.run(blocked.store_spell("ring", SHIELD, "wiz", 1)).error.kind
        is ErrorKind.NOT_ALLOWED
    )
    assert asyncio.run(allowed.store_spell("ring", SHIELD, "wiz", 1)).ok


def test_unknown_caster_is_reported() -> None:
    service = RingService(FlakyStore(), make_directory())

    result = asyncio.run(service.store_spell("ring", SHIELD, "ghost", 1))

    assert result.error.kind is ErrorKind.UNKNOWN_CASTER


def test_concurrent_stores_cannot_overfill_the_ring(tmp_path: Path) -> None:
    store = DataStore(storage_root=tmp_path)
    casters = make_directory()
    first = RingService(store, casters)
    second = RingService(store, casters)

    async def scenario() -> list:
        await first.store_spell("ring", HOLD_PERSON, "wiz", 2)
        loaded = await first.load_ledger("ring")
        stale = await second.load_ledger("ring")
        assert loaded.revision == stale.revision == 1

        # Both callers passed the capacity check against the same snapshot.
        assert loaded.store(FIREBALL, casters.snapshot("wiz"), 3).ok
        assert stale.store(FIREBALL, casters.snapshot("wiz"), 3).ok
        saved_first = await store.save(
            "ring", loaded.serialize(), expected_revision=loaded.revision
        )
        saved_second = await store.save(
            "ring", stale.serialize(), expected_revision=stale.revision
        )
        return [saved_first, saved_second, await first.load_ledger("ring")]

    saved_first, saved_second, ledger = asyncio.run(scenario())

    assert saved_first is True
    assert saved_second is False
    assert ledger.used_levels() == 5
    assert ledger.revision == 2


def test_clear_export_and_import() -> None:
    store = FlakyStore()
    service = RingService(store, make_directory())

    async def scenario() -> None:
        await service.store_spell("ring", FIREBALL, "wiz", 3, now=7)
        exported = await service.export_ring("ring", now=8)
        assert exported["usedLevels"] == 3

        cleared = await service.clear_spells("ring")
        assert [entry.name for entry in cleared.value] == ["Fireball"]
        assert (await service.status("ring")).used_levels == 0

        imported = await service.import_ring("other-ring", exported)
        assert imported.ok
        status = await service.status("other-ring")
        assert [row["name"] for row in status.spells] == ["Fireball"]

        rejected = await service.import_ring("other-ring", {"storedSpells": None})
        assert rejected.error.kind is ErrorKind.INVALID_DATA

    asyncio.run(scenario())


class RaisingStore(FlakyStore):
    async def save(
        self, item_id: str, raw: Mapping[str, Any], *, expected_revision: int | None = None
    ) -> bool:
        raise RuntimeError("host rejected update")


def test_store_errors_become_persistence_failures(caplog: pytest.LogCaptureFixture) -> None:
    casters = make_directory()
    service = RingService(RaisingStore(), casters)

    with caplog.at_level(logging.ERROR, logger="spellring.service"):
        result = asyncio.run(service.store_spell("ring", SHIELD, "wiz", 1))

    assert result.error.kind is ErrorKind.PERSISTENCE_FAILURE
    assert casters.get("wiz").spell_slots[1].value == 4
    assert "host rejected update" in caplog.text


def test_caster_write_errors_leave_the_slot_unspent(tmp_path: Path) -> None:
    class BrokenCasterStore(DataStore):
        async def set(self, collection: str, key: str, value: Mapping[str, Any]) -> None:
            raise RuntimeError("caster collection is read-only")

    store = BrokenCasterStore(storage_root=tmp_path)
    casters = CasterDirectory(make_directory().spellcasters(), store=store)
    service = RingService(store, casters)

    result = asyncio.run(service.store_spell("ring", FIREBALL, "wiz", 3))

    assert result.error.kind is ErrorKind.PERSISTENCE_FAILURE
    assert casters.get("wiz").spell_slots[3].value == 3
    assert asyncio.run(service.status("ring")).used_levels == 0


def test_status_skips_records_with_impossible_timestamps(tmp_path: Path) -> None:
    store = DataStore(storage_root=tmp_path)
    caster = {"id": "wiz", "name": "Mira"}
    record = {
        "storedSpells": [
            {"name": "Shield", "level": 1, "originalCaster": caster, "storedAt": 10**17},
            {"name": "Blur", "level": 2, "originalCaster": caster, "storedAt": 0},
        ]
    }
    assert asyncio.run(store.save("r", record))
    service = RingService(store, make_directory())

    status = asyncio.run(service.status("r"))

    assert [row["name"] for row in status.spells] == ["Blur"]
    assert status.spells[0]["storedDate"] == "1970-01-01"
    assert status.capacity_percentage == pytest.approx(40.0)


def test_unequipped_ring_cannot_be_cast_from() -> None:
    store = FlakyStore()
    service = RingService(store, make_directory())
    asyncio.run(service.store_spell("ring", FIREBALL, "wiz", 3))

    result = asyncio.run(service.cast_spell("ring", 0, equipped=False))

    assert result.error.kind is ErrorKind.NOT_ALLOWED
    assert len(store.records["ring"]["storedSpells"]) == 1
    assert asyncio.run(service.cast_spell("ring", 0)).ok
