"""Capacity-tracked storage ledger for a single Ring of Spell Storing.

A ledger is built from whatever the document store returns for one ring, used
for exactly one store/cast/remove call, serialised back and thrown away.  It
never talks to storage itself; :mod:`spellring.service` sequences persistence
and the caster-side slot bookkeeping around it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar

from .constants import DEFAULT_CAPACITY_LEVELS, MAX_STORED_SPELL_LEVEL, SLOT_TYPE_SPELL
from .models._validation import ModelValidationError
from .models.spells import CasterSnapshot, SpellDescriptor, StoredSpellEntry

log = logging.getLogger(__name__)

T = TypeVar("T")

_REQUIRED_KEYS = (
    ("name",),
    ("level", "storedLevel", "stored_level"),
    ("originalCaster", "casterSnapshot", "caster_snapshot"),
)


class ErrorKind(Enum):
    INVALID_LEVEL = "invalid_level"
    INSUFFICIENT_CAPACITY = "insufficient_capacity"
    NOT_FOUND = "not_found"
    PERSISTENCE_FAILURE = "persistence_failure"
    NO_SLOT = "no_slot"
    NOT_ALLOWED = "not_allowed"
    UNKNOWN_CASTER = "unknown_caster"
    INVALID_DATA = "invalid_data"


@dataclass(frozen=True, slots=True)
class LedgerError:
    kind: ErrorKind
    message: str
    required: Optional[int] = None
    available: Optional[int] = None


@dataclass(frozen=True, slots=True)
class LedgerResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "LedgerResult[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        required: int | None = None,
        available: int | None = None,
    ) -> "LedgerResult[T]":
        return cls(error=LedgerError(kind, message, required, available))


def _now_millis() -> int:
    return int(time.time() * 1000)


def _is_well_formed(record: Any) -> bool:
    if not isinstance(record, Mapping):
        return False
    return all(
        any(record.get(key) is not None for key in aliases) for aliases in _REQUIRED_KEYS
    )


def _extract_records(raw: Any) -> tuple[list[Any], int]:
    if raw is None:
        return [], 0
    revision = 0
    if isinstance(raw, Mapping):
        try:
            revision = max(0, int(raw.get("revision", 0)))
        except (TypeError, ValueError):
            revision = 0
        raw = raw.get("storedSpells")
    if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
        return list(raw), revision
    if raw is not None:
        log.warning("Ignoring stored spell payload of type %s", type(raw).__name__)
    return [], revision


@dataclass(slots=True)
class SpellStorageLedger:
    capacity_levels: int = DEFAULT_CAPACITY_LEVELS
    entries: List[StoredSpellEntry] = field(default_factory=list)
    revision: int = 0

    @classmethod
    def load(
        cls, raw: Any, *, capacity_levels: int = DEFAULT_CAPACITY_LEVELS
    ) -> "SpellStorageLedger":
        """Build a ledger from an untrusted stored payload.

        ``raw`` may be ``None``, a bare list of records, or the persisted
        ``{"storedSpells": [...], "revision": n}`` mapping.  Records that are
        not mappings, lack a name, level or caster snapshot, or fail model
        validation are dropped and counted.  Loading never fails.
        """

        records, revision = _extract_records(raw)
        entries: list[StoredSpellEntry] = []
        dropped = 0
        for record in records:
            if not _is_well_formed(record):
                dropped += 1
                continue
            try:
                entries.append(StoredSpellEntry.from_dict(record))
            except (ModelValidationError, TypeError, ValueError) as exc:
                log.debug("Dropping stored spell record: %s", exc)
                dropped += 1
        if dropped:
            log.warning("Dropped %d malformed stored spell record(s)", dropped)

        ledger = cls(capacity_levels=capacity_levels, entries=entries, revision=revision)
        if ledger.over_capacity:
            log.warning(
                "Ring holds %d spell levels but its capacity is %d; "
                "storing is blocked until spells are removed",
                ledger.used_levels(),
                capacity_levels,
            )
        return ledger

    @classmethod
    def from_export(
        cls, data: Any, *, capacity_levels: int = DEFAULT_CAPACITY_LEVELS
    ) -> LedgerResult["SpellStorageLedger"]:
        """Strictly rebuild a ledger from :meth:`export` output."""

        records = data.get("storedSpells") if isinstance(data, Mapping) else None
        if not isinstance(records, list):
            return LedgerResult.failure(ErrorKind.INVALID_DATA, "Invalid ring data format.")
        entries: list[StoredSpellEntry] = []
        for index, record in enumerate(records):
            if not _is_well_formed(record):
                return LedgerResult.failure(
                    ErrorKind.INVALID_DATA, f"Stored spell #{index + 1} is malformed."
                )
            try:
                entries.append(StoredSpellEntry.from_dict(record))
            except ModelValidationError as exc:
                return LedgerResult.failure(ErrorKind.INVALID_DATA, str(exc))
        total = sum(entry.stored_level for entry in entries)
        if total > capacity_levels:
            return LedgerResult.failure(
                ErrorKind.INSUFFICIENT_CAPACITY,
                "Ring data exceeds maximum capacity.",
                required=total,
                available=capacity_levels,
            )
        return LedgerResult.success(cls(capacity_levels=capacity_levels, entries=entries))

    def used_levels(self) -> int:
        return sum(entry.stored_level for entry in self.entries)

    def remaining_capacity(self) -> int:
        return self.capacity_levels - self.used_levels()

    def can_store(self, level: int) -> bool:
        return level <= self.remaining_capacity()

    @property
    def over_capacity(self) -> bool:
        return self.used_levels() > self.capacity_levels

    def capacity_percentage(self) -> float:
        if self.capacity_levels <= 0:
            return 100.0
        return self.used_levels() / self.capacity_levels * 100

    def store(
        self,
        spell: SpellDescriptor,
        caster_snapshot: CasterSnapshot,
        requested_level: int,
        *,
        slot_type: str = SLOT_TYPE_SPELL,
        now: int | None = None,
    ) -> LedgerResult[StoredSpellEntry]:
        if spell.base_level < 1:
            return LedgerResult.failure(
                ErrorKind.INVALID_LEVEL,
                f"{spell.name} has no spell level; cantrips cannot be stored.",
            )
        if requested_level < spell.base_level:
            return LedgerResult.failure(
                ErrorKind.INVALID_LEVEL,
                f"Cannot store {spell.name} at level {requested_level}. "
                f"Minimum level is {spell.base_level}.",
            )
        if requested_level > MAX_STORED_SPELL_LEVEL:
            return LedgerResult.failure(
                ErrorKind.INVALID_LEVEL,
                f"The ring can only store spells up to level {MAX_STORED_SPELL_LEVEL}.",
            )
        if not self.can_store(requested_level):
            available = max(0, self.remaining_capacity())
            return LedgerResult.failure(
                ErrorKind.INSUFFICIENT_CAPACITY,
                f"Not enough capacity: {requested_level} level(s) required, "
                f"{available} available.",
                required=requested_level,
                available=available,
            )

        entry = StoredSpellEntry(
            spell_id=spell.spell_id,
            name=spell.name,
            stored_level=requested_level,
            base_level=spell.base_level,
            caster_snapshot=caster_snapshot,
            stored_at=_now_millis() if now is None else int(now),
            slot_type=slot_type,
        )
        self.entries.append(entry)
        return LedgerResult.success(entry)

    def cast_at(self, index: int) -> LedgerResult[StoredSpellEntry]:
        """Hand back the entry at ``index`` for casting and drop it from the ring."""

        return self._pop(index)

    def remove_at(self, index: int) -> LedgerResult[StoredSpellEntry]:
        return self._pop(index)

    def clear(self) -> list[StoredSpellEntry]:
        removed = list(self.entries)
        self.entries.clear()
        return removed

    def _pop(self, index: int) -> LedgerResult[StoredSpellEntry]:
        if not 0 <= index < len(self.entries):
            return LedgerResult.failure(
                ErrorKind.NOT_FOUND, f"No stored spell at position {index}."
            )
        return LedgerResult.success(self.entries.pop(index))

    def serialize(self) -> dict[str, Any]:
        return {
            "storedSpells": [entry.to_dict() for entry in self.entries],
            "revision": self.revision,
        }

    def display_entries(self) -> list[dict[str, Any]]:
        rows = []
        for index, entry in enumerate(self.entries):
            row = entry.to_dict()
            row["index"] = index
            row["storedDate"] = entry.stored_date
            rows.append(row)
        return rows

    def export(self, *, now: int | None = None) -> dict[str, Any]:
        return {
            "storedSpells": [entry.to_dict() for entry in self.entries],
            "usedLevels": self.used_levels(),
            "remainingLevels": self.remaining_capacity(),
            "capacityLevels": self.capacity_levels,
            "capacityPercentage": self.capacity_percentage(),
            "exportedAt": _now_millis() if now is None else int(now),
        }


__all__ = [
    "ErrorKind",
    "LedgerError",
    "LedgerResult",
    "SpellStorageLedger",
]
