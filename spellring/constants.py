"""Shared constants for the Ring of Spell Storing."""

from __future__ import annotations

# Identifier the ring's data was historically filed under on host items.
MODULE_ID = "ring-of-spell-storing"

# Total spell levels a single ring may hold at once.
DEFAULT_CAPACITY_LEVELS = 5

# Highest slot level the ring can absorb, regardless of remaining capacity.
MAX_STORED_SPELL_LEVEL = 5

# Fallbacks used when a caster has no recorded spellcasting statistics.
DEFAULT_SPELL_SAVE_DC = 8
DEFAULT_SPELL_ATTACK_BONUS = 0

SLOT_TYPE_SPELL = "spell"
SLOT_TYPE_PACT = "pact"
SLOT_TYPES = (SLOT_TYPE_SPELL, SLOT_TYPE_PACT)
