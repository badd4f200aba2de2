"""Ring configuration utilities."""

from __future__ import annotations

import os
from dataclasses import dataclass

from .constants import (
    DEFAULT_CAPACITY_LEVELS,
    DEFAULT_SPELL_ATTACK_BONUS,
    DEFAULT_SPELL_SAVE_DC,
)

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    raise RuntimeError(f"Environment variable {name} must be a boolean, got {value!r}")


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(
            f"Environment variable {name} must be an integer, got {value!r}"
        ) from exc


@dataclass(slots=True)
class RingConfig:
    capacity_levels: int = DEFAULT_CAPACITY_LEVELS
    allow_self_spells: bool = True
    default_save_dc: int = DEFAULT_SPELL_SAVE_DC
    default_attack_bonus: int = DEFAULT_SPELL_ATTACK_BONUS

    @classmethod
    def from_env(cls) -> "RingConfig":
        capacity_levels = env_int("SPELLRING_CAPACITY", DEFAULT_CAPACITY_LEVELS)
        allow_self_spells = env_flag("SPELLRING_ALLOW_SELF_SPELLS", True)
        default_save_dc = env_int("SPELLRING_DEFAULT_SAVE_DC", DEFAULT_SPELL_SAVE_DC)
        default_attack_bonus = env_int(
            "SPELLRING_DEFAULT_ATTACK_BONUS", DEFAULT_SPELL_ATTACK_BONUS
        )
        capacity_levels = max(1, capacity_levels)
        default_save_dc = max(0, default_save_dc)

        return cls(
            capacity_levels=capacity_levels,
            allow_self_spells=allow_self_spells,
            default_save_dc=default_save_dc,
            default_attack_bonus=default_attack_bonus,
        )


__all__ = ["RingConfig"]
