from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_BASE = Path(__file__).resolve().parents[1]
if str(PROJECT_BASE) not in sys.path:
    sys.path.insert(0, str(PROJECT_BASE))

from spellring.config import RingConfig

ENV_NAMES = (
    "SPELLRING_CAPACITY",
    "SPELLRING_ALLOW_SELF_SPELLS",
    "SPELLRING_DEFAULT_SAVE_DC",
    "SPELLRING_DEFAULT_ATTACK_BONUS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment() -> None:
    config = RingConfig.from_env()

    assert config == RingConfig()
    assert config.capacity_levels == 5
    assert config.allow_self_spells is True
    assert config.default_save_dc == 8
    assert config.default_attack_bonus == 0


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPELLRING_CAPACITY", "7")
    monkeypatch.setenv("SPELLRING_ALLOW_SELF_SPELLS", "off")
    monkeypatch.setenv("SPELLRING_DEFAULT_SAVE_DC", "12")
    monkeypatch.setenv("SPELLRING_DEFAULT_ATTACK_BONUS", "-1")

    config = RingConfig.from_env()

    assert config.capacity_levels == 7
    assert config.allow_self_spells is False
    assert config.default_save_dc == 12
    assert config.default_attack_bonus == -1


def test_values_are_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPELLRING_CAPACITY", "0")
    monkeypatch.setenv("SPELLRING_DEFAULT_SAVE_DC", "-4")

    config = RingConfig.from_env()

    assert config.capacity_levels == 1
    assert config.default_save_dc == 0


@pytest.mark.parametrize(
    ("name", "value"),
    [("SPELLRING_CAPACITY", "five"), ("SPELLRING_ALLOW_SELF_SPELLS", "maybe")],
)
def test_bad_values_raise(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(RuntimeError, match=name):
        RingConfig.from_env()
