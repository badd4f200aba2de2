"""Move stored spells out of legacy flag locations."""

from __future__ import annotations

from typing import Any, Mapping, MutableMapping

from spellring.constants import MODULE_ID
from spellring.storage import read_toml, write_toml


FROM_VERSION = 1
TO_VERSION = 2
DESCRIPTION = "Hoist legacy flag data to top-level storedSpells and add revisions"


def _legacy_spells(payload: Mapping[str, Any]) -> Any:
    candidates = (
        ("system", "flags", MODULE_ID),
        ("flags", MODULE_ID),
        (MODULE_ID,),
    )
    for path in candidates:
        node: Any = payload
        for part in path:
            node = node.get(part) if isinstance(node, Mapping) else None
        if isinstance(node, Mapping) and "storedSpells" in node:
            return node["storedSpells"]
    return None


def _listify(spells: Mapping[str, Any]) -> list[Any]:
    # Arrays saved as objects keep their positions as "0", "1", ... keys.
    if spells and all(str(key).isdigit() for key in spells):
        return [spells[key] for key in sorted(spells, key=lambda key: int(key))]
    return [dict(spells)]


def apply(context) -> None:  # type: ignore[override]
    directory = context.record_directory()
    if not directory.exists():
        return

    updated = 0
    for path in sorted(directory.glob("*.toml")):
        payload = read_toml(path)
        if not isinstance(payload, MutableMapping):
            continue
        changed = False

        if "storedSpells" not in payload:
            legacy = _legacy_spells(payload)
            payload["storedSpells"] = legacy if legacy is not None else []
            changed = True
        for key in ("system", "flags", MODULE_ID):
            if key in payload:
                payload.pop(key)
                changed = True

        spells = payload["storedSpells"]
        if isinstance(spells, Mapping):
            payload["storedSpells"] = _listify(spells)
            changed = True
        elif not isinstance(spells, list):
            payload["storedSpells"] = []
            changed = True

        if not isinstance(payload.get("revision"), int):
            payload["revision"] = 0
            changed = True

        if changed:
            write_toml(path, payload)
            updated += 1

    if updated:
        context.log(f"normalised {updated} legacy ring record(s)")
