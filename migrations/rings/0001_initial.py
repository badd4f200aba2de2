"""Initial migration for ring records."""

from __future__ import annotations


FROM_VERSION = 0
TO_VERSION = 1
DESCRIPTION = "Bootstrap ring record directory"


def apply(context) -> None:  # type: ignore[override]
    context.record_directory().mkdir(parents=True, exist_ok=True)
