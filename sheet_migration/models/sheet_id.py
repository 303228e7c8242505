from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

"""Explicit sheet identifier states.

A StoreRecord's ``sheet_id`` is either a durable identifier that was issued by
the sheet (or by an append we performed) or a locally generated placeholder
that has never reached the sheet. Placeholders are recognised by an
entity-specific prefix such as ``PR-`` and must never be used for a row lookup.
"""

__all__ = [
    "DurableSheetId",
    "PendingSheetId",
    "SheetId",
    "parse_sheet_id",
]


@dataclass(frozen=True)
class DurableSheetId:
    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PendingSheetId:
    value: str

    def __str__(self) -> str:
        return self.value


SheetId = DurableSheetId | PendingSheetId


def parse_sheet_id(raw: str | None, pending_prefixes: Iterable[str] = ()) -> SheetId | None:
    """Classify a raw ``sheet_id`` column value.

    Args:
        raw: Stored value (may be None / blank)
        pending_prefixes: Prefixes that mark a locally generated placeholder

    Returns:
        None for blank input, otherwise a DurableSheetId or PendingSheetId
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    for prefix in pending_prefixes:
        if prefix and text.startswith(prefix):
            return PendingSheetId(text)
    return DurableSheetId(text)
