from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

"""Row-level record models shared by both gateways.

SheetRecord wraps one physical spreadsheet row (all cells are strings) and
StoreRecord one typed row of the relational store. Neither performs any
coercion; that is the job of ``sheet_migration.mapping``.
"""

__all__ = [
    "EMPTY_MARKER",
    "ID_ALIASES",
    "SheetRecord",
    "SheetTable",
    "StoreRecord",
    "is_blank",
]

# セル値 "(empty)" は空扱い (シート側の入力規則由来)
EMPTY_MARKER = "(empty)"

# ID 列の歴史的別名。先頭が正規名
ID_ALIASES: tuple[str, ...] = ("ID", "Sheet ID", "sheetId", "Id")


def is_blank(value: Any) -> bool:
    """Return True for None, empty / whitespace strings and the ``(empty)`` marker."""
    if value is None:
        return True
    if isinstance(value, str):
        text = value.strip()
        return text == "" or text == EMPTY_MARKER
    return False


@dataclass(frozen=True)
class SheetRecord:
    """One data row of a sheet, indexed by the header row.

    Attributes:
        headers: Header cells exactly as they appear in row 1
        values: Cell strings, padded / truncated to ``len(headers)``
        row_number: 1-based physical row number (the header is row 1)
    """
    headers: tuple[str, ...]
    values: tuple[str, ...]
    row_number: int

    @staticmethod
    def from_row(headers: Sequence[str], row: Sequence[Any], row_number: int) -> SheetRecord:
        cells = ["" if v is None else str(v) for v in row[: len(headers)]]
        cells.extend([""] * (len(headers) - len(cells)))
        return SheetRecord(headers=tuple(headers), values=tuple(cells), row_number=row_number)

    def as_dict(self) -> dict[str, str]:
        # 重複ヘッダは最初の列を優先
        out: dict[str, str] = {}
        for header, value in zip(self.headers, self.values):
            out.setdefault(header, value)
        return out

    def get(self, column: str, default: str | None = None) -> str | None:
        wanted = column.strip()
        for header, value in zip(self.headers, self.values):
            if header.strip() == wanted:
                return value
        return default

    def is_empty(self) -> bool:
        return all(is_blank(v) for v in self.values)

    def identifier(self) -> str | None:
        """Return the row ID, looking through the historical alias columns."""
        for alias in ID_ALIASES:
            value = self.get(alias)
            if not is_blank(value):
                return str(value).strip()
        return None


@dataclass(frozen=True)
class SheetTable:
    """Header row plus data rows of one live sheet read."""
    headers: tuple[str, ...]
    records: list[SheetRecord] = field(default_factory=list)

    def find(self, identifier: str) -> list[SheetRecord]:
        return [r for r in self.records if r.identifier() == identifier]


@dataclass(frozen=True)
class StoreRecord:
    """Typed row of an entity table.

    Attributes:
        id: Store-owned primary key
        sheet_id: Raw sheet identifier (nullable, unique when set)
        synced: Best-effort marker that the last write reached the sheet
        values: Business fields keyed by store-side field name
        created_at: Row creation timestamp (volatile, never compared)
    """
    id: int
    sheet_id: str | None
    synced: bool
    values: dict[str, Any]
    created_at: Any = None
