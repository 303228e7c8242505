from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .coercion import COERCIONS, render_cell

"""Static bidirectional field maps.

A FieldMap is an ordered list of FieldSpec entries. Each entry ties one sheet
column (plus optional historical aliases) to one store field and names the
coercion applied on the way in. Header matching ignores surrounding
whitespace because several survey questions carry a trailing space in the
live sheet.
"""

__all__ = [
    "RESERVED_FIELDS",
    "SQL_TYPES",
    "FieldSpec",
    "FieldMap",
]

# store 側で自動管理する列。field map からの書込み禁止
RESERVED_FIELDS = frozenset({"id", "sheet_id", "synced", "created_at"})

SQL_TYPES = {
    "currency": "DOUBLE PRECISION",
    "number": "DOUBLE PRECISION",
    "integer": "INTEGER",
    "boolean_to_int": "INTEGER",
    "date": "TEXT",  # ISO 日付 or 解析不能時の原文
    "identity": "TEXT",
}


@dataclass(frozen=True)
class FieldSpec:
    column: str
    field: str
    kind: str = "identity"
    aliases: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.kind not in COERCIONS:
            raise ValueError(f"unknown coercion kind {self.kind!r} for field {self.field!r}")
        if self.field in RESERVED_FIELDS:
            raise ValueError(f"field {self.field!r} is reserved")

    @property
    def columns(self) -> tuple[str, ...]:
        return (self.column, *self.aliases)

    @property
    def sql_type(self) -> str:
        return SQL_TYPES[self.kind]

    def coerce(self, value: Any) -> Any:
        return COERCIONS[self.kind](value)

    def render(self, value: Any) -> str:
        # 日付列は store 上 TEXT なので一度解釈してから DD/MM/YYYY で書き戻す
        if self.kind == "date":
            value = self.coerce(value)
        return render_cell(value)


def _key(header: str) -> str:
    return header.strip()


class FieldMap:
    """Ordered collection of FieldSpec with sheet<->store translation."""

    def __init__(self, specs: Iterable[FieldSpec]) -> None:
        self._specs: tuple[FieldSpec, ...] = tuple(specs)
        by_field: dict[str, FieldSpec] = {}
        by_column: dict[str, FieldSpec] = {}
        for spec in self._specs:
            if spec.field in by_field:
                raise ValueError(f"duplicate field {spec.field!r}")
            by_field[spec.field] = spec
            for column in spec.columns:
                if _key(column) in by_column:
                    raise ValueError(f"duplicate column {column!r}")
                by_column[_key(column)] = spec
        self._by_field = by_field
        self._by_column = by_column

    def __iter__(self) -> Iterator[FieldSpec]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, field: object) -> bool:
        return field in self._by_field

    @property
    def fields(self) -> list[str]:
        return [s.field for s in self._specs]

    def spec(self, field: str) -> FieldSpec:
        return self._by_field[field]

    def spec_for_column(self, column: str) -> FieldSpec | None:
        return self._by_column.get(_key(column))

    def sheet_to_store(
        self,
        row: Mapping[str, Any],
        fields: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        """Translate one sheet row into store field values.

        Args:
            row: Header -> cell mapping (e.g. ``SheetRecord.as_dict()``)
            fields: Restrict the output to these store fields

        Returns:
            Coerced values for every mapped column present in ``row``.
            Unmapped columns are ignored.
        """
        wanted = set(fields) if fields is not None else None
        cells = {_key(h): v for h, v in row.items()}
        out: dict[str, Any] = {}
        for spec in self._specs:
            if wanted is not None and spec.field not in wanted:
                continue
            for column in spec.columns:
                if _key(column) in cells:
                    out[spec.field] = spec.coerce(cells[_key(column)])
                    break
        return out

    def store_to_sheet(
        self,
        values: Mapping[str, Any],
        headers: Sequence[str] | None = None,
        exclude: Iterable[str] = (),
    ) -> dict[str, str]:
        """Translate store values into sheet cells.

        Args:
            values: Store field -> value
            headers: Live header row. When given, output keys are the actual
                header strings and fields whose column is absent are dropped,
                so a sync never creates columns.
            exclude: Store fields never written (sheet-computed columns)

        Returns:
            Column -> rendered cell string
        """
        skip = set(exclude)
        live = {_key(h): h for h in headers} if headers is not None else None
        out: dict[str, str] = {}
        for spec in self._specs:
            if spec.field in skip or spec.field not in values:
                continue
            if live is None:
                column: str | None = spec.column
            else:
                column = next((live[_key(c)] for c in spec.columns if _key(c) in live), None)
            if column is None:
                continue
            out[column] = spec.render(values[spec.field])
        return out

    def normalize(self, field: str, value: Any) -> Any:
        """Coerce a value of either side so sheet and store values compare equal."""
        return self._by_field[field].coerce(value)
