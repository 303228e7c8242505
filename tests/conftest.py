# Shared pytest fixtures
from __future__ import annotations
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from sheet_migration.db.record_store import DuplicateSheetIdError, StoreError, guard_value
from sheet_migration.logging.error_log import ErrorLogBuffer
from sheet_migration.logging.init import reset_logging
from sheet_migration.mapping.entities import EntityDefinition
from sheet_migration.models.records import SheetRecord, SheetTable, StoreRecord
from sheet_migration.services.readback import ReadbackScheduler
from sheet_migration.services.reconciler import Reconciler
from sheet_migration.sheets.gateway import (
    DuplicateRowError,
    RowNotFoundError,
    SheetsAccessError,
    SheetsGateway,
)


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        for var in (
            "GOOGLE_SHEETS_SPREADSHEET_ID",
            "GOOGLE_APPLICATION_CREDENTIALS",
            "SHEET_MIGRATION_CONFIG",
            "DATABASE_URL",
            "PGDSN",
        ):
            monkeypatch.delenv(var, raising=False)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """spreadsheet:
  id: sheet-123
  credentials_file: ./service-account.json
  header_cache_ttl: 60
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
readback_delay_seconds: 0.5
server:
  host: 0.0.0.0
  port: 9000
entities:
  write-offs:
    enabled: false
  loans:
    sheet: Loans 2024
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "migration.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    yield
    reset_logging()


class FakeSheets:
    """In-memory stand-in for SheetsGateway (same public contract)."""

    def __init__(self) -> None:
        self.sheets: dict[str, list[list[str]]] = {}
        self.formulas: dict[tuple[str, int, int], str] = {}
        self.unreadable: set[str] = set()
        self.writes: list[tuple[str, str, Any]] = []
        self._seq = 0

    def add_sheet(self, name: str, headers: list[str], rows: list[list[str]] | None = None) -> None:
        self.sheets[name] = [list(headers), *[list(r) for r in rows or []]]

    def rows(self, name: str) -> list[dict[str, str]]:
        return [r.as_dict() for r in self._table(name).records]

    def _check(self, sheet: str) -> list[list[str]]:
        if sheet in self.unreadable or sheet not in self.sheets:
            raise SheetsAccessError(f"read {sheet}: spreadsheet or sheet not accessible (HTTP 404)")
        return self.sheets[sheet]

    def _table(self, sheet: str) -> SheetTable:
        rows = self._check(sheet)
        headers = tuple(rows[0])
        records = [SheetRecord.from_row(headers, r, n) for n, r in enumerate(rows[1:], start=2)]
        return SheetTable(headers=headers, records=records)

    def read_table(self, sheet: str) -> SheetTable:
        return self._table(sheet)

    def get_all(self, sheet: str) -> list[SheetRecord]:
        return self.read_table(sheet).records

    def get_headers(self, sheet: str) -> tuple[str, ...]:
        return tuple(self._check(sheet)[0])

    def find_row_numbers(self, sheet: str, identifier: str) -> list[int]:
        return [r.row_number for r in self._table(sheet).records if r.identifier() == identifier.strip()]

    def resolve_row(self, sheet: str, identifier: int | str) -> int:
        if isinstance(identifier, int):
            return identifier
        matches = self.find_row_numbers(sheet, identifier)
        if not matches:
            raise RowNotFoundError(identifier)
        if len(matches) > 1:
            raise DuplicateRowError(identifier)
        return matches[0]

    def get_row(self, sheet: str, identifier: int | str, render: str = "FORMULA") -> list[str]:
        row_number = self.resolve_row(sheet, identifier)
        row = list(self._check(sheet)[row_number - 1])
        if render == "FORMULA":
            for (name, n, col), formula in self.formulas.items():
                if name == sheet and n == row_number and col < len(row):
                    row[col] = formula
        return row

    def count(self, sheet: str) -> int:
        return sum(1 for r in self._table(sheet).records if r.identifier() is not None)

    def append(self, sheet: str, values: dict[str, Any], *, id_prefix: str = "ROW") -> str:
        rows = self._check(sheet)
        headers = rows[0]
        id_index = SheetsGateway._id_index(headers)
        self._seq += 1
        identifier = f"{id_prefix}-{self._seq:04d}"
        row = []
        for index, header in enumerate(headers):
            if index == id_index:
                row.append(identifier)
            else:
                row.append(str(values.get(header, "")))
        rows.append(row)
        self.writes.append(("append", identifier, row))
        return identifier

    def update(self, sheet: str, identifier: int | str, ordered_values: list[Any]) -> int:
        row_number = self.resolve_row(sheet, identifier)
        rows = self._check(sheet)
        current = rows[row_number - 1]
        new = []
        for col, value in enumerate(ordered_values):
            text = "" if value is None else str(value)
            if text.startswith("="):
                # 数式はそのまま保持し表示値は据え置き
                self.formulas[(sheet, row_number, col)] = text
                new.append(current[col] if col < len(current) else "")
            else:
                new.append(text)
        rows[row_number - 1] = new
        self.writes.append(("update", str(identifier), new))
        return row_number

    def clear(self, sheet: str, identifier: int | str) -> int:
        row_number = self.resolve_row(sheet, identifier)
        rows = self._check(sheet)
        rows[row_number - 1] = [""] * len(rows[0])
        return row_number


class FakeStore:
    """In-memory stand-in for RecordStore, applying the same type guard."""

    def __init__(self, entity: EntityDefinition) -> None:
        self.entity = entity
        self.records: dict[int, StoreRecord] = {}
        self.fail_create_for: set[str] = set()
        self.broken = False
        self._next_id = 1

    def _guard(self, values: dict[str, Any]) -> dict[str, Any]:
        fmap = self.entity.field_map
        return {f: guard_value(fmap.spec(f).kind, v)[1] for f, v in values.items() if f in fmap}

    def _alive(self) -> None:
        if self.broken:
            raise StoreError("connection lost")

    def add(self, values: dict[str, Any], *, sheet_id: str | None = None, synced: bool = False) -> int:
        return self.create(values, sheet_id=sheet_id, synced=synced)

    def get(self, record_id: int) -> StoreRecord | None:
        self._alive()
        return self.records.get(record_id)

    def find_all(self) -> list[StoreRecord]:
        self._alive()
        return [self.records[k] for k in sorted(self.records)]

    def find_by_sheet_id(self, sheet_id: str) -> StoreRecord | None:
        self._alive()
        return next((r for r in self.records.values() if r.sheet_id == sheet_id), None)

    def find_unsynced(self, correlation: str | None = None) -> list[StoreRecord]:
        self._alive()
        field = self.entity.correlation.field
        return [
            r for r in self.find_all()
            if not r.synced and (correlation is None or r.values.get(field) == correlation)
        ]

    def count(self) -> int:
        self._alive()
        return len(self.records)

    def count_by_synced(self) -> tuple[int, int]:
        synced = sum(1 for r in self.records.values() if r.synced)
        return synced, len(self.records) - synced

    def create(self, values: dict[str, Any], *, sheet_id: str | None = None, synced: bool = False) -> int:
        self._alive()
        if sheet_id in self.fail_create_for:
            raise StoreError(f"insert failed for {sheet_id}")
        if sheet_id is not None and self.find_by_sheet_id(sheet_id) is not None:
            raise DuplicateSheetIdError(f"sheet_id {sheet_id!r} already linked")
        record_id = self._next_id
        self._next_id += 1
        guarded = {f: None for f in self.entity.field_map.fields}
        guarded.update(self._guard(values))
        self.records[record_id] = StoreRecord(record_id, sheet_id, synced, guarded)
        return record_id

    def update(self, record_id: int, values: dict[str, Any], *, synced: bool | None = None) -> None:
        self._alive()
        record = self.records[record_id]
        merged = {**record.values, **self._guard(values)}
        self.records[record_id] = replace(
            record, values=merged, synced=record.synced if synced is None else synced
        )

    def update_sync_status(self, record_id: int, synced: bool, sheet_id: str | None = None) -> None:
        self._alive()
        record = self.records[record_id]
        if sheet_id is not None:
            owner = self.find_by_sheet_id(sheet_id)
            if owner is not None and owner.id != record_id:
                raise DuplicateSheetIdError(f"sheet_id {sheet_id!r} already linked")
        self.records[record_id] = replace(
            record, synced=synced, sheet_id=record.sheet_id if sheet_id is None else sheet_id
        )

    def delete(self, record_id: int) -> bool:
        return self.records.pop(record_id, None) is not None


class ImmediateTimer:
    """threading.Timer replacement that runs on start() in the calling thread."""

    def __init__(self, interval: float, function, args=()) -> None:
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.cancelled = False

    def start(self) -> None:
        if not self.cancelled:
            self.function(*self.args)

    def cancel(self) -> None:
        self.cancelled = True

    def join(self, timeout=None) -> None:
        return None


@pytest.fixture()
def fake_sheets() -> FakeSheets:
    return FakeSheets()


@pytest.fixture()
def immediate_readback() -> ReadbackScheduler:
    return ReadbackScheduler(delay=0, timer_factory=ImmediateTimer)


@pytest.fixture()
def make_reconciler(fake_sheets: FakeSheets, immediate_readback: ReadbackScheduler, tmp_path: Path):
    """Factory: (entity) -> (reconciler, store) wired to the shared fake sheet."""

    def _make(entity: EntityDefinition, store: FakeStore | None = None):
        store = store or FakeStore(entity)
        reconciler = Reconciler(
            entity,
            fake_sheets,
            store,
            readback=immediate_readback,
            error_log=ErrorLogBuffer(tmp_path / "logs"),
        )
        return reconciler, store

    return _make
