from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any

from ..db.record_store import StoreError
from ..logging.error_log import ErrorLogBuffer
from ..mapping.entities import EntityDefinition
from ..models.error_record import ErrorRecord, error_type_for
from ..models.records import SheetRecord, SheetTable, StoreRecord, is_blank
from ..models.results import (
    ColumnInfo,
    ColumnReport,
    Comparison,
    ExportResult,
    Failed,
    FieldDifference,
    FullMigrationResult,
    Imported,
    ImportResult,
    Outcome,
    Skipped,
    StatusReport,
    Synced,
    Updated,
)
from ..models.sheet_id import DurableSheetId, parse_sheet_id
from ..sheets.gateway import DuplicateRowError, SheetsError
from .progress import ProgressTracker
from .readback import ReadbackScheduler

if TYPE_CHECKING:
    from ..db.record_store import RecordStore
    from ..sheets.gateway import SheetsGateway

"""Reconciliation engine.

One Reconciler drives one entity between its sheet and its table:

- status: count comparison (approximation, equal counts do not prove equal content)
- import: sheet -> store, row by row, per-row failure isolation
- export: unsynced store records -> sheet (update / natural-key match / append)
- full migration: status short-circuit, else import then export
- compare / columns: diagnostics

Runs for the same entity are serialized by a per-entity lock; rows inside a
batch are processed strictly in order. Setup failures (the initial sheet or
store read) raise ReconciliationError; anything failing for a single row
becomes a Failed outcome and the batch continues.
"""

__all__ = [
    "ReconciliationError",
    "AmbiguousMatchError",
    "VOLATILE_FIELDS",
    "Reconciler",
    "entity_lock",
]

logger = logging.getLogger(__name__)

VOLATILE_FIELDS = frozenset({"created_at", "synced"})

_LOCKS: dict[str, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


class ReconciliationError(Exception):
    """Setup failure: the run could not start."""


class AmbiguousMatchError(ReconciliationError):
    pass


def entity_lock(slug: str) -> threading.RLock:
    """Process-wide lock serializing reconciliation runs for one entity."""
    with _LOCKS_GUARD:
        lock = _LOCKS.get(slug)
        if lock is None:
            lock = _LOCKS[slug] = threading.RLock()
        return lock


def _same_value(left: Any, right: Any) -> bool:
    if isinstance(left, float) or isinstance(right, float):
        try:
            return abs(float(left) - float(right)) < 1e-9
        except (TypeError, ValueError):
            return False
    return left == right


class Reconciler:
    def __init__(
        self,
        entity: EntityDefinition,
        sheets: SheetsGateway,
        store: RecordStore,
        *,
        readback: ReadbackScheduler | None = None,
        error_log: ErrorLogBuffer | None = None,
    ) -> None:
        self.entity = entity
        self._sheets = sheets
        self._store = store
        self._readback = readback or ReadbackScheduler()
        self._error_log = error_log
        self._lock = entity_lock(entity.slug)

    @property
    def sheet_name(self) -> str:
        return self.entity.sheet_name

    # ------------------------------------------------------------------ helpers
    def _failure(self, identifier: str, exc: Exception, operation: str) -> Failed:
        error_type = error_type_for(exc)
        logger.error(f"{self.entity.slug}: {operation} {identifier} failed: {exc}")
        if self._error_log is not None:
            self._error_log.append(
                ErrorRecord.create(
                    entity=self.entity.slug,
                    sheet=self.sheet_name,
                    identifier=identifier,
                    operation=operation,
                    error_type=error_type,
                    message=str(exc),
                )
            )
        return Failed(identifier, str(exc), error_type)

    def _flush_errors(self) -> None:
        if self._error_log is None:
            return
        try:
            path = self._error_log.flush()
        except OSError as e:
            logger.warning(f"{self.entity.slug}: could not write error log: {e}")
            return
        if path is not None:
            logger.info(f"{self.entity.slug}: error details written to {path}")

    def _read_table(self) -> SheetTable:
        try:
            return self._sheets.read_table(self.sheet_name)
        except SheetsError as e:
            raise ReconciliationError(f"Failed to read sheet {self.sheet_name!r}: {e}") from e

    def _changed_fields(self, current: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
        fmap = self.entity.field_map
        return {
            field: value
            for field, value in incoming.items()
            if not _same_value(fmap.normalize(field, current.get(field)), fmap.normalize(field, value))
        }

    # ------------------------------------------------------------------ status
    def status(self) -> StatusReport:
        with self._lock:
            try:
                database_total = self._store.count()
                synced, unsynced = self._store.count_by_synced()
            except StoreError as e:
                raise ReconciliationError(f"Failed to count {self.entity.table}: {e}") from e
            try:
                sheet_total = self._sheets.count(self.sheet_name)
            except SheetsError as e:
                raise ReconciliationError(f"Failed to count sheet {self.sheet_name!r}: {e}") from e
        report = StatusReport(
            database_total=database_total,
            sheet_total=sheet_total,
            database_synced=synced,
            database_unsynced=unsynced,
        )
        logger.info(
            f"{self.entity.slug}: status database={database_total} sheets={sheet_total} -> {report.sync_status}"
        )
        return report

    # ------------------------------------------------------------------ import
    def import_from_sheets(self, correlation: str | None = None) -> ImportResult:
        """Import sheet rows into the store.

        Args:
            correlation: Only rows whose correlation column equals this value
                are considered; the others are skipped with a mismatch reason.
        """
        with self._lock:
            started = time.monotonic()
            table = self._read_table()
            result = ImportResult(entity=self.entity.slug)
            seen: set[str] = set()
            logger.info(f"{self.entity.slug}: importing {len(table.records)} rows from {self.sheet_name}")
            with ProgressTracker(len(table.records), description=f"import {self.entity.slug}") as progress:
                for row in table.records:
                    outcome = self._import_row(row, correlation, seen)
                    if isinstance(outcome, Skipped):
                        logger.debug(f"{self.entity.slug}: skip {outcome.identifier}: {outcome.reason}")
                    result.add(outcome)
                    progress.advance()
            result.elapsed_seconds = time.monotonic() - started
            self._flush_errors()
        logger.info(
            f"{self.entity.slug}: import done imported={result.imported} updated={result.updated} "
            f"skipped={result.skipped} errors={result.errors}"
        )
        return result

    def _import_row(self, row: SheetRecord, correlation: str | None, seen: set[str]) -> Outcome:
        if row.is_empty():
            return Skipped(f"row {row.row_number}", "Completely empty record")
        identifier = row.identifier()
        if identifier is None:
            return Skipped(f"row {row.row_number}", "Empty ID")
        if identifier in seen:
            return Skipped(identifier, f"Duplicate ID in sheet (row {row.row_number})")
        seen.add(identifier)

        try:
            values = self.entity.field_map.sheet_to_store(row.as_dict())
            if correlation is not None:
                key = self.entity.correlation
                actual = values.get(key.field)
                if is_blank(actual) or str(actual).strip() != correlation.strip():
                    return Skipped(
                        identifier,
                        f"{key.label} mismatch: expected {correlation}, got {actual or '(blank)'}",
                    )

            existing = self._store.find_by_sheet_id(identifier)
            if existing is not None:
                if not self.entity.update_on_import:
                    return Skipped(identifier, "Already exists in database")
                changes = self._changed_fields(existing.values, values)
                if not changes and existing.synced:
                    return Skipped(identifier, "Already up to date")
                self._store.update(existing.id, changes, synced=True)
                return Updated(identifier)

            self._store.create(values, sheet_id=identifier, synced=True)
            return Imported(identifier)
        except Exception as e:
            return self._failure(identifier, e, "import")

    # ------------------------------------------------------------------ export
    def sync_to_sheets(self, correlation: str | None = None) -> ExportResult:
        """Push unsynced store records to the sheet."""
        with self._lock:
            started = time.monotonic()
            table = self._read_table()
            try:
                records = self._store.find_unsynced(correlation)
            except StoreError as e:
                raise ReconciliationError(f"Failed to load unsynced {self.entity.table}: {e}") from e
            result = ExportResult(entity=self.entity.slug)
            claimed: set[str] = set()
            logger.info(f"{self.entity.slug}: syncing {len(records)} unsynced records to {self.sheet_name}")
            with ProgressTracker(len(records), description=f"sync {self.entity.slug}") as progress:
                for record in records:
                    result.add(self._export_one(record, table, claimed))
                    progress.advance()
            result.elapsed_seconds = time.monotonic() - started
            self._flush_errors()
        logger.info(f"{self.entity.slug}: sync done synced={result.synced} errors={result.errors}")
        return result

    def sync_record(self, record_id: int) -> ExportResult:
        """Export a single store record by internal id (regardless of ``synced``)."""
        with self._lock:
            started = time.monotonic()
            try:
                record = self._store.get(record_id)
            except StoreError as e:
                raise ReconciliationError(f"Failed to load {self.entity.table} {record_id}: {e}") from e
            if record is None:
                raise ReconciliationError(f"{self.entity.name} record {record_id} not found")
            table = self._read_table()
            result = ExportResult(entity=self.entity.slug)
            result.add(self._export_one(record, table, set()))
            result.elapsed_seconds = time.monotonic() - started
            self._flush_errors()
        return result

    def _export_one(self, record: StoreRecord, table: SheetTable, claimed: set[str]) -> Outcome:
        try:
            return self._export_record(record, table, claimed)
        except Exception as e:
            return self._failure(str(record.id), e, "export")

    def _export_record(self, record: StoreRecord, table: SheetTable, claimed: set[str]) -> Synced:
        entity = self.entity
        fmap = entity.field_map
        sheet_owned = (*entity.computed_fields, *entity.readback_fields)
        cells = fmap.store_to_sheet(record.values, headers=table.headers, exclude=sheet_owned)
        # 数式・読戻し列は store に値がある場合のみ、数式でないセルへ書く
        computed = fmap.store_to_sheet(
            {f: v for f, v in record.values.items() if f in sheet_owned and not is_blank(v)},
            headers=table.headers,
        )

        target: str | None = None
        action = ""
        sheet_id = parse_sheet_id(record.sheet_id, entity.pending_prefixes)
        if isinstance(sheet_id, DurableSheetId):
            # 前回同期後にシート側で行が消えている可能性があるため毎回再確認
            rows = self._sheets.find_row_numbers(self.sheet_name, sheet_id.value)
            if len(rows) > 1:
                raise DuplicateRowError(
                    f"ID {sheet_id.value!r} appears on rows {rows} of sheet {self.sheet_name!r}"
                )
            if rows:
                self._write_row(rows[0], table.headers, cells, computed)
                target, action = sheet_id.value, "updated"

        if target is None:
            match = self._match_natural_key(record, table, claimed)
            if match is not None:
                matched_row, matched_id = match
                self._write_row(matched_row.row_number, table.headers, cells, computed)
                target, action = matched_id, "matched"

        if target is None:
            target = self._sheets.append(self.sheet_name, {**computed, **cells}, id_prefix=entity.id_prefix)
            action = "appended"

        claimed.add(target)
        self._store.update_sync_status(record.id, True, sheet_id=target)
        logger.debug(f"{entity.slug}: record {record.id} -> {target} ({action})")
        if entity.readback_fields:
            self._readback.schedule(self.read_back, record.id, target)
        return Synced(str(record.id), target, action)

    def _write_row(
        self,
        row_number: int,
        headers: tuple[str, ...],
        cells: dict[str, str],
        computed: dict[str, str] | None = None,
    ) -> None:
        """Overwrite mapped cells of one row, keeping every other cell (formulas included).

        ``computed`` cells are written only where the sheet holds no formula.
        """
        computed = computed or {}
        current = self._sheets.get_row(self.sheet_name, row_number, render="FORMULA")
        ordered = []
        for index, header in enumerate(headers):
            if header in cells:
                ordered.append(cells[header])
                continue
            existing = current[index] if index < len(current) else ""
            if header in computed and not str(existing).startswith("="):
                ordered.append(computed[header])
            else:
                ordered.append(existing)
        self._sheets.update(self.sheet_name, row_number, ordered)

    def _match_natural_key(
        self, record: StoreRecord, table: SheetTable, claimed: set[str]
    ) -> tuple[SheetRecord, str] | None:
        key_fields = self.entity.natural_key
        if not key_fields:
            return None
        fmap = self.entity.field_map
        wanted = {f: fmap.normalize(f, record.values.get(f)) for f in key_fields}
        if any(is_blank(v) for v in wanted.values()):
            return None

        candidates = []
        for row in table.records:
            row_id = row.identifier()
            if row_id is None or row_id in claimed:
                continue
            values = fmap.sheet_to_store(row.as_dict(), fields=key_fields)
            if all(_same_value(values.get(f), wanted[f]) for f in key_fields):
                owner = self._store.find_by_sheet_id(row_id)
                if owner is not None and owner.id != record.id:
                    continue  # 他レコードに紐付済み
                candidates.append((row, row_id))

        if len(candidates) > 1:
            ids = [row_id for _, row_id in candidates]
            raise AmbiguousMatchError(
                f"{len(candidates)} sheet rows match natural key {wanted}: {ids}"
            )
        return candidates[0] if candidates else None

    # ------------------------------------------------------------------ read-back
    def read_back(self, record_id: int, sheet_id: str) -> dict[str, Any]:
        """Copy sheet-computed columns of ``sheet_id`` into store record ``record_id``."""
        fields = self.entity.readback_fields
        if not fields:
            return {}
        with self._lock:
            try:
                row_number = self._sheets.find_row_numbers(self.sheet_name, sheet_id)
                if not row_number:
                    logger.warning(f"{self.entity.slug}: read-back row {sheet_id} not found")
                    return {}
                table = self._sheets.read_table(self.sheet_name)
                row = next((r for r in table.records if r.row_number == row_number[0]), None)
                if row is None:
                    logger.warning(f"{self.entity.slug}: read-back row {sheet_id} vanished")
                    return {}
                values = {
                    field: value
                    for field, value in self.entity.field_map.sheet_to_store(row.as_dict(), fields=fields).items()
                    if not is_blank(value)
                }
                # 空セルで store の既存値を消さない
                if values:
                    self._store.update(record_id, values)
            except Exception as e:
                self._failure(sheet_id, e, "readback")
                self._flush_errors()
                return {}
        logger.info(f"{self.entity.slug}: read-back {sheet_id} -> record {record_id} {sorted(values)}")
        return values

    # ------------------------------------------------------------------ full migration
    def full_migration(self, correlation: str | None = None) -> FullMigrationResult:
        with self._lock:
            report = self.status()
            if report.in_sync:
                logger.info(f"{self.entity.slug}: already fully synced, nothing to do")
                return FullMigrationResult(entity=self.entity.slug)
            imported = self.import_from_sheets(correlation)
            exported = self.sync_to_sheets(correlation)
        return FullMigrationResult(entity=self.entity.slug, import_result=imported, export_result=exported)

    # ------------------------------------------------------------------ diagnostics
    def compare(self, sheet_id: str) -> Comparison:
        table = self._read_table()
        matches = table.find(sheet_id)
        if not matches:
            return Comparison(sheet_id, sheets=None, database=None, differences=None)
        fmap = self.entity.field_map
        sheet_values = fmap.sheet_to_store(matches[0].as_dict())
        try:
            with self._lock:
                record = self._store.find_by_sheet_id(sheet_id)
        except StoreError as e:
            raise ReconciliationError(f"Failed to load {self.entity.table} {sheet_id}: {e}") from e
        if record is None:
            return Comparison(sheet_id, sheets=sheet_values, database=None, differences=None)

        differences = []
        for spec in fmap:
            if spec.field in VOLATILE_FIELDS:
                continue
            sheet_value = sheet_values.get(spec.field)
            store_value = record.values.get(spec.field)
            if not _same_value(fmap.normalize(spec.field, sheet_value), fmap.normalize(spec.field, store_value)):
                differences.append(FieldDifference(spec.field, sheet_value, store_value))
        database = {"id": record.id, "sheetId": record.sheet_id, "synced": record.synced, **record.values}
        return Comparison(sheet_id, sheets=sheet_values, database=database, differences=differences)

    def columns(self) -> ColumnReport:
        table = self._read_table()
        infos = []
        for index, header in enumerate(table.headers):
            sample = next(
                (r.values[index] for r in table.records if not is_blank(r.values[index])),
                "(empty)",
            )
            infos.append(ColumnInfo(index=index, name=header, sample_value=sample))
        return ColumnReport(sheet=self.sheet_name, total_records=len(table.records), columns=infos)
