from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

"""Per-row outcomes and aggregated run results.

Reconciliation never uses exceptions to report partial failure. Every row (or
store record) yields exactly one outcome value; the run result is an ordered
list of those outcomes plus derived counters. ``to_payload()`` renders the
response body shape consumed by HTTP callers and the migration runner.
"""

__all__ = [
    "Imported",
    "Updated",
    "Skipped",
    "Failed",
    "Synced",
    "Outcome",
    "RunTotals",
    "ImportResult",
    "ExportResult",
    "FullMigrationResult",
    "StatusReport",
    "FieldDifference",
    "Comparison",
    "ColumnInfo",
    "ColumnReport",
    "SYNCED",
    "OUT_OF_SYNC",
]

SYNCED = "Synced"
OUT_OF_SYNC = "Out of sync"


@dataclass(frozen=True)
class Imported:
    identifier: str


@dataclass(frozen=True)
class Updated:
    identifier: str


@dataclass(frozen=True)
class Skipped:
    identifier: str
    reason: str


@dataclass(frozen=True)
class Failed:
    identifier: str
    error: str
    error_type: str = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class Synced:
    """Export outcome: the store record reached sheet row ``sheet_id``.

    ``action`` is one of ``updated`` (existing durable row), ``matched``
    (natural-key match, sheet id backfilled) or ``appended``.
    """
    identifier: str
    sheet_id: str
    action: str


Outcome = Imported | Updated | Skipped | Failed | Synced


@dataclass(frozen=True)
class RunTotals:
    """Flat counters used for the SUMMARY line and CLI exit code."""
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    synced: int = 0
    errors: int = 0
    elapsed_seconds: float = 0.0

    def __add__(self, other: RunTotals) -> RunTotals:
        return RunTotals(
            imported=self.imported + other.imported,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            synced=self.synced + other.synced,
            errors=self.errors + other.errors,
            elapsed_seconds=self.elapsed_seconds + other.elapsed_seconds,
        )


def _count(outcomes: list[Outcome], kind: type) -> int:
    return sum(1 for o in outcomes if isinstance(o, kind))


@dataclass
class ImportResult:
    entity: str
    outcomes: list[Outcome] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def add(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    @property
    def imported(self) -> int:
        return _count(self.outcomes, Imported)

    @property
    def updated(self) -> int:
        return _count(self.outcomes, Updated)

    @property
    def skipped(self) -> int:
        return _count(self.outcomes, Skipped)

    @property
    def errors(self) -> int:
        return _count(self.outcomes, Failed)

    def totals(self) -> RunTotals:
        return RunTotals(
            imported=self.imported,
            updated=self.updated,
            skipped=self.skipped,
            errors=self.errors,
            elapsed_seconds=self.elapsed_seconds,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "message": (
                f"Import completed: {self.imported} imported, {self.updated} updated, "
                f"{self.skipped} skipped, {self.errors} errors"
            ),
            "imported": self.imported,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }
        failed = [o for o in self.outcomes if isinstance(o, Failed)]
        if failed:
            payload["errorDetails"] = [{"sheetId": o.identifier, "error": o.error} for o in failed]
        skipped = [o for o in self.outcomes if isinstance(o, Skipped)]
        if skipped:
            payload["skippedDetails"] = [
                {"sheetId": o.identifier, "reason": o.reason} for o in skipped
            ]
        return payload


@dataclass
class ExportResult:
    entity: str
    outcomes: list[Outcome] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def add(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    @property
    def synced(self) -> int:
        return _count(self.outcomes, Synced)

    @property
    def errors(self) -> int:
        return _count(self.outcomes, Failed)

    def totals(self) -> RunTotals:
        return RunTotals(synced=self.synced, errors=self.errors, elapsed_seconds=self.elapsed_seconds)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "message": f"Sync completed: {self.synced} synced, {self.errors} errors",
            "synced": self.synced,
            "errors": self.errors,
        }
        failed = [o for o in self.outcomes if isinstance(o, Failed)]
        if failed:
            payload["errorDetails"] = [{"id": o.identifier, "error": o.error} for o in failed]
        results = [o for o in self.outcomes if isinstance(o, Synced)]
        if results:
            payload["results"] = [
                {"id": o.identifier, "sheetId": o.sheet_id, "action": o.action} for o in results
            ]
        return payload


@dataclass
class FullMigrationResult:
    entity: str
    import_result: ImportResult | None = None
    export_result: ExportResult | None = None

    @property
    def short_circuited(self) -> bool:
        return self.import_result is None and self.export_result is None

    def totals(self) -> RunTotals:
        totals = RunTotals()
        if self.import_result is not None:
            totals = totals + self.import_result.totals()
        if self.export_result is not None:
            totals = totals + self.export_result.totals()
        return totals

    def to_payload(self) -> dict[str, Any]:
        if self.short_circuited:
            return {
                "success": True,
                "message": "Already fully synced",
                "imported": 0,
                "updated": 0,
                "skipped": 0,
                "errors": 0,
            }
        totals = self.totals()
        payload: dict[str, Any] = {
            "success": True,
            "message": "Full migration completed",
            "imported": totals.imported,
            "updated": totals.updated,
            "skipped": totals.skipped,
            "synced": totals.synced,
            "errors": totals.errors,
        }
        if self.import_result is not None:
            payload["import"] = self.import_result.to_payload()
        if self.export_result is not None:
            payload["sync"] = self.export_result.to_payload()
        return payload


@dataclass(frozen=True)
class StatusReport:
    database_total: int
    sheet_total: int
    database_synced: int = 0
    database_unsynced: int = 0

    @property
    def sync_status(self) -> str:
        # 件数一致のみで判定する近似 (内容差分は compare で確認)
        return SYNCED if self.database_total == self.sheet_total else OUT_OF_SYNC

    @property
    def in_sync(self) -> bool:
        return self.sync_status == SYNCED

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "database": {
                "total": self.database_total,
                "synced": self.database_synced,
                "unsynced": self.database_unsynced,
            },
            "sheets": {"total": self.sheet_total},
            "syncStatus": self.sync_status,
        }


@dataclass(frozen=True)
class FieldDifference:
    field: str
    sheet_value: Any
    store_value: Any

    def to_payload(self) -> dict[str, Any]:
        return {"field": self.field, "sheetValue": self.sheet_value, "storeValue": self.store_value}


@dataclass(frozen=True)
class Comparison:
    sheet_id: str
    sheets: dict[str, Any] | None
    database: dict[str, Any] | None
    differences: list[FieldDifference] | None

    def to_payload(self) -> dict[str, Any]:
        if self.sheets is None:
            return {"success": False, "message": f"Record {self.sheet_id} not found in sheets"}
        return {
            "success": True,
            "comparison": {
                "sheets": self.sheets,
                "database": self.database,
                "differences": (
                    None
                    if self.differences is None
                    else [d.to_payload() for d in self.differences]
                ),
            },
        }


@dataclass(frozen=True)
class ColumnInfo:
    index: int
    name: str
    sample_value: str


@dataclass(frozen=True)
class ColumnReport:
    sheet: str
    total_records: int
    columns: list[ColumnInfo]

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": f"Found {len(self.columns)} columns in {self.sheet}",
            "totalColumns": len(self.columns),
            "totalRecords": self.total_records,
            "columns": [
                {"index": c.index, "name": c.name, "sampleValue": c.sample_value}
                for c in self.columns
            ],
        }
