"""Domain models for the sheet <-> database migration service.

This package contains the value types shared by the gateways, the
reconciliation engine and the HTTP / CLI surfaces.
"""

from .config_models import (
    DatabaseConfig,
    EntitySettings,
    MigrationConfig,
    ServerConfig,
    SpreadsheetConfig,
)
from .error_record import ErrorRecord
from .records import SheetRecord, SheetTable, StoreRecord
from .results import (
    ExportResult,
    Failed,
    FullMigrationResult,
    Imported,
    ImportResult,
    Skipped,
    StatusReport,
    Synced,
    Updated,
)
from .sheet_id import DurableSheetId, PendingSheetId, parse_sheet_id

__all__ = [
    # Configuration models
    "DatabaseConfig",
    "EntitySettings",
    "MigrationConfig",
    "ServerConfig",
    "SpreadsheetConfig",
    # Records
    "SheetRecord",
    "SheetTable",
    "StoreRecord",
    "DurableSheetId",
    "PendingSheetId",
    "parse_sheet_id",
    # Outcomes / results
    "Imported",
    "Updated",
    "Skipped",
    "Failed",
    "Synced",
    "ImportResult",
    "ExportResult",
    "FullMigrationResult",
    "StatusReport",
    "ErrorRecord",
]
