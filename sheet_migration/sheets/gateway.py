from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from sheet_migration.models.config_models import SpreadsheetConfig
from sheet_migration.models.records import ID_ALIASES, SheetRecord, SheetTable

"""Google Sheets gateway.

Thin, synchronous wrapper around the Sheets v4 ``spreadsheets.values`` API:

- ``read_table`` / ``get_all`` always re-fetch live data
- the header row used by the ID-column lookup helper is cached with a TTL
- rows are identified either by physical 1-based row number or by logical ID
  (linear scan of the ID column, duplicates are detected, never guessed)
- ``clear`` blanks a row instead of deleting it so later row numbers are stable

Transient API failures (429 / 5xx) are retried by the client library
(``execute(num_retries=...)``); everything else is mapped to SheetsError.
"""

__all__ = [
    "SCOPES",
    "DATA_RANGE",
    "SheetsError",
    "SheetsAccessError",
    "RowNotFoundError",
    "DuplicateRowError",
    "SheetsGateway",
    "build_service",
    "column_letter",
    "generate_sheet_id",
]

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
DATA_RANGE = "A:ZZ"
CREATED_AT_COLUMN = "Created At"

logger = logging.getLogger(__name__)


class SheetsError(Exception):
    pass


class SheetsAccessError(SheetsError):
    """Spreadsheet / sheet missing or not shared with the service account."""


class RowNotFoundError(SheetsError):
    pass


class DuplicateRowError(SheetsError):
    pass


def build_service(credentials_file: str | Path) -> Any:
    """Create a Sheets v4 service from a service-account JSON key file."""
    path = Path(credentials_file)
    if not path.exists():
        raise SheetsError(f"credentials file not found: {path}")
    try:
        credentials = service_account.Credentials.from_service_account_file(str(path), scopes=SCOPES)
    except (ValueError, GoogleAuthError) as e:
        raise SheetsError(f"invalid service account credentials {path}: {e}") from e
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


def column_letter(index: int) -> str:
    """0-based column index -> A1 column letters.

    >>> column_letter(0), column_letter(25), column_letter(26), column_letter(701)
    ('A', 'Z', 'AA', 'ZZ')
    """
    if index < 0:
        raise ValueError(f"column index must be >= 0: {index}")
    letters = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def generate_sheet_id(prefix: str) -> str:
    """``<prefix>-<epoch ms>-<4 hex>``, e.g. ``L-1717171717171-9f3a``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:4]}"


def _quote_sheet(sheet: str) -> str:
    return "'" + sheet.replace("'", "''") + "'"


class SheetsGateway:
    """Read/write access to named sheets of one spreadsheet."""

    def __init__(
        self,
        service: Any,
        spreadsheet_id: str,
        *,
        header_ttl: float = 3600.0,
        max_retries: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._service = service
        self._spreadsheet_id = spreadsheet_id
        self._header_ttl = header_ttl
        self._max_retries = max_retries
        self._clock = clock
        self._header_cache: dict[str, tuple[float, tuple[str, ...]]] = {}
        # googleapiclient / httplib2 はスレッドセーフでないため API 呼び出しを直列化
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, cfg: SpreadsheetConfig) -> SheetsGateway:
        if not cfg.credentials_file:
            raise SheetsError(
                "no service account credentials: set spreadsheet.credentials_file "
                "or GOOGLE_APPLICATION_CREDENTIALS"
            )
        return cls(
            build_service(cfg.credentials_file),
            cfg.spreadsheet_id,
            header_ttl=cfg.header_cache_ttl,
            max_retries=cfg.max_retries,
        )

    # ------------------------------------------------------------------ low level
    def _values(self) -> Any:
        return self._service.spreadsheets().values()

    def _execute(self, request: Any, action: str) -> dict[str, Any]:
        try:
            with self._lock:
                return request.execute(num_retries=self._max_retries) or {}
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            if status in (403, 404):
                raise SheetsAccessError(
                    f"{action}: spreadsheet or sheet not accessible (HTTP {status})"
                ) from e
            raise SheetsError(f"{action} failed (HTTP {status}): {e}") from e
        except (OSError, GoogleAuthError, httplib2.HttpLib2Error) as e:
            raise SheetsError(f"{action} failed: {e}") from e

    def _range(self, sheet: str, a1: str) -> str:
        return f"{_quote_sheet(sheet)}!{a1}"

    def _read(self, sheet: str, a1: str, render: str = "FORMATTED_VALUE") -> list[list[Any]]:
        request = self._values().get(
            spreadsheetId=self._spreadsheet_id,
            range=self._range(sheet, a1),
            valueRenderOption=render,
        )
        response = self._execute(request, f"read {sheet}!{a1}")
        return response.get("values", [])

    # ------------------------------------------------------------------ headers
    def _fetch_headers(self, sheet: str) -> tuple[str, ...]:
        rows = self._read(sheet, "1:1")
        return tuple(str(h) for h in rows[0]) if rows else ()

    def get_headers(self, sheet: str) -> tuple[str, ...]:
        """Header row with TTL cache (ID-column lookup only)."""
        now = self._clock()
        cached = self._header_cache.get(sheet)
        if cached is not None and now - cached[0] < self._header_ttl:
            return cached[1]
        headers = self._fetch_headers(sheet)
        self._header_cache[sheet] = (now, headers)
        return headers

    def invalidate_headers(self, sheet: str | None = None) -> None:
        if sheet is None:
            self._header_cache.clear()
        else:
            self._header_cache.pop(sheet, None)

    @staticmethod
    def _id_index(headers: Sequence[str]) -> int | None:
        stripped = [h.strip() for h in headers]
        for alias in ID_ALIASES:
            if alias in stripped:
                return stripped.index(alias)
        return None

    def _id_column(self, sheet: str) -> str:
        index = self._id_index(self.get_headers(sheet))
        if index is None:
            raise SheetsError(f"sheet {sheet!r} has no ID column")
        return column_letter(index)

    # ------------------------------------------------------------------ reads
    def read_table(self, sheet: str) -> SheetTable:
        """Live read of the whole sheet (row 1 = header)."""
        rows = self._read(sheet, DATA_RANGE)
        if not rows:
            return SheetTable(headers=())
        headers = tuple(str(h) for h in rows[0])
        records = [
            SheetRecord.from_row(headers, row, row_number)
            for row_number, row in enumerate(rows[1:], start=2)
        ]
        return SheetTable(headers=headers, records=records)

    def get_all(self, sheet: str) -> list[SheetRecord]:
        return self.read_table(sheet).records

    def find_row_numbers(self, sheet: str, identifier: str) -> list[int]:
        """Fresh scan of the ID column; returns every matching row number."""
        letter = self._id_column(sheet)
        rows = self._read(sheet, f"{letter}:{letter}")
        wanted = identifier.strip()
        return [
            row_number
            for row_number, row in enumerate(rows, start=1)
            if row_number > 1 and row and str(row[0]).strip() == wanted
        ]

    def resolve_row(self, sheet: str, identifier: int | str) -> int:
        if isinstance(identifier, int):
            if identifier < 2:
                raise SheetsError(f"row {identifier} is not a data row")
            return identifier
        matches = self.find_row_numbers(sheet, identifier)
        if not matches:
            raise RowNotFoundError(f"ID {identifier!r} not found in sheet {sheet!r}")
        if len(matches) > 1:
            raise DuplicateRowError(f"ID {identifier!r} appears on rows {matches} of sheet {sheet!r}")
        return matches[0]

    def get_row(self, sheet: str, identifier: int | str, render: str = "FORMULA") -> list[str]:
        """One row; FORMULA rendering by default so formulas can be written back intact."""
        row_number = self.resolve_row(sheet, identifier)
        rows = self._read(sheet, f"A{row_number}:ZZ{row_number}", render=render)
        return [str(v) for v in rows[0]] if rows else []

    def count(self, sheet: str) -> int:
        """Number of data rows with a non-blank ID."""
        letter = self._id_column(sheet)
        rows = self._read(sheet, f"{letter}:{letter}")
        return sum(1 for row in rows[1:] if row and str(row[0]).strip())

    # ------------------------------------------------------------------ writes
    def append(self, sheet: str, values: Mapping[str, Any], *, id_prefix: str = "ROW") -> str:
        """Append one row ordered by the live header and return its ID.

        Keys not present in the header are ignored. A blank ID is generated
        from ``id_prefix``; a blank ``Created At`` is stamped with UTC now.
        """
        headers = self._fetch_headers(sheet)
        id_index = self._id_index(headers)
        if id_index is None:
            raise SheetsError(f"sheet {sheet!r} has no ID column")
        cells = {str(k).strip(): v for k, v in values.items()}
        identifier = str(cells.get(headers[id_index].strip()) or "").strip() or generate_sheet_id(id_prefix)

        ordered: list[Any] = []
        for index, header in enumerate(headers):
            key = header.strip()
            if index == id_index:
                ordered.append(identifier)
            elif key == CREATED_AT_COLUMN and not cells.get(key):
                ordered.append(datetime.now(UTC).isoformat().replace("+00:00", "Z"))
            else:
                value = cells.get(key)
                ordered.append("" if value is None else value)

        request = self._values().append(
            spreadsheetId=self._spreadsheet_id,
            range=self._range(sheet, "A1"),
            valueInputOption="USER_ENTERED",
            insertDataOption="INSERT_ROWS",
            body={"values": [ordered]},
        )
        self._execute(request, f"append {sheet}")
        logger.debug(f"sheets: appended {identifier} to {sheet}")
        return identifier

    def update(self, sheet: str, identifier: int | str, ordered_values: Sequence[Any]) -> int:
        """Overwrite a row starting at column A; returns the physical row number."""
        row_number = self.resolve_row(sheet, identifier)
        last = column_letter(max(len(ordered_values), 1) - 1)
        request = self._values().update(
            spreadsheetId=self._spreadsheet_id,
            range=self._range(sheet, f"A{row_number}:{last}{row_number}"),
            valueInputOption="USER_ENTERED",
            body={"values": [["" if v is None else v for v in ordered_values]]},
        )
        self._execute(request, f"update {sheet} row {row_number}")
        return row_number

    def clear(self, sheet: str, identifier: int | str) -> int:
        row_number = self.resolve_row(sheet, identifier)
        request = self._values().clear(
            spreadsheetId=self._spreadsheet_id,
            range=self._range(sheet, f"A{row_number}:ZZ{row_number}"),
            body={},
        )
        self._execute(request, f"clear {sheet} row {row_number}")
        return row_number
