from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for per-record failure logging.

Every row or record that fails during a reconciliation run is written as one
JSON line with a fixed key set, so the log can be grepped or loaded without
knowing which operation produced it.
"""

__all__ = [
    "ErrorRecord",
    "error_type_for",
]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def error_type_for(exc: BaseException) -> str:
    """Derive an UPPER_SNAKE error type from the exception class name.

    >>> error_type_for(ValueError("x"))
    'VALUE_ERROR'
    """
    return _CAMEL_BOUNDARY.sub("_", type(exc).__name__).upper()


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        entity: Entity slug (e.g. ``loans``)
        sheet: Sheet name the run was reconciling against
        identifier: Sheet ID for imports, store id for exports
        operation: ``import`` / ``export`` / ``readback``
        error_type: Error classification in UPPER_SNAKE_CASE format
        message: Underlying error message
    """
    timestamp: str  # ISO8601 UTC
    entity: str
    sheet: str
    identifier: str
    operation: str
    error_type: str  # UPPER_SNAKE
    message: str

    @staticmethod
    def create(
        entity: str,
        sheet: str,
        identifier: str,
        operation: str,
        error_type: str,
        message: str,
    ) -> ErrorRecord:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            entity=entity,
            sheet=sheet,
            identifier=identifier,
            operation=operation,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        # 追加キー阻止: dataclass -> dict して json.dumps
        return json.dumps(asdict(self), ensure_ascii=False)
