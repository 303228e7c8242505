from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from ..db.record_store import RecordStore
from ..logging.error_log import ErrorLogBuffer
from ..mapping.entities import EntityDefinition
from .readback import ReadbackScheduler
from .reconciler import Reconciler

"""Wiring of gateways into one Reconciler per entity."""

__all__ = ["build_reconcilers"]


def build_reconcilers(
    entities: Iterable[EntityDefinition],
    sheets: Any,
    connect: Callable[[], Any],
    *,
    readback: ReadbackScheduler | None = None,
    error_log: ErrorLogBuffer | None = None,
) -> list[Reconciler]:
    """Create reconcilers sharing one Sheets gateway.

    ``connect`` is called once per entity; each store gets its own connection
    so entity runs on different threads never share a transaction.
    """
    readback = readback or ReadbackScheduler()
    error_log = error_log or ErrorLogBuffer()
    return [
        Reconciler(
            entity,
            sheets,
            RecordStore(connect(), entity),
            readback=readback,
            error_log=error_log,
        )
        for entity in entities
    ]
