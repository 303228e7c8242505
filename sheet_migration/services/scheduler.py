from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..mapping.entities import get_entity
from .reconciler import Reconciler

"""On-demand migration runner.

Runs ``full_migration`` for every registered entity (or one named entity).
Each entity is isolated: an exception in one run is captured in its
MigrationRun and the remaining entities still run. There is no periodic
trigger; runs come from the HTTP surface or the CLI.
"""

__all__ = [
    "MigrationRun",
    "UnknownMigrationError",
    "MigrationRunner",
]

logger = logging.getLogger(__name__)


class UnknownMigrationError(KeyError):
    pass


@dataclass(frozen=True)
class MigrationRun:
    name: str
    success: bool
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: int = 0
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "success": self.success,
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class MigrationRunner:
    def __init__(self, reconcilers: Iterable[Reconciler]) -> None:
        self._reconcilers = {r.entity.slug: r for r in reconcilers}

    @property
    def names(self) -> list[str]:
        return [r.entity.name for r in self._reconcilers.values()]

    def _resolve(self, name: str) -> Reconciler:
        try:
            slug = get_entity(name).slug
        except KeyError:
            raise UnknownMigrationError(name) from None
        reconciler = self._reconcilers.get(slug)
        if reconciler is None:
            raise UnknownMigrationError(name)
        return reconciler

    def _run(self, reconciler: Reconciler) -> MigrationRun:
        name = reconciler.entity.name
        started = time.monotonic()
        logger.info(f"runner: starting {name}")
        try:
            result = reconciler.full_migration()
        except Exception as e:
            duration = int((time.monotonic() - started) * 1000)
            logger.error(f"runner: {name} failed after {duration}ms: {e}")
            return MigrationRun(name=name, success=False, errors=1, duration_ms=duration, error=str(e))
        duration = int((time.monotonic() - started) * 1000)
        totals = result.totals()
        logger.info(f"runner: {name} finished in {duration}ms")
        return MigrationRun(
            name=name,
            success=True,
            imported=totals.imported,
            skipped=totals.skipped,
            errors=totals.errors,
            duration_ms=duration,
        )

    def run_one(self, name: str) -> MigrationRun:
        return self._run(self._resolve(name))

    def run_all(self) -> list[MigrationRun]:
        return [self._run(r) for r in self._reconcilers.values()]

    def status(self) -> dict[str, Any]:
        return {
            "success": True,
            "availableMigrations": self.names,
            "count": len(self._reconcilers),
        }
