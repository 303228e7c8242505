from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from fastapi import APIRouter, FastAPI, Request

from ..services.reconciler import Reconciler
from ..services.scheduler import MigrationRunner, UnknownMigrationError

"""HTTP surface.

One router per entity under ``/jf/<slug>-migration`` plus the migration
runner under ``/jf/migration-scheduler``. Every endpoint answers HTTP 200
with a ``success`` flag; an exception escaping a handler becomes
``{"success": false, "message": ...}``.

Handlers are plain ``def`` functions so FastAPI runs them in its threadpool;
the reconcilers serialize runs per entity themselves.
"""

__all__ = [
    "create_app",
]

logger = logging.getLogger(__name__)


def _guarded(action: str, fn: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    try:
        return fn()
    except Exception as e:
        logger.error(f"api: {action} failed: {e}")
        return {"success": False, "message": f"{action} failed: {e}"}


def _correlation(request: Request, reconciler: Reconciler) -> str | None:
    value = request.query_params.get(reconciler.entity.correlation.param)
    if value is None or not value.strip():
        return None
    return value.strip()


def entity_router(reconciler: Reconciler) -> APIRouter:
    entity = reconciler.entity
    router = APIRouter(prefix=f"/jf/{entity.slug}-migration", tags=[entity.name])

    @router.get("/status")
    def status() -> dict[str, Any]:
        return _guarded("Status check", lambda: reconciler.status().to_payload())

    @router.post("/import-from-sheets")
    def import_from_sheets(request: Request) -> dict[str, Any]:
        correlation = _correlation(request, reconciler)
        return _guarded("Import", lambda: reconciler.import_from_sheets(correlation).to_payload())

    @router.post("/sync-to-sheets")
    def sync_to_sheets(request: Request) -> dict[str, Any]:
        correlation = _correlation(request, reconciler)
        return _guarded("Sync", lambda: reconciler.sync_to_sheets(correlation).to_payload())

    @router.post("/full-migration")
    def full_migration(request: Request) -> dict[str, Any]:
        correlation = _correlation(request, reconciler)
        return _guarded("Full migration", lambda: reconciler.full_migration(correlation).to_payload())

    @router.get("/compare/{sheet_id}")
    def compare(sheet_id: str) -> dict[str, Any]:
        return _guarded("Compare", lambda: reconciler.compare(sheet_id).to_payload())

    @router.get("/columns")
    def columns() -> dict[str, Any]:
        return _guarded("Column listing", lambda: reconciler.columns().to_payload())

    @router.post("/sync-record/{record_id}")
    def sync_record(record_id: int) -> dict[str, Any]:
        return _guarded("Record sync", lambda: reconciler.sync_record(record_id).to_payload())

    return router


def scheduler_router(runner: MigrationRunner) -> APIRouter:
    router = APIRouter(prefix="/jf/migration-scheduler", tags=["Migration scheduler"])

    def _run_all() -> dict[str, Any]:
        runs = runner.run_all()
        failed = sum(1 for r in runs if not r.success)
        return {
            "success": failed == 0,
            "message": f"Ran {len(runs)} migrations, {failed} failed",
            "results": [r.to_payload() for r in runs],
        }

    def _run_one(name: str) -> dict[str, Any]:
        try:
            run = runner.run_one(name)
        except UnknownMigrationError:
            return {
                "success": False,
                "message": f"Unknown migration {name!r}. Available: {', '.join(runner.names)}",
            }
        return {"success": run.success, "result": run.to_payload()}

    @router.post("/run-all")
    def run_all() -> dict[str, Any]:
        return _guarded("Run all", _run_all)

    @router.post("/run")
    def run(name: str = "") -> dict[str, Any]:
        if not name.strip():
            return {"success": False, "message": "Query parameter 'name' is required"}
        return _guarded("Run", lambda: _run_one(name))

    @router.get("/status")
    def status() -> dict[str, Any]:
        return _guarded("Scheduler status", runner.status)

    return router


def create_app(reconcilers: Iterable[Reconciler], runner: MigrationRunner | None = None) -> FastAPI:
    reconcilers = list(reconcilers)
    runner = runner or MigrationRunner(reconcilers)
    app = FastAPI(title="Sheet Migration", docs_url=None, redoc_url=None)
    for reconciler in reconcilers:
        app.include_router(entity_router(reconciler))
    app.include_router(scheduler_router(runner))
    return app
