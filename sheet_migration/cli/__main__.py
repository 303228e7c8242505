from __future__ import annotations

import argparse
import os
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import Any

import uvicorn
from dotenv import load_dotenv

from sheet_migration.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config
from sheet_migration.db.connection import open_connection
from sheet_migration.db.record_store import StoreError
from sheet_migration.db.schema import create_schema
from sheet_migration.logging.error_log import ErrorLogBuffer
from sheet_migration.logging.init import log_summary, set_debug, setup_logging
from sheet_migration.mapping.entities import EntityDefinition, configured_entities, get_entity
from sheet_migration.models.config_models import MigrationConfig
from sheet_migration.models.results import RunTotals
from sheet_migration.services.bootstrap import build_reconcilers
from sheet_migration.services.readback import ReadbackScheduler
from sheet_migration.services.reconciler import ReconciliationError, Reconciler
from sheet_migration.services.summary import render_summary_line
from sheet_migration.sheets.gateway import SheetsError, SheetsGateway

"""CLI entrypoint.

    python -m sheet_migration.cli [--config PATH] [--entity SLUG|all]
        [--operation status|import|export|full] [--correlation VALUE]
        [--init-db] [--inspect-data] [--serve] [--debug]

Exit codes:
    0  every run finished without row errors
    1  fatal (config, connection or setup failure of every selected entity)
    2  partial failure (row errors, or some entities failed to start)
"""

EXIT_SUCCESS_ALL = 0
EXIT_FATAL = 1
EXIT_PARTIAL_FAILURE = 2

ENV_CONFIG_PATH = "SHEET_MIGRATION_CONFIG"
OPERATIONS = ("status", "import", "export", "full")
INSPECT_ROWS = 3


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv.

    override=True により .env の値で既存環境変数を上書きし、接続情報を最優先化。
    """
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Google Sheets <-> PostgreSQL migration and sync")
    p.add_argument("--config", type=Path, default=None, help="Config YAML (default config/migration.yml)")
    p.add_argument("--entity", default="all", help="Entity slug or name, or 'all'")
    p.add_argument("--operation", choices=OPERATIONS, default="full", help="Reconciliation to run")
    p.add_argument("--correlation", default=None, help="Only rows of this parent id (per-entity key)")
    p.add_argument("--init-db", action="store_true", help="Create missing entity tables then exit")
    p.add_argument("--inspect-data", action="store_true", help="Print sheet headers & first rows then exit")
    p.add_argument("--serve", action="store_true", help="Run the HTTP API with uvicorn")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def _config_path(args: argparse.Namespace) -> Path:
    if args.config is not None:
        return args.config
    env_path = os.getenv(ENV_CONFIG_PATH)
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def _select_entities(cfg: MigrationConfig, name: str) -> list[EntityDefinition]:
    enabled = configured_entities(cfg.entities)
    if name.strip().lower() == "all":
        return enabled
    slug = get_entity(name).slug
    selected = [e for e in enabled if e.slug == slug]
    if not selected:
        raise KeyError(f"{name} is disabled in config")
    return selected


def _build_sheets(cfg: MigrationConfig) -> SheetsGateway:  # pragma: no cover (network)
    return SheetsGateway.from_config(cfg.spreadsheet)


def _build_reconcilers(
    cfg: MigrationConfig,
    entities: list[EntityDefinition],
    stack: ExitStack,
    readback: ReadbackScheduler,
) -> list[Reconciler]:  # pragma: no cover (thin wrapper; tests patch this)
    sheets = _build_sheets(cfg)
    return build_reconcilers(
        entities,
        sheets,
        lambda: stack.enter_context(open_connection(cfg.database)),
        readback=readback,
        error_log=ErrorLogBuffer(),
    )


def _init_db(cfg: MigrationConfig, entities: list[EntityDefinition], logger: Any) -> int:
    with open_connection(cfg.database) as conn:
        tables = create_schema(conn, entities)
    logger.info(f"init-db: ensured tables {', '.join(tables)}")
    return EXIT_SUCCESS_ALL


def _inspect_data(sheets: Any, entities: list[EntityDefinition]) -> int:
    for entity in entities:
        try:
            table = sheets.read_table(entity.sheet_name)
        except SheetsError as e:
            print(f"SHEET: {entity.sheet_name} error={e}")
            continue
        print(f"SHEET: {entity.sheet_name} rows={len(table.records)} cols={list(table.headers)}")
        mapped = [h for h in table.headers if entity.field_map.spec_for_column(h) is not None]
        unmapped = [h for h in table.headers if h not in mapped]
        print(f"  mapped={len(mapped)} unmapped={unmapped}")
        for record in table.records[:INSPECT_ROWS]:
            print("    sample_row=", {k: v for k, v in record.as_dict().items() if v})
    return EXIT_SUCCESS_ALL


def _run_operation(reconciler: Reconciler, operation: str, correlation: str | None, logger: Any) -> RunTotals:
    slug = reconciler.entity.slug
    if operation == "status":
        report = reconciler.status()
        logger.info(
            f"{slug}: database={report.database_total} (unsynced={report.database_unsynced}) "
            f"sheets={report.sheet_total} status={report.sync_status}"
        )
        return RunTotals()
    if operation == "import":
        totals = reconciler.import_from_sheets(correlation).totals()
    elif operation == "export":
        totals = reconciler.sync_to_sheets(correlation).totals()
    else:
        totals = reconciler.full_migration(correlation).totals()
    # render_summary_line は "SUMMARY " 付きで返すので log_summary 用に除去
    log_summary(render_summary_line(slug, totals)[len("SUMMARY "):])
    return totals


def _serve(cfg: MigrationConfig, reconcilers: list[Reconciler]) -> int:  # pragma: no cover (blocking)
    from sheet_migration.api.app import create_app

    app = create_app(reconcilers)
    uvicorn.run(app, host=cfg.server.host, port=cfg.server.port, log_level="info")
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # None のときのみシステム引数を読む ([] はテストからの明示指定)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        set_debug(True)
        logger.debug("debug mode enabled")

    try:
        cfg = load_config(_config_path(args))
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    try:
        entities = _select_entities(cfg, args.entity)
    except KeyError as e:
        logger.error(f"entity: unknown or disabled entity {e}")
        return EXIT_FATAL
    if not entities:
        logger.error("entity: no entities enabled")
        return EXIT_FATAL

    if args.init_db:
        try:
            return _init_db(cfg, entities, logger)
        except Exception as e:
            logger.error(f"init-db: {e}")
            return EXIT_FATAL

    if args.inspect_data:
        try:
            sheets = _build_sheets(cfg)
        except SheetsError as e:
            logger.error(f"sheets: {e}")
            return EXIT_FATAL
        return _inspect_data(sheets, entities)

    readback = ReadbackScheduler(cfg.readback_delay_seconds)
    with ExitStack() as stack:
        try:
            reconcilers = _build_reconcilers(cfg, entities, stack, readback)
        except (SheetsError, StoreError) as e:
            logger.error(f"startup: {e}")
            return EXIT_FATAL
        except Exception as e:
            # psycopg2.OperationalError 等の接続失敗
            logger.error(f"startup: connection failed: {e}")
            return EXIT_FATAL

        if args.serve:
            return _serve(cfg, reconcilers)

        logger.info(f"Running {args.operation} for {', '.join(r.entity.slug for r in reconcilers)}")
        grand = RunTotals()
        failed_entities = 0
        for reconciler in reconcilers:
            try:
                grand = grand + _run_operation(reconciler, args.operation, args.correlation, logger)
            except ReconciliationError as e:
                logger.error(f"{reconciler.entity.slug}: {e}")
                failed_entities += 1
        # 遅延読戻しは接続クローズ前に完了させる
        readback.join()

    if len(reconcilers) > 1 and args.operation != "status":
        log_summary(render_summary_line("all", grand)[len("SUMMARY "):])

    if failed_entities == len(reconcilers):
        return EXIT_FATAL
    if failed_entities > 0 or grand.errors > 0:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
