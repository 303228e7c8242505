from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from sheet_migration.models.config_models import (
    DatabaseConfig,
    EntitySettings,
    MigrationConfig,
    ServerConfig,
    SpreadsheetConfig,
)

"""Config loader.

Responsibilities:
- Load YAML config (default ``config/migration.yml``)
- Validate against the packaged ``config_schema.json``
- Apply defaults and environment overrides for the spreadsheet settings
  (database env vars are resolved at connect time, see ``db.connection``)
"""

__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_PATH",
    "SCHEMA_PATH",
    "load_config",
]

DEFAULT_CONFIG_PATH = Path("config/migration.yml")
SCHEMA_PATH = Path(__file__).with_name("config_schema.json")

ENV_SPREADSHEET_ID = "GOOGLE_SHEETS_SPREADSHEET_ID"
ENV_CREDENTIALS = "GOOGLE_APPLICATION_CREDENTIALS"


class ConfigError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing / broken, or the data violates it
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def load_config(path: Path) -> MigrationConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")

    _validate_config_schema(data)

    sheet_raw = data.get("spreadsheet") or {}
    # 環境変数優先 (.env は CLI 側で override=True 読込済み)
    spreadsheet_id = os.getenv(ENV_SPREADSHEET_ID) or sheet_raw.get("id")
    if not spreadsheet_id:
        raise ConfigError(f"spreadsheet id missing: set spreadsheet.id or {ENV_SPREADSHEET_ID}")
    spreadsheet = SpreadsheetConfig(
        spreadsheet_id=spreadsheet_id,
        credentials_file=os.getenv(ENV_CREDENTIALS) or sheet_raw.get("credentials_file"),
        header_cache_ttl=float(sheet_raw.get("header_cache_ttl", 3600)),
        max_retries=int(sheet_raw.get("max_retries", 5)),
    )

    db_raw = data.get("database") or {}
    database = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )

    server_raw = data.get("server") or {}
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=int(server_raw.get("port", 8000)),
    )

    entities = {
        slug: EntitySettings(
            sheet=raw.get("sheet"),
            table=raw.get("table"),
            enabled=bool(raw.get("enabled", True)),
        )
        for slug, raw in (data.get("entities") or {}).items()
    }

    return MigrationConfig(
        spreadsheet=spreadsheet,
        database=database,
        readback_delay_seconds=float(data.get("readback_delay_seconds", 3.0)),
        server=server,
        entities=entities,
    )
