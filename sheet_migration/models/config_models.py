from __future__ import annotations

from dataclasses import dataclass, field

"""Config dataclasses for the sheet migration service.

These are the typed result of ``sheet_migration.config.loader.load_config``.
Environment variables are already applied by the loader; consumers never read
``os.environ`` for connection settings themselves.
"""


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class SpreadsheetConfig:
    spreadsheet_id: str
    credentials_file: str | None  # service account JSON
    header_cache_ttl: float = 3600.0
    max_retries: int = 5


@dataclass(frozen=True)
class EntitySettings:
    """Per-entity overrides of the built-in entity registry."""
    sheet: str | None = None
    table: str | None = None
    enabled: bool = True


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(frozen=True)
class MigrationConfig:
    """Root configuration object."""
    spreadsheet: SpreadsheetConfig
    database: DatabaseConfig
    readback_delay_seconds: float = 3.0
    server: ServerConfig = field(default_factory=ServerConfig)
    entities: dict[str, EntitySettings] = field(default_factory=dict)  # slug -> overrides
