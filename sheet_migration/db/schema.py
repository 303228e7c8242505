from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from psycopg2 import sql

from sheet_migration.mapping.entities import EntityDefinition

"""DDL derived from the entity field maps (``--init-db``)."""

__all__ = [
    "table_ddl",
    "create_schema",
]


def table_ddl(entity: EntityDefinition) -> sql.Composed:
    columns = [
        sql.SQL("id SERIAL PRIMARY KEY"),
        sql.SQL("sheet_id TEXT UNIQUE"),
        sql.SQL("synced BOOLEAN NOT NULL DEFAULT FALSE"),
        sql.SQL("created_at TIMESTAMPTZ NOT NULL DEFAULT now()"),
    ]
    for spec in entity.field_map:
        columns.append(sql.SQL("{} {}").format(sql.Identifier(spec.field), sql.SQL(spec.sql_type)))
    return sql.SQL("CREATE TABLE IF NOT EXISTS {} ({})").format(
        sql.Identifier(entity.table), sql.SQL(", ").join(columns)
    )


def create_schema(connection: Any, entities: Iterable[EntityDefinition]) -> list[str]:
    """Create missing entity tables; returns the table names processed."""
    tables = []
    cur = connection.cursor()
    try:
        for entity in entities:
            cur.execute(table_ddl(entity))
            tables.append(entity.table)
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        cur.close()
    return tables
