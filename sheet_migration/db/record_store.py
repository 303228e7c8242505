from __future__ import annotations

import logging
import math
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import sql

from sheet_migration.mapping.entities import EntityDefinition
from sheet_migration.models.records import StoreRecord

"""Typed CRUD over one entity table.

Columns mirror the entity field map's store-side names plus the managed
columns ``id`` / ``sheet_id`` / ``synced`` / ``created_at``. Every write goes
through a type guard: a value whose type does not match the column declared
by the field's coercion kind is replaced by NULL (and logged) instead of
being handed to PostgreSQL. Each public call is its own transaction.
"""

__all__ = [
    "StoreError",
    "DuplicateSheetIdError",
    "RecordStore",
    "guard_value",
]

logger = logging.getLogger(__name__)

MANAGED_COLUMNS = ("id", "sheet_id", "synced", "created_at")


class StoreError(Exception):
    pass


class DuplicateSheetIdError(StoreError):
    """sheet_id already linked to another record (unique constraint)."""


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def guard_value(kind: str, value: Any) -> tuple[bool, Any]:
    """Check ``value`` against the column type implied by ``kind``.

    Returns:
        (accepted, value_to_bind). Rejected values bind as NULL.
    """
    if value is None:
        return True, None
    if kind in ("currency", "number"):
        if _is_number(value) and math.isfinite(value):
            return True, float(value)
        return False, None
    if kind in ("integer", "boolean_to_int"):
        if isinstance(value, bool):
            return True, int(value)
        if isinstance(value, int):
            return True, value
        if isinstance(value, float) and value.is_integer():
            return True, int(value)
        return False, None
    if kind == "date":
        if isinstance(value, datetime):
            return True, value.date().isoformat()
        if isinstance(value, date):
            return True, value.isoformat()
        if isinstance(value, str):
            return True, value  # 解析不能な原文も保持
        return False, None
    if isinstance(value, str):
        return True, value
    return False, None


class RecordStore:
    """Record Store Gateway for one entity, bound to a psycopg2 connection."""

    def __init__(self, connection: Any, entity: EntityDefinition) -> None:
        self._conn = connection
        self._entity = entity
        self._fields = entity.field_map.fields

    @property
    def entity(self) -> EntityDefinition:
        return self._entity

    @property
    def _table(self) -> sql.Identifier:
        return sql.Identifier(self._entity.table)

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        cur = self._conn.cursor()
        try:
            yield cur
            self._conn.commit()
        except psycopg2.Error as e:
            self._conn.rollback()
            raise StoreError(f"{self._entity.table}: {e}") from e
        except Exception:
            self._conn.rollback()
            raise
        finally:
            cur.close()

    def _prepare(self, values: Mapping[str, Any]) -> dict[str, Any]:
        fmap = self._entity.field_map
        out: dict[str, Any] = {}
        for field, value in values.items():
            if field not in fmap:
                logger.debug(f"store: {self._entity.table} ignoring unmapped field {field!r}")
                continue
            spec = fmap.spec(field)
            accepted, bound = guard_value(spec.kind, value)
            if not accepted:
                logger.warning(
                    f"store: {self._entity.table}.{field} expects {spec.sql_type}, "
                    f"got {type(value).__name__} {value!r} -> NULL"
                )
            out[field] = bound
        return out

    def _select(self) -> sql.Composed:
        columns = sql.SQL(", ").join(sql.Identifier(c) for c in (*MANAGED_COLUMNS, *self._fields))
        return sql.SQL("SELECT {} FROM {}").format(columns, self._table)

    def _to_record(self, row: tuple[Any, ...]) -> StoreRecord:
        record_id, sheet_id, synced, created_at, *rest = row
        return StoreRecord(
            id=record_id,
            sheet_id=sheet_id,
            synced=bool(synced),
            values=dict(zip(self._fields, rest)),
            created_at=created_at,
        )

    # ------------------------------------------------------------------ reads
    def get(self, record_id: int) -> StoreRecord | None:
        query = sql.SQL("{} WHERE id = %s").format(self._select())
        with self._transaction() as cur:
            cur.execute(query, (record_id,))
            row = cur.fetchone()
        return self._to_record(row) if row else None

    def find_all(self) -> list[StoreRecord]:
        query = sql.SQL("{} ORDER BY id").format(self._select())
        with self._transaction() as cur:
            cur.execute(query)
            rows = cur.fetchall()
        return [self._to_record(r) for r in rows]

    def find_by_sheet_id(self, sheet_id: str) -> StoreRecord | None:
        query = sql.SQL("{} WHERE sheet_id = %s").format(self._select())
        with self._transaction() as cur:
            cur.execute(query, (sheet_id,))
            row = cur.fetchone()
        return self._to_record(row) if row else None

    def find_unsynced(self, correlation: str | None = None) -> list[StoreRecord]:
        """Unsynced records in id order, optionally narrowed by the correlation key."""
        params: list[Any] = []
        where = sql.SQL("synced = FALSE")
        if correlation is not None:
            where = sql.SQL("{} AND {} = %s").format(
                where, sql.Identifier(self._entity.correlation.field)
            )
            params.append(correlation)
        query = sql.SQL("{} WHERE {} ORDER BY id").format(self._select(), where)
        with self._transaction() as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        return [self._to_record(r) for r in rows]

    def count(self) -> int:
        query = sql.SQL("SELECT count(*) FROM {}").format(self._table)
        with self._transaction() as cur:
            cur.execute(query)
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def count_by_synced(self) -> tuple[int, int]:
        """(synced, unsynced) record counts."""
        query = sql.SQL(
            "SELECT count(*) FILTER (WHERE synced), count(*) FILTER (WHERE NOT synced) FROM {}"
        ).format(self._table)
        with self._transaction() as cur:
            cur.execute(query)
            row = cur.fetchone()
        if not row:
            return 0, 0
        return int(row[0] or 0), int(row[1] or 0)

    # ------------------------------------------------------------------ writes
    def create(self, values: Mapping[str, Any], *, sheet_id: str | None = None, synced: bool = False) -> int:
        """Insert a record and return its id.

        Raises:
            DuplicateSheetIdError: ``sheet_id`` already belongs to another record
        """
        fields = self._prepare(values)
        columns = ["sheet_id", "synced", *fields]
        query = sql.SQL(
            "INSERT INTO {} ({}) VALUES ({}) ON CONFLICT (sheet_id) DO NOTHING RETURNING id"
        ).format(
            self._table,
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        with self._transaction() as cur:
            cur.execute(query, (sheet_id, synced, *fields.values()))
            row = cur.fetchone()
            if row is None:
                raise DuplicateSheetIdError(
                    f"sheet_id {sheet_id!r} already linked in {self._entity.table}"
                )
        return int(row[0])

    def update(self, record_id: int, values: Mapping[str, Any], *, synced: bool | None = None) -> None:
        fields = self._prepare(values)
        assignments: dict[str, Any] = dict(fields)
        if synced is not None:
            assignments["synced"] = synced
        if not assignments:
            return
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
            self._table,
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in assignments
            ),
        )
        with self._transaction() as cur:
            cur.execute(query, (*assignments.values(), record_id))

    def update_sync_status(self, record_id: int, synced: bool, sheet_id: str | None = None) -> None:
        """Set ``synced``; when ``sheet_id`` is given it is backfilled in the same statement."""
        if sheet_id is None:
            query = sql.SQL("UPDATE {} SET synced = %s WHERE id = %s").format(self._table)
            params: tuple[Any, ...] = (synced, record_id)
        else:
            query = sql.SQL("UPDATE {} SET synced = %s, sheet_id = %s WHERE id = %s").format(self._table)
            params = (synced, sheet_id, record_id)
        try:
            with self._transaction() as cur:
                cur.execute(query, params)
        except StoreError as e:
            if isinstance(e.__cause__, pg_errors.UniqueViolation):
                raise DuplicateSheetIdError(
                    f"sheet_id {sheet_id!r} already linked in {self._entity.table}"
                ) from e.__cause__
            raise

    def delete(self, record_id: int) -> bool:
        query = sql.SQL("DELETE FROM {} WHERE id = %s").format(self._table)
        with self._transaction() as cur:
            cur.execute(query, (record_id,))
            deleted = cur.rowcount
        return deleted > 0
