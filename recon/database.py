"""Database-record collaborator backed by DuckDB tables.

A source config's ``database_id`` names a table in the engine's DuckDB
file. Rows can be restricted to one reporting period of a date column:

    monthly    2024-01
    quarterly  2024-Q1
    annual     2024
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable

import duckdb

from .catalog import get_column_schema, list_tables, quote_ident, table_exists
from .errors import NotFoundError, ValidationError
from .models import ColumnDef
from .values import ColumnType, parse_date

log = logging.getLogger(__name__)

CADENCES = ("monthly", "quarterly", "annual")

_PERIOD_RES = {
    "monthly": re.compile(r"^\d{4}-(0[1-9]|1[0-2])$"),
    "quarterly": re.compile(r"^\d{4}-Q[1-4]$"),
    "annual": re.compile(r"^\d{4}$"),
}


def period_key(d: date, cadence: str) -> str:
    if cadence == "monthly":
        return f"{d.year:04d}-{d.month:02d}"
    if cadence == "quarterly":
        return f"{d.year:04d}-Q{(d.month - 1) // 3 + 1}"
    if cadence == "annual":
        return f"{d.year:04d}"
    raise ValidationError(f"Unknown cadence {cadence!r}. Allowed: {', '.join(CADENCES)}")


def period_key_from_value(value: Any, cadence: str) -> str | None:
    """Period key of a date cell, or None if the cell is not a date."""
    d = parse_date(value)
    return period_key(d, cadence) if d is not None else None


@dataclass(frozen=True)
class RowFilter:
    date_column_key: str
    cadence: str
    period_key: str

    @classmethod
    def from_dict(cls, data: Any) -> "RowFilter":
        if not isinstance(data, dict):
            raise ValidationError(f"filter must be an object, got {type(data).__name__}")
        unknown = set(data) - {"date_column_key", "cadence", "period_key"}
        if unknown:
            raise ValidationError(f"filter has unknown fields: {', '.join(sorted(unknown))}")
        values = {}
        for name in ("date_column_key", "cadence", "period_key"):
            value = data.get(name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"filter '{name}' must be a non-empty string")
            values[name] = value.strip()
        return cls(**values)

    def __post_init__(self):
        if self.cadence not in CADENCES:
            raise ValidationError(
                f"filter 'cadence' must be one of {', '.join(CADENCES)}, got {self.cadence!r}"
            )
        if not _PERIOD_RES[self.cadence].match(self.period_key):
            raise ValidationError(
                f"filter 'period_key' {self.period_key!r} does not fit {self.cadence} cadence"
            )

    def accepts(self, value: Any) -> bool:
        return period_key_from_value(value, self.cadence) == self.period_key


def column_type_for(duckdb_type: str) -> ColumnType:
    """Map a DuckDB column type name onto a ColumnType."""
    t = duckdb_type.upper()
    if t.startswith("DECIMAL") or t in ("DOUBLE", "FLOAT", "REAL"):
        return ColumnType.CURRENCY if t.startswith("DECIMAL") else ColumnType.NUMBER
    if t in ("TINYINT", "SMALLINT", "INTEGER", "BIGINT", "HUGEINT", "UTINYINT",
             "USMALLINT", "UINTEGER", "UBIGINT"):
        return ColumnType.NUMBER
    if t == "DATE" or t.startswith("TIMESTAMP"):
        return ColumnType.DATE
    if t == "BOOLEAN":
        return ColumnType.BOOLEAN
    return ColumnType.TEXT


class DuckDBDatabaseSource:
    """Read source rows from tables on a DuckDB connection."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def list_databases(self) -> list[str]:
        return list_tables(self.conn)

    def _require(self, database_id: str) -> None:
        if not table_exists(self.conn, database_id):
            raise NotFoundError(f"Unknown database: '{database_id}'")

    def columns(self, database_id: str) -> list[ColumnDef]:
        self._require(database_id)
        return [
            ColumnDef(key=name, label=name, type=column_type_for(dtype))
            for name, dtype in get_column_schema(self.conn, database_id)
        ]

    def fetch_rows(
        self,
        database_id: str,
        keys: Iterable[str] | None = None,
        row_filter: RowFilter | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows as dicts, in table order.

        ``keys`` restricts the columns read; keys the table lacks come back
        as None. ``row_filter`` keeps rows whose date column falls in the
        period.
        """
        self._require(database_id)
        available = [name for name, _ in get_column_schema(self.conn, database_id)]
        wanted = list(keys) if keys is not None else list(available)
        missing = [k for k in wanted if k not in available]
        if missing:
            log.warning("Database '%s' has no column(s): %s", database_id, ", ".join(missing))
        if row_filter is not None and row_filter.date_column_key not in available:
            raise ValidationError(
                f"Database '{database_id}' has no date column '{row_filter.date_column_key}'"
            )

        read = [k for k in wanted if k in available]
        if row_filter is not None and row_filter.date_column_key not in read:
            read.append(row_filter.date_column_key)
        if not read:
            return []

        select = ", ".join(quote_ident(k) for k in read)
        # rowid keeps insertion order stable across reads.
        result = self.conn.execute(
            f"SELECT {select} FROM {quote_ident(database_id)} ORDER BY rowid"
        ).fetchall()

        rows: list[dict[str, Any]] = []
        for record in result:
            values = dict(zip(read, record))
            if row_filter is not None and not row_filter.accepts(values[row_filter.date_column_key]):
                continue
            rows.append({k: values.get(k) for k in wanted})
        log.info(
            "Read %d row(s) from database '%s'%s",
            len(rows),
            database_id,
            f" for {row_filter.cadence} period {row_filter.period_key}" if row_filter else "",
        )
        return rows
