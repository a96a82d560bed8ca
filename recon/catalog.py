"""DuckDB catalog helpers.

Shared by the run store and the database source: identifier quoting,
table listing, column schemas, and safe row counts.
"""

from __future__ import annotations

from typing import Iterable

import duckdb

# Tables the engine owns; hidden from database source listings.
INTERNAL_PREFIX = "_recon_"


def quote_ident(name: str) -> str:
    """Quote an identifier for DuckDB SQL."""
    return '"' + name.replace('"', '""') + '"'


def _excluded(name: str, exclude_prefixes: Iterable[str]) -> bool:
    return any(p and name.startswith(p) for p in exclude_prefixes)


def list_tables(
    conn: duckdb.DuckDBPyConnection,
    *,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (INTERNAL_PREFIX,),
) -> list[str]:
    """Return user table names from the catalog."""
    where = "" if include_internal else "WHERE internal = false"
    rows = conn.execute(
        f"SELECT table_name FROM duckdb_tables() {where} ORDER BY table_name"
    ).fetchall()
    return [r[0] for r in rows if not _excluded(r[0], exclude_prefixes)]


def table_exists(conn: duckdb.DuckDBPyConnection, table_name: str) -> bool:
    rows = conn.execute(
        "SELECT 1 FROM duckdb_tables() WHERE table_name = ? AND internal = false",
        [table_name],
    ).fetchall()
    return bool(rows)


def get_column_schema(
    conn: duckdb.DuckDBPyConnection, table_name: str
) -> list[tuple[str, str]]:
    """Get the column names and data types for a table, in table order."""
    rows = conn.execute(
        """
        SELECT column_name, data_type
        FROM information_schema.columns
        WHERE table_name = ?
        ORDER BY ordinal_position
        """,
        [table_name],
    ).fetchall()
    return [(row[0], row[1]) for row in rows]


def count_rows(conn: duckdb.DuckDBPyConnection, table_name: str) -> int | None:
    """Return COUNT(*) for a table, or None on error."""
    try:
        row = conn.execute(f"SELECT COUNT(*) FROM {quote_ident(table_name)}").fetchone()
    except duckdb.Error:
        return None
    return int(row[0]) if row else 0
