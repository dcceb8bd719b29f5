"""DuckDB catalog helpers.

Centralize the queries against duckdb_views()/duckdb_tables() used by the
workspace, the CLI and the tests.
"""

from __future__ import annotations

from typing import Iterable

import duckdb


def quote_ident(name: str) -> str:
    """Quote an identifier for DuckDB SQL."""
    return '"' + name.replace('"', '""') + '"'


def _excluded(name: str, exclude_prefixes: Iterable[str]) -> bool:
    return any(p and name.startswith(p) for p in exclude_prefixes)


def _catalog_names(
    conn: duckdb.DuckDBPyConnection,
    kind: str,
    include_internal: bool,
    exclude_prefixes: Iterable[str],
) -> list[str]:
    where = "" if include_internal else "WHERE internal = false"
    rows = conn.execute(
        f"SELECT {kind}_name FROM duckdb_{kind}s() {where} ORDER BY {kind}_name"
    ).fetchall()
    return [r[0] for r in rows if not _excluded(r[0], exclude_prefixes)]


def list_views(
    conn: duckdb.DuckDBPyConnection,
    *,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    """Return view names, sorted."""
    return _catalog_names(conn, "view", include_internal, exclude_prefixes)


def list_tables(
    conn: duckdb.DuckDBPyConnection,
    *,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    """Return table names, sorted."""
    return _catalog_names(conn, "table", include_internal, exclude_prefixes)


def view_exists(conn: duckdb.DuckDBPyConnection, view_name: str) -> bool:
    """Return True if a (non-internal) view exists."""
    rows = conn.execute(
        "SELECT 1 FROM duckdb_views() WHERE view_name = ? AND internal = false",
        [view_name],
    ).fetchall()
    return bool(rows)


def count_rows(conn: duckdb.DuckDBPyConnection, relation_name: str) -> int | None:
    """Return COUNT(*) for a table/view, or None on error."""
    try:
        row = conn.execute(
            f"SELECT COUNT(*) FROM {quote_ident(relation_name)}"
        ).fetchone()
    except duckdb.Error:
        return None
    return int(row[0]) if row else 0


def count_rows_display(conn: duckdb.DuckDBPyConnection, relation_name: str) -> str:
    """Return a display-friendly row count (or 'error')."""
    n = count_rows(conn, relation_name)
    return str(n) if n is not None else "error"
