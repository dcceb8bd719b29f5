"""Workspace infrastructure tables.

Centralizes creation and persistence for workspace-internal tables:
- _trace (+ _trace_seq, _view_definitions)
- _node_meta
- _workspace_meta
"""

from __future__ import annotations

import importlib.metadata
import json
import platform
import sys
import time
from typing import Any

import duckdb

from .sql_utils import (
    VIEW_TRACE_CREATE_RE,
    VIEW_TRACE_DROP_RE,
    VIEW_TRACE_NAME_EXTRACT_RE,
    get_column_schema,
)

META_VERSION = "1"


def init_infra(conn: duckdb.DuckDBPyConnection) -> None:
    """Ensure all workspace infra tables exist."""
    ensure_trace(conn)
    ensure_node_meta(conn)
    ensure_workspace_meta(conn)


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


def ensure_trace(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the _trace table and the derived _view_definitions view."""
    conn.execute("CREATE SEQUENCE IF NOT EXISTS _trace_seq")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _trace (
            id INTEGER DEFAULT nextval('_trace_seq'),
            timestamp TIMESTAMP DEFAULT current_timestamp,
            node VARCHAR,
            source VARCHAR,
            query VARCHAR NOT NULL,
            success BOOLEAN NOT NULL,
            error VARCHAR,
            elapsed_ms DOUBLE
        )
        """
    )

    # Latest successful CREATE per view, for lineage after materialization.
    conn.execute(
        rf"""
        CREATE OR REPLACE VIEW _view_definitions AS
        WITH actions AS (
            SELECT
                id,
                node,
                query,
                NULLIF(regexp_extract(query, '{VIEW_TRACE_NAME_EXTRACT_RE}', 1), '') AS view_name,
                CASE
                    WHEN regexp_matches(query, '{VIEW_TRACE_DROP_RE}') THEN 'drop'
                    ELSE 'create'
                END AS action
            FROM _trace
            WHERE success = true
              AND (
                regexp_matches(query, '{VIEW_TRACE_CREATE_RE}')
                OR regexp_matches(query, '{VIEW_TRACE_DROP_RE}')
              )
        ),
        latest AS (
            SELECT
                *,
                row_number() OVER (PARTITION BY view_name ORDER BY id DESC) AS rn
            FROM actions
            WHERE view_name IS NOT NULL
        )
        SELECT node, view_name, query AS sql
        FROM latest
        WHERE rn = 1 AND action = 'create'
        """
    )


def log_trace(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    success: bool,
    *,
    error: str | None = None,
    elapsed_ms: float | None = None,
    node_name: str | None = None,
    source: str | None = None,
) -> None:
    """Log a SQL statement execution to the _trace table."""
    conn.execute(
        """
        INSERT INTO _trace (node, source, query, success, error, elapsed_ms)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [node_name, source, query, success, error, elapsed_ms],
    )


# ---------------------------------------------------------------------------
# Node metadata
# ---------------------------------------------------------------------------


def ensure_node_meta(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _node_meta (
            node VARCHAR PRIMARY KEY,
            meta_json VARCHAR NOT NULL
        )
        """
    )


def persist_node_meta(
    conn: duckdb.DuckDBPyConnection, node_name: str, meta: dict[str, Any]
) -> None:
    """Persist per-node run metadata in _node_meta (overwrite per node)."""
    ensure_node_meta(conn)
    conn.execute("DELETE FROM _node_meta WHERE node = ?", [node_name])
    conn.execute(
        "INSERT INTO _node_meta (node, meta_json) VALUES (?, ?)",
        [node_name, json.dumps(meta, sort_keys=True)],
    )


def read_node_meta(conn: duckdb.DuckDBPyConnection) -> dict[str, dict[str, Any]]:
    """Read per-node metadata. Returns empty dict if the table doesn't exist."""
    try:
        rows = conn.execute(
            "SELECT node, meta_json FROM _node_meta ORDER BY node"
        ).fetchall()
    except duckdb.Error:
        return {}
    return {node: json.loads(raw) for node, raw in rows}


# ---------------------------------------------------------------------------
# Workspace metadata
# ---------------------------------------------------------------------------


def ensure_workspace_meta(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _workspace_meta (
            key VARCHAR PRIMARY KEY,
            value VARCHAR
        )
        """
    )


def persist_workspace_meta(
    conn: duckdb.DuckDBPyConnection,
    nodes: list[Any],
    *,
    params: dict[str, Any] | None = None,
    source_row_counts: dict[str, int] | None = None,
) -> None:
    """Write workspace-level metadata to _workspace_meta (replacing it)."""
    ensure_workspace_meta(conn)
    conn.execute("DELETE FROM _workspace_meta")

    try:
        version = importlib.metadata.version("lotrecon")
    except importlib.metadata.PackageNotFoundError:
        version = "unknown"

    rows: list[tuple[str, str]] = [
        ("meta_version", META_VERSION),
        ("created_at_utc", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())),
        ("lotrecon_version", version),
        ("python_version", sys.version.split()[0]),
        ("platform", platform.platform()),
        ("nodes", json.dumps([n.name for n in nodes or []])),
    ]

    if params is not None:
        rows.append(("params", json.dumps(params, sort_keys=True)))

    if source_row_counts:
        source_schemas = {
            table: [
                {"name": r[0], "type": r[1]} for r in get_column_schema(conn, table)
            ]
            for table in sorted(source_row_counts)
        }
        rows.append(
            ("inputs_row_counts", json.dumps(source_row_counts, sort_keys=True))
        )
        rows.append(("inputs_schema", json.dumps(source_schemas, sort_keys=True)))

    conn.executemany("INSERT INTO _workspace_meta (key, value) VALUES (?, ?)", rows)


def read_workspace_meta(conn: duckdb.DuckDBPyConnection) -> dict[str, str]:
    """Read workspace metadata. Returns empty dict if table doesn't exist."""
    try:
        return dict(conn.execute("SELECT key, value FROM _workspace_meta").fetchall())
    except duckdb.Error:
        return {}


def upsert_workspace_meta(
    conn: duckdb.DuckDBPyConnection, rows: list[tuple[str, str]]
) -> None:
    """Upsert additional workspace metadata rows."""
    ensure_workspace_meta(conn)
    conn.executemany(
        """
        INSERT INTO _workspace_meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        rows,
    )
