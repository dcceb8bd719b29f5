"""Node execution — run a single node within a DuckDB workspace.

SQL nodes may only CREATE/DROP views (or macros) within their namespace
prefix ({name}_*). Every statement is recorded in ``_trace``.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, cast

import duckdb

from .catalog import count_rows, list_tables, list_views
from .infra import log_trace
from .ingest import FileInput, ingest_file, ingest_table
from .namespace import Namespace
from .sql_utils import SqlParseError, extract_ddl_target, parse_one_statement
from .task import Node, validation_view_prefix

log = logging.getLogger(__name__)


@dataclass
class NodeResult:
    """Outcome of running one node."""

    success: bool
    message: str
    row_count: int | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed_s: float = 0.0


def is_sql_allowed(
    query: str,
    namespace: Namespace | None = None,
) -> tuple[bool, str]:
    """Check that *query* is a single CREATE/DROP VIEW|MACRO the namespace permits.

    Uses DuckDB's own parser for statement type classification, then regex
    for name extraction.
    """
    try:
        parsed = parse_one_statement(query)
    except SqlParseError as e:
        return False, str(e)

    st = parsed.stmt_type
    # DuckDB's typing for StatementType is incomplete in some versions
    StatementType = cast(Any, duckdb.StatementType)

    if st not in (StatementType.CREATE, StatementType.DROP):
        st_name = getattr(st, "name", str(st))
        return (
            False,
            f"{st_name} is not allowed; SQL nodes only allow CREATE/DROP VIEW|MACRO statements",
        )

    ddl = extract_ddl_target(parsed.sql)
    if ddl is None:
        verb = "CREATE" if st == StatementType.CREATE else "DROP"
        return False, f"Only {verb} VIEW and {verb} MACRO are permitted."
    if namespace is not None:
        return namespace.check_name(ddl.name, ddl.kind, ddl.action)
    return True, ""


def execute_sql(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    namespace: Namespace | None = None,
    node_name: str | None = None,
    source: str | None = None,
) -> tuple[bool, str | None]:
    """Execute one DDL statement and trace it. Returns ``(success, error)``."""
    start_time = time.perf_counter()

    allowed, reason = is_sql_allowed(query, namespace=namespace)
    error: str | None = None if allowed else reason
    if allowed:
        try:
            conn.execute(query)
        except duckdb.Error as e:
            error = str(e)
    success = error is None

    elapsed_ms = (time.perf_counter() - start_time) * 1000
    log_trace(
        conn,
        query,
        success=success,
        error=error,
        elapsed_ms=elapsed_ms,
        node_name=node_name,
        source=source,
    )
    return success, error


def run_source_node(conn: duckdb.DuckDBPyConnection, node: Node) -> NodeResult:
    """Ingest a source node into table ``{node.name}``."""
    value = node.source
    try:
        if isinstance(value, FileInput):
            ingest_file(conn, value, node.name)
        else:
            if callable(value):
                value = value()
            ingest_table(conn, value, node.name, schema=node.schema or None)
    except Exception as e:
        return NodeResult(False, f"Source ingestion failed: {e}")

    count = count_rows(conn, node.name) or 0
    if count == 0:
        log.warning("  %s: 0 rows (empty table)", node.name)
    else:
        log.info("  %s: %d rows", node.name, count)
    return NodeResult(True, f"OK ({count} rows)", row_count=count)


def run_sql_node(conn: duckdb.DuckDBPyConnection, node: Node) -> NodeResult:
    """Execute a deterministic SQL node.

    Does NOT run validation — the workspace handles the unified
    post-execution flow (validate + materialize) for all node types.
    """
    statements = node.sql_statements()
    if not statements:
        return NodeResult(False, "SQL node has no SQL statements")

    ns = Namespace.for_node(node)
    for q in statements:
        ok, error = execute_sql(conn, q, namespace=ns, node_name=node.name, source="sql_node")
        if not ok:
            return NodeResult(False, error or "SQL execution failed")

    return NodeResult(True, "OK")


def run_validate_sql(conn: duckdb.DuckDBPyConnection, node: Node) -> list[str]:
    """Define the node's validation views.

    Each ``check_name -> query`` entry becomes the view
    ``{name}__validation_{check_name}``.

    Returns a list of error messages (empty = success).
    """
    vns = Namespace.for_validation(node)
    tables = set(list_tables(conn))

    for check_name, query in sorted(node.validation_queries().items()):
        view_name = f"{validation_view_prefix(node.name)}_{check_name}"
        # Already materialized by an earlier pass
        if view_name in tables:
            continue

        q = query.rstrip().rstrip(";").strip()
        ddl = f'CREATE OR REPLACE VIEW "{view_name}" AS\n{q}'
        ok, error = execute_sql(
            conn, ddl, namespace=vns, node_name=node.name, source="node_validation"
        )
        if not ok:
            return [f"{view_name}: {error or 'Validation view definition failed'}"]

    return []


def validate_node_complete(conn: duckdb.DuckDBPyConnection, node: Node) -> list[str]:
    """Run full node validation and return error messages (empty = pass)."""
    errors = node.validate_outputs(conn)
    if errors:
        return errors
    if node.has_validation():
        existing = set(list_views(conn)) | set(list_tables(conn))
        if not all(v in existing for v in node.validation_view_names()):
            errors = run_validate_sql(conn, node)
            if errors:
                return errors
        errors = node.validate_validation_views(conn)
        if errors:
            return errors
    return []
