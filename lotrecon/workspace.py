"""Workspace orchestrator — resolve DAG of nodes, execute, run exports.

A workspace is a single DuckDB database containing:
- Ingested source tables (from data, callables or files)
- Per-node output views (created by SQL nodes, materialized as tables
  after validation)
- Metadata and trace tables

Nodes run one at a time in dependency order (layer by layer, by name
within a layer). A failed node only blocks its downstream dependents;
unrelated branches continue.

Node types:
- **source** — ingest data into table ``{name}``.
- **sql** — execute deterministic SQL creating ``{name}_*`` views.

After execution, ALL nodes go through the same post-execution flow:
1. Validate outputs (``node.validate_outputs(conn)``)
2. Define validation views if configured
3. Check validation views (``node.validate_validation_views(conn)``)
4. Materialize all ``{name}_*`` views (source nodes simply have none)
5. Collect ``warn`` rows from the validation views

Usage:

    workspace = Workspace(
        db_path="recon.db",
        nodes=build_nodes(sources, config),
        exports={"report.xlsx": export_report},
        setup=register_udfs,
    )

    result = workspace.run()
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import duckdb

from .catalog import list_views, view_exists
from .executor import NodeResult, run_source_node, run_sql_node, validate_node_complete
from .infra import (
    init_infra,
    persist_node_meta,
    persist_workspace_meta,
    upsert_workspace_meta,
)
from .task import MAX_INLINE_MESSAGES, Node, resolve_dag, validate_graph

log = logging.getLogger(__name__)

ExportFn = Callable[[duckdb.DuckDBPyConnection, Path], None]
SetupFn = Callable[[duckdb.DuckDBPyConnection], None]

MEMORY_DB = ":memory:"


# --- View materialization ---


def materialize_views(
    conn: duckdb.DuckDBPyConnection,
    view_names: list[str],
) -> int:
    """Materialize a list of views as tables.

    For each view that exists, does a 3-step swap: CREATE TABLE from view,
    DROP VIEW, RENAME TABLE. The original CREATE VIEW SQL stays available
    through ``_view_definitions``.

    Duplicates are ignored and missing views are skipped. Returns the
    number of views materialized.
    """
    unique_names = list(dict.fromkeys(view_names))

    materialized = 0
    for view_name in unique_names:
        if not view_exists(conn, view_name):
            continue

        # Never leave the catalog with the view gone and tmp not renamed
        tmp_name = f"_materialize_tmp_{view_name}"
        conn.execute(f'DROP TABLE IF EXISTS "{tmp_name}"')
        conn.execute(f'CREATE TABLE "{tmp_name}" AS SELECT * FROM "{view_name}"')
        try:
            conn.execute(f'DROP VIEW "{view_name}"')
            conn.execute(f'ALTER TABLE "{tmp_name}" RENAME TO "{view_name}"')
        except duckdb.Error:
            conn.execute(f'DROP TABLE IF EXISTS "{tmp_name}"')
            raise
        materialized += 1

    return materialized


def materialize_node_outputs(
    conn: duckdb.DuckDBPyConnection,
    node: Node,
) -> int:
    """Materialize all ``{name}_*`` views of a node (outputs and validation views).

    Returns the number of views materialized.
    """
    prefix = f"{node.name}_"
    view_names = [v for v in list_views(conn) if v.startswith(prefix)]
    return materialize_views(conn, view_names)


@dataclass
class WorkspaceResult:
    """Aggregated results from running all nodes in a workspace."""

    success: bool  # True if ALL nodes passed and all exports succeeded
    node_results: dict[str, NodeResult]
    elapsed_s: float
    dag_layers: list[list[str]]  # For display: layer -> [node_names]
    export_errors: dict[str, str] = field(default_factory=dict)
    warnings: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class Workspace:
    """A multi-node workspace backed by a single DuckDB database.

    Args:
        db_path: Path for the output database (created fresh), or
            ``":memory:"``.
        nodes: Node definitions forming a DAG.
        exports: Mapping of output_path -> fn(conn, path). Export functions
            run after all nodes pass.
        setup: Called with the connection before any node runs, e.g. to
            register scalar UDFs used by the SQL nodes.
        params: Run parameters recorded in ``_workspace_meta``.
    """

    db_path: Path | str
    nodes: list[Node] = field(default_factory=list)
    exports: dict[str, ExportFn] = field(default_factory=dict)
    setup: SetupFn | None = None
    params: dict[str, Any] | None = None

    def _validate_config(self) -> None:
        """Validate the workspace configuration before running."""
        errors = validate_graph(self.nodes)
        if errors:
            raise ValueError(
                "Graph validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            )

    def _connect(self) -> duckdb.DuckDBPyConnection:
        if str(self.db_path) == MEMORY_DB:
            return duckdb.connect(MEMORY_DB)
        db_path = Path(self.db_path)
        if db_path.exists():
            db_path.unlink()
        return duckdb.connect(str(db_path))

    # ------------------------------------------------------------------
    # Node execution
    # ------------------------------------------------------------------

    def _run_node(self, conn: duckdb.DuckDBPyConnection, node: Node) -> NodeResult:
        log.info("[%s] Starting (%s)", node.name, node.node_type())
        node_start = time.perf_counter()

        if node.is_source():
            result = run_source_node(conn, node)
        else:
            result = run_sql_node(conn, node)

        if result.success:
            errors = validate_node_complete(conn, node)
            if errors:
                result = NodeResult(
                    False,
                    "\n".join(f"- {e}" for e in errors),
                    row_count=result.row_count,
                )

        if result.success:
            n = materialize_node_outputs(conn, node)
            if n:
                log.debug("[%s] Materialized %d view(s)", node.name, n)

            total, msgs = node.validation_warnings(conn)
            if total:
                result.warnings = msgs
                log.warning("[%s] %d warning(s)", node.name, total)
                for m in msgs[:MAX_INLINE_MESSAGES]:
                    log.warning("  %s", m)
                if total > MAX_INLINE_MESSAGES:
                    log.warning("  ... and %d more", total - MAX_INLINE_MESSAGES)
        else:
            log.error("[%s] FAILED: %s", node.name, result.message)

        result.elapsed_s = time.perf_counter() - node_start
        self._persist_node(conn, node, result)
        return result

    @staticmethod
    def _persist_node(
        conn: duckdb.DuckDBPyConnection, node: Node, result: NodeResult
    ) -> None:
        node_meta: dict[str, Any] = {
            "node_type": node.node_type(),
            "depends_on": node.depends_on,
            "elapsed_s": round(result.elapsed_s, 3),
            "validation": "PASSED" if result.success else "FAILED",
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "warnings": result.warnings,
        }
        if result.row_count is not None:
            node_meta["row_count"] = result.row_count
        if node.output_columns:
            node_meta["output_columns"] = dict(node.output_columns)
        if not result.success:
            node_meta["error"] = result.message
        persist_node_meta(conn, node.name, node_meta)

    def _run_dag(
        self, conn: duckdb.DuckDBPyConnection, layers: list[list[Node]]
    ) -> tuple[dict[str, NodeResult], bool]:
        """Run nodes layer by layer, skipping dependents of failed nodes.

        Returns:
            (results dict, all_success bool)
        """
        results: dict[str, NodeResult] = {}
        failed: set[str] = set()
        blocked: list[str] = []

        for layer in layers:
            for node in layer:
                bad_deps = sorted(set(node.depends_on) & failed)
                if bad_deps:
                    failed.add(node.name)
                    blocked.append(node.name)
                    results[node.name] = NodeResult(
                        False, f"Blocked by failed dependencies: {', '.join(bad_deps)}"
                    )
                    continue
                result = self._run_node(conn, node)
                results[node.name] = result
                if not result.success:
                    failed.add(node.name)

        if blocked:
            log.warning("Skipped (blocked by failed deps): %s", ", ".join(blocked))

        return results, not failed

    # ------------------------------------------------------------------
    # Exports
    # ------------------------------------------------------------------

    def _run_exports(self, conn: duckdb.DuckDBPyConnection) -> dict[str, str]:
        """Run export functions. Returns dict of name -> error for failures."""
        errors: dict[str, str] = {}
        for output_path, export_fn in self.exports.items():
            try:
                export_fn(conn, Path(output_path))
                log.info("  %s: OK", output_path)
            except Exception as e:
                errors[output_path] = str(e)
                log.error("  %s: FAILED (%s)", output_path, e)
        return errors

    def _persist_exports(
        self,
        conn: duckdb.DuckDBPyConnection,
        attempted: bool,
        export_errors: dict[str, str],
    ) -> None:
        results: dict[str, dict[str, Any]] = {}
        for name in sorted(self.exports):
            if name in export_errors:
                results[name] = {"ok": False, "error": export_errors[name]}
            else:
                results[name] = {"ok": attempted, "error": None}
        exports_meta = {"attempted": attempted, "results": results}
        upsert_workspace_meta(
            conn, [("exports", json.dumps(exports_meta, sort_keys=True))]
        )

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(self, conn: duckdb.DuckDBPyConnection | None = None) -> WorkspaceResult:
        """Run the full workspace: resolve DAG, execute all nodes, export.

        With *conn*, nodes run on the caller's connection, which is left
        open. Otherwise the database at ``db_path`` is recreated and closed
        when the run ends.

        Raises ValueError if the node graph is invalid.
        """
        start_time = time.perf_counter()
        self._validate_config()

        layers = resolve_dag(self.nodes)
        dag_layer_names = [[n.name for n in layer] for layer in layers]

        owns_conn = conn is None
        if conn is None:
            conn = self._connect()
        try:
            init_infra(conn)
            if self.setup is not None:
                self.setup(conn)

            node_results, all_success = self._run_dag(conn, layers)

            source_row_counts = {
                n.name: node_results[n.name].row_count
                for n in self.nodes
                if n.is_source()
                and node_results[n.name].success
                and node_results[n.name].row_count is not None
            }
            persist_workspace_meta(
                conn,
                self.nodes,
                params=self.params,
                source_row_counts=source_row_counts or None,
            )

            export_errors: dict[str, str] = {}
            if all_success and self.exports:
                log.info("--- Exports (%d) ---", len(self.exports))
                export_errors = self._run_exports(conn)
            if self.exports:
                self._persist_exports(conn, all_success, export_errors)

            elapsed_s = time.perf_counter() - start_time
            status = "ALL PASSED" if all_success else "SOME FAILED"
            log.info("--- Workspace complete: %s (%.1fs) ---", status, elapsed_s)
            for name, result in node_results.items():
                log.info(
                    "  %s: %s (%s)",
                    name,
                    "PASS" if result.success else "FAIL",
                    result.message.splitlines()[0] if result.message else "",
                )

            return WorkspaceResult(
                success=all_success and not export_errors,
                node_results=node_results,
                elapsed_s=elapsed_s,
                dag_layers=dag_layer_names,
                export_errors=export_errors,
                warnings={
                    name: r.warnings for name, r in node_results.items() if r.warnings
                },
            )
        finally:
            if owns_conn:
                conn.close()
