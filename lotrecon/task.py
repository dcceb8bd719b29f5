"""Node definition and DAG resolution for reconciliation workspaces.

A Node is one step of the reconciliation. It either ingests a relation
(source node) or runs deterministic SQL that creates ``{name}_*`` views
(sql node). Nodes form a DAG through ``depends_on``. resolve_deps() builds
the raw dependency graph; resolve_dag() produces topo-sorted layers used
for execution order and display.

Example:

    nodes = [
        Node(name="ub_master", source="data/ub_master.csv",
             columns=["cust_no", "cust_sequence", "lot_no"]),
        Node(
            name="acct",
            depends_on=["ub_master"],
            sql="CREATE OR REPLACE VIEW acct_lots AS "
                "SELECT DISTINCT cust_no, cust_sequence, lot_no FROM ub_master",
            output_columns={"acct_lots": ["cust_no", "cust_sequence", "lot_no"]},
        ),
    ]

    layers = resolve_dag(nodes)
    # layers[0] = [ub_master]
    # layers[1] = [acct]
"""

import re
from dataclasses import dataclass, field
from typing import Any

import duckdb

from .catalog import quote_ident
from .sql_utils import get_column_names, split_sql_statements

_VALIDATION_VIEW_REQUIRED_COLS = ["status", "message"]
_VALIDATION_STATUS_ALLOWED = {"pass", "warn", "fail"}
MAX_INLINE_MESSAGES = 20  # Cap messages shown inline in validation/warning output

_NODE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def validation_view_prefix(node_name: str) -> str:
    return f"{node_name}__validation"


def is_validation_view_for_node(view_name: str, node_name: str) -> bool:
    """Return True if view_name is a validation view for node_name.

    Convention: '{node_name}__validation' and '{node_name}__validation_*'
    """
    prefix = validation_view_prefix(node_name)
    return view_name == prefix or view_name.startswith(prefix + "_")


def validate_node_name(name: str) -> str | None:
    """Return an error message if *name* is not a usable node name."""
    if not _NODE_NAME_RE.match(name):
        return (
            f"Node name '{name}' must start with a letter and contain only "
            "letters, digits and underscores."
        )
    if "__" in name:
        return f"Node name '{name}' must not contain '__'."
    return None


def _relation_names(conn: duckdb.DuckDBPyConnection) -> set[str]:
    rows = conn.execute(
        "SELECT view_name FROM duckdb_views() WHERE internal = false "
        "UNION ALL "
        "SELECT table_name FROM duckdb_tables() WHERE internal = false"
    ).fetchall()
    return {r[0] for r in rows}


@dataclass
class Node:
    """A single step in a reconciliation workspace.

    Attributes:
        name: Unique identifier. Source nodes produce a table with this
            name; sql nodes may only create views prefixed ``{name}_``.
        depends_on: Names of nodes that must finish before this one runs.
        source: Data for a source node: a polars DataFrame, ``list[dict]``,
            ``dict[str, list]``, a :class:`~lotrecon.ingest.FileInput`, or a
            zero-argument callable returning one of those.
        columns: Required columns of a source node's table.
        schema: Polars dtypes of the source columns, used to type empty
            inputs and all-null columns.
        sql: Deterministic ``CREATE VIEW`` statements for a sql node.
        output_columns: Maps view_name -> required column names. Validation
            fails if a view is missing or lacks a declared column.
        validate: Maps check_name -> SELECT returning ``status``/``message``
            rows. Each becomes the view ``{name}__validation_{check_name}``;
            any ``fail`` row fails the node, ``warn`` rows are reported.
    """

    name: str
    depends_on: list[str] = field(default_factory=list)
    source: Any = None
    columns: list[str] = field(default_factory=list)
    schema: dict[str, Any] = field(default_factory=dict)
    sql: str = ""
    output_columns: dict[str, list[str]] = field(default_factory=dict)
    validate: dict[str, str] = field(default_factory=dict)

    def is_source(self) -> bool:
        return self.source is not None

    def node_type(self) -> str:
        """Return 'source' or 'sql'."""
        return "source" if self.is_source() else "sql"

    def sql_statements(self) -> list[str]:
        """Return the individual SQL statements of a sql node."""
        return split_sql_statements(self.sql)

    def has_validation(self) -> bool:
        return bool(self.validate)

    def validation_queries(self) -> dict[str, str]:
        return dict(self.validate)

    def validation_view_names(self) -> list[str]:
        base = validation_view_prefix(self.name)
        return sorted(f"{base}_{k}" for k in self.validate)

    # ------------------------------------------------------------------
    # Output validation
    # ------------------------------------------------------------------

    def validate_outputs(self, conn: duckdb.DuckDBPyConnection) -> list[str]:
        """Check declared outputs. Returns error messages (empty = pass).

        Checks run in order, short-circuiting on first failure:
        1. Source nodes: the table exists and has the required columns.
        2. All declared output views exist (as views or materialized tables).
        3. Output views have the declared columns.
        """
        existing = _relation_names(conn)

        if self.is_source():
            if self.name not in existing:
                return [f"Source table '{self.name}' was not created."]
            if self.columns:
                actual = get_column_names(conn, self.name)
                missing = [c for c in self.columns if c not in actual]
                if missing:
                    return [
                        f"Source '{self.name}' is missing required column(s): "
                        f"{', '.join(missing)}. "
                        f"Actual columns: {', '.join(sorted(actual))}"
                    ]
            return []

        missing_views = [o for o in self.output_columns if o not in existing]
        if missing_views:
            return [
                f"Required output view '{o}' was not created." for o in missing_views
            ]

        for view_name, required_cols in self.output_columns.items():
            try:
                actual = get_column_names(conn, view_name)
            except duckdb.Error as e:
                return [f"Schema check error for '{view_name}': {e}"]
            missing_cols = [c for c in required_cols if c not in actual]
            if missing_cols:
                return [
                    f"View '{view_name}' is missing required column(s): "
                    f"{', '.join(missing_cols)}. "
                    f"Actual columns: {', '.join(sorted(actual))}"
                ]

        return []

    def validate_validation_views(self, conn: duckdb.DuckDBPyConnection) -> list[str]:
        """Enforce the node's validation views.

        Each validation view must have columns:
        - status: pass|warn|fail (case-insensitive)
        - message: human-readable string

        Any row with lower(status)='fail' fails the node.
        """
        errors: list[str] = []
        for view_name in self.validation_view_names():
            view_errors, fatal = self._validate_one_validation_view(conn, view_name)
            if fatal and view_errors:
                return view_errors
            errors.extend(view_errors)
        return errors

    def validation_warnings(
        self, conn: duckdb.DuckDBPyConnection, limit: int | None = None
    ) -> tuple[int, list[str]]:
        """Return ``(total_count, messages)`` for warn rows in validation views.

        Pass limit=None for no truncation of the message list.
        """
        total = 0
        msgs: list[str] = []
        for view_name in self.validation_view_names():
            try:
                rows = conn.execute(
                    f"SELECT message FROM {quote_ident(view_name)} "
                    "WHERE lower(status) = 'warn'"
                ).fetchall()
            except duckdb.Error:
                continue
            total += len(rows)
            msgs.extend(str(r[0]) for r in rows)
        if limit is not None:
            msgs = msgs[: max(1, limit)]
        return total, msgs

    def _validate_one_validation_view(
        self, conn: duckdb.DuckDBPyConnection, view_name: str
    ) -> tuple[list[str], bool]:
        """Validate a single validation view.

        Returns (errors, fatal).
        - fatal=True indicates a schema/query/contract problem that should stop immediately.
        """
        try:
            cols = get_column_names(conn, view_name)
        except duckdb.Error as e:
            return (
                [f"Validation view schema check error for '{view_name}': {e}"],
                True,
            )
        if not cols:
            return ([f"Validation view '{view_name}' was not created."], True)

        actual = {c.lower() for c in cols}
        missing = [c for c in _VALIDATION_VIEW_REQUIRED_COLS if c not in actual]
        if missing:
            return (
                [
                    f"Validation view '{view_name}' is missing required column(s): "
                    f"{', '.join(missing)}. Actual columns: {', '.join(sorted(cols))}"
                ],
                True,
            )

        try:
            bad = conn.execute(
                f"SELECT DISTINCT lower(status) AS status FROM {quote_ident(view_name)} "
                "WHERE status IS NOT NULL AND lower(status) NOT IN ('pass','warn','fail')"
            ).fetchall()
        except duckdb.Error as e:
            return ([f"Validation view query error for '{view_name}': {e}"], True)

        if bad:
            bad_vals = ", ".join(sorted({str(r[0]) for r in bad}))
            allowed = ", ".join(sorted(_VALIDATION_STATUS_ALLOWED))
            return (
                [
                    f"Validation view '{view_name}' has invalid status value(s): {bad_vals}. "
                    f"Allowed: {allowed}"
                ],
                True,
            )

        try:
            rows = conn.execute(
                f"SELECT message FROM {quote_ident(view_name)} "
                "WHERE lower(status) = 'fail'"
            ).fetchall()
        except duckdb.Error as e:
            return ([f"Validation view query error for '{view_name}': {e}"], True)

        if rows:
            msgs = [str(r[0]) for r in rows]
            count = len(msgs)
            sample = msgs[:MAX_INLINE_MESSAGES]
            detail = "\n".join(f"  {m}" for m in sample)
            if count > MAX_INLINE_MESSAGES:
                detail += f"\n  ... and {count - MAX_INLINE_MESSAGES} more"
            return ([f"Fail rows in '{view_name}' ({count}):\n{detail}"], False)

        return ([], False)


def resolve_deps(nodes: list[Node]) -> dict[str, set[str]]:
    """Build the dependency graph: node_name -> set of node names it depends on.

    Dependencies on unknown nodes are ignored here; validate_graph() reports them.
    """
    names = {n.name for n in nodes}
    return {
        n.name: {d for d in n.depends_on if d in names and d != n.name} for n in nodes
    }


def resolve_dag(nodes: list[Node]) -> list[list[Node]]:
    """Topologically sort nodes into execution layers.

    Nodes in the same layer have no dependencies on each other. Layer 0 has
    no dependencies, layer 1 depends only on layer 0, etc. Within a layer
    nodes are ordered by name so execution order is reproducible.

    Raises ValueError if a cycle is detected.
    """
    node_by_name = {n.name: n for n in nodes}
    deps = {name: set(d) for name, d in resolve_deps(nodes).items()}

    # Kahn's algorithm producing layers
    in_degree = {name: len(d) for name, d in deps.items()}
    layers: list[list[Node]] = []
    remaining = set(node_by_name)

    while remaining:
        layer_names = sorted(n for n in remaining if in_degree[n] == 0)

        if not layer_names:
            cycle_members = sorted(remaining)
            raise ValueError(f"Dependency cycle detected among nodes: {cycle_members}")

        layers.append([node_by_name[n] for n in layer_names])

        for name in layer_names:
            remaining.remove(name)
            for other in remaining:
                if name in deps[other]:
                    deps[other].remove(name)
                    in_degree[other] -= 1

    return layers


def validate_graph(nodes: list[Node]) -> list[str]:
    """Validate node names and dependencies. Returns error messages (empty = valid)."""
    errors: list[str] = []
    seen: set[str] = set()
    for n in nodes:
        name_err = validate_node_name(n.name)
        if name_err:
            errors.append(name_err)
        if n.name in seen:
            errors.append(f"Duplicate node name: '{n.name}'.")
        seen.add(n.name)
        if n.is_source() and n.sql:
            errors.append(f"Node '{n.name}' has both source and sql; only one allowed.")
        if not n.is_source() and not n.sql.strip():
            errors.append(f"Node '{n.name}' must have either source or sql.")

    for n in nodes:
        for dep in n.depends_on:
            if dep not in seen:
                errors.append(
                    f"Node '{n.name}' depends on '{dep}' which is not a node in the workspace."
                )

    if not errors:
        try:
            resolve_dag(nodes)
        except ValueError as e:
            errors.append(str(e))

    return errors
