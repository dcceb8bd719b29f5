"""SQL parsing helpers built on DuckDB's own parser."""

import re
from dataclasses import dataclass
from typing import Literal

import duckdb

_parser_conn: duckdb.DuckDBPyConnection | None = None


def get_parser_conn() -> duckdb.DuckDBPyConnection:
    """Lazy singleton in-memory connection used only for parsing."""
    global _parser_conn
    if _parser_conn is None:
        _parser_conn = duckdb.connect(":memory:")
    return _parser_conn


def split_sql_statements(sql_text: str | None) -> list[str]:
    """Split SQL text into individual statements."""
    sql_text = (sql_text or "").strip()
    if not sql_text:
        return []
    try:
        statements = get_parser_conn().extract_statements(sql_text)
    except duckdb.Error:
        # Unparseable text is returned whole so execution reports the error
        return [sql_text]
    return [s.query.strip() for s in statements if s.query.strip()]


class SqlParseError(ValueError):
    """Raised when DuckDB cannot parse SQL text."""


@dataclass(frozen=True)
class ParsedStatement:
    sql: str
    stmt_type: object


def parse_one_statement(sql_text: str | None) -> ParsedStatement:
    """Parse *sql_text* into exactly one non-empty statement."""
    sql_text = (sql_text or "").strip()
    if not sql_text:
        raise SqlParseError("Empty query")

    try:
        statements = get_parser_conn().extract_statements(sql_text)
    except duckdb.Error as e:
        raise SqlParseError(f"SQL parse error: {e}") from e

    if not statements:
        raise SqlParseError("Empty query")
    if len(statements) > 1:
        raise SqlParseError("Only one statement allowed at a time")

    stmt = statements[0]
    return ParsedStatement(sql=stmt.query.strip(), stmt_type=stmt.type)


@dataclass(frozen=True)
class DdlTarget:
    """Target of a CREATE/DROP VIEW|MACRO statement."""

    action: Literal["create", "drop"]
    kind: Literal["view", "macro"]
    name: str | None


# Only simple identifiers (\w+), optionally double-quoted, are extracted.
DDL_CREATE_TARGET_RE = re.compile(
    r"^\s*CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?"
    r"(?P<kind>VIEW|MACRO)\s+"
    r"(?:IF\s+NOT\s+EXISTS\s+)?"
    r'"?(?P<name>\w+)"?(?=\s|\(|$)',
    re.IGNORECASE,
)

DDL_DROP_TARGET_RE = re.compile(
    r"^\s*DROP\s+"
    r"(?P<kind>VIEW|MACRO)\s+"
    r"(?:IF\s+EXISTS\s+)?"
    r'"?(?P<name>\w+)"?(?=\s|;|$)',
    re.IGNORECASE,
)


def extract_ddl_target(sql: str | None) -> DdlTarget | None:
    """Extract the target of a CREATE/DROP VIEW|MACRO statement.

    Returns None for any other statement.
    """
    for action, pattern in (("create", DDL_CREATE_TARGET_RE), ("drop", DDL_DROP_TARGET_RE)):
        m = pattern.match(sql or "")
        if m:
            kind = "view" if m.group("kind").upper() == "VIEW" else "macro"
            return DdlTarget(action=action, kind=kind, name=m.group("name"))
    return None


# Regex strings embedded in the _view_definitions lineage view.
VIEW_TRACE_CREATE_RE = r"(?i)^\s*CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?VIEW\s+(?:IF\s+NOT\s+EXISTS\s+)?"
VIEW_TRACE_DROP_RE = r"(?i)^\s*DROP\s+VIEW\s+(?:IF\s+EXISTS\s+)?"
VIEW_TRACE_NAME_EXTRACT_RE = r'(?i)VIEW\s+(?:IF\s+(?:NOT\s+)?EXISTS\s+)?"?(\w+)"?'


def get_column_names(conn: duckdb.DuckDBPyConnection, table_name: str) -> set[str]:
    """Column names of a table or view (empty if it does not exist)."""
    rows = conn.execute(
        "SELECT column_name FROM information_schema.columns WHERE table_name = ?",
        [table_name],
    ).fetchall()
    return {row[0] for row in rows}


def get_column_schema(
    conn: duckdb.DuckDBPyConnection, table_name: str
) -> list[tuple[str, str]]:
    """(column_name, data_type) pairs of a table or view, in column order."""
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
