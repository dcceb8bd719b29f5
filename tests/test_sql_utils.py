"""Tests for lotrecon/sql_utils.py — SQL parsing, DDL extraction, column queries."""

import pytest

from lotrecon.pipeline import BILLED_SQL, _report_sql
from lotrecon.sql_utils import (
    DdlTarget,
    SqlParseError,
    extract_ddl_target,
    get_column_names,
    get_column_schema,
    parse_one_statement,
    split_sql_statements,
)


class TestSplitSqlStatements:
    def test_single_statement(self):
        assert split_sql_statements("SELECT 1") == ["SELECT 1"]

    def test_multiple_statements(self):
        stmts = split_sql_statements("SELECT 1; SELECT 2;")
        assert len(stmts) == 2

    def test_empty_and_none(self):
        assert split_sql_statements("") == []
        assert split_sql_statements(None) == []
        assert split_sql_statements("   \n\t  ") == []

    def test_unparseable_returns_as_single(self):
        """Garbage SQL is returned whole so execution reports the error."""
        result = split_sql_statements("THIS IS NOT SQL AT ALL }{}{")
        assert len(result) == 1

    def test_report_sql_is_one_statement(self):
        # CTE and UDF calls are parsed without binding
        assert len(split_sql_statements(_report_sql(include_status=True))) == 1


class TestParseOneStatement:
    def test_valid_create(self):
        parsed = parse_one_statement(BILLED_SQL)
        assert parsed.sql.upper().startswith("CREATE OR REPLACE VIEW BILLED_ACCTS")

    def test_empty_raises(self):
        with pytest.raises(SqlParseError, match="Empty"):
            parse_one_statement("")
        with pytest.raises(SqlParseError, match="Empty"):
            parse_one_statement(None)

    def test_multiple_statements_raises(self):
        with pytest.raises(SqlParseError, match="one statement"):
            parse_one_statement("SELECT 1; SELECT 2")

    def test_parse_error(self):
        with pytest.raises(SqlParseError, match="parse error"):
            parse_one_statement("CREATE VIEW v AS SELEC 1")


class TestExtractDdlTarget:
    def test_create_view(self):
        t = extract_ddl_target("CREATE VIEW acct_lots AS SELECT 1")
        assert t == DdlTarget(action="create", kind="view", name="acct_lots")

    def test_create_or_replace_view(self):
        t = extract_ddl_target("CREATE OR REPLACE VIEW dates_by_lot AS SELECT 1")
        assert t == DdlTarget(action="create", kind="view", name="dates_by_lot")

    def test_create_temp_view(self):
        t = extract_ddl_target("CREATE TEMP VIEW tmp AS SELECT 1")
        assert t == DdlTarget(action="create", kind="view", name="tmp")

    def test_create_view_if_not_exists(self):
        t = extract_ddl_target("CREATE VIEW IF NOT EXISTS v AS SELECT 1")
        assert t == DdlTarget(action="create", kind="view", name="v")

    def test_create_view_quoted(self):
        t = extract_ddl_target('CREATE OR REPLACE VIEW "report__validation_unmapped" AS\nSELECT 1')
        assert t is not None
        assert t.name == "report__validation_unmapped"

    def test_drop_view_if_exists(self):
        t = extract_ddl_target("DROP VIEW IF EXISTS v")
        assert t == DdlTarget(action="drop", kind="view", name="v")

    def test_create_macro(self):
        t = extract_ddl_target("CREATE MACRO billed_norm(x) AS upper(x)")
        assert t == DdlTarget(action="create", kind="macro", name="billed_norm")

    def test_drop_macro(self):
        t = extract_ddl_target("DROP MACRO my_fn")
        assert t == DdlTarget(action="drop", kind="macro", name="my_fn")

    @pytest.mark.parametrize(
        "sql",
        ["SELECT 1", "CREATE TABLE t (id INT)", "INSERT INTO t VALUES (1)", None],
    )
    def test_other_statements_return_none(self, sql):
        assert extract_ddl_target(sql) is None


class TestGetColumnNames:
    def test_returns_column_set(self, conn):
        conn.execute("CREATE TABLE t (lot_no VARCHAR, city VARCHAR, zip VARCHAR)")
        assert get_column_names(conn, "t") == {"lot_no", "city", "zip"}

    def test_view_columns(self, conn):
        conn.execute("CREATE VIEW v AS SELECT 1 AS a, 2 AS b")
        assert get_column_names(conn, "v") == {"a", "b"}

    def test_nonexistent_table(self, conn):
        assert get_column_names(conn, "nonexistent") == set()


class TestGetColumnSchema:
    def test_returns_ordered_columns_with_types(self, conn):
        conn.execute("CREATE TABLE t (amount DECIMAL(18, 2), tran_date DATE)")
        schema = get_column_schema(conn, "t")
        assert [s[0] for s in schema] == ["amount", "tran_date"]
        assert schema[0][1].startswith("DECIMAL")
        assert schema[1][1] == "DATE"

    def test_nonexistent_table(self, conn):
        assert get_column_schema(conn, "nonexistent") == []
