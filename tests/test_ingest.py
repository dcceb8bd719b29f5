import datetime
from pathlib import Path

import polars as pl
import pytest
from openpyxl import Workbook

from tests.conftest import _tables
from lotrecon.executor import run_source_node
from lotrecon.ingest import (
    FileInput,
    coerce_to_dataframe,
    find_input_file,
    ingest_csv,
    ingest_excel,
    ingest_file,
    ingest_parquet,
    ingest_table,
    parse_file_path,
)
from lotrecon.pipeline import INPUT_SCHEMAS
from lotrecon.task import Node


class TestIngestion:
    """Tests for data ingestion: coerce_to_dataframe, ingest_table."""

    def test_coerce_dataframe(self):
        """DataFrame passes through unchanged."""
        df = pl.DataFrame({"a": [1, 2], "b": [3, 4]})
        result = coerce_to_dataframe(df)
        assert result.columns == ["a", "b"]
        assert len(result) == 2

    def test_coerce_list_of_dicts(self):
        data = [{"x": 1, "y": "a"}, {"x": 2, "y": "b"}]
        result = coerce_to_dataframe(data)
        assert result.columns == ["x", "y"]
        assert len(result) == 2

    def test_coerce_dict_of_lists(self):
        data = {"col1": [10, 20, 30], "col2": ["a", "b", "c"]}
        result = coerce_to_dataframe(data)
        assert result.columns == ["col1", "col2"]
        assert len(result) == 3

    def test_coerce_unsupported_type(self):
        with pytest.raises(TypeError, match="Unsupported"):
            coerce_to_dataframe("not a table")
        with pytest.raises(TypeError, match="Unsupported"):
            coerce_to_dataframe(42)

    def test_coerce_empty_with_schema(self):
        """Empty input keeps the declared columns and types."""
        result = coerce_to_dataframe([], schema=INPUT_SCHEMAS["ub_master"])
        assert result.columns == [
            "cust_no",
            "cust_sequence",
            "lot_no",
            "connect_date",
            "final_date",
        ]
        assert result.schema["final_date"] == pl.Date
        assert len(result) == 0

    def test_coerce_all_null_column_with_schema(self):
        """A column polars can only infer as Null takes the declared type."""
        data = [{"lot_no": "0005", "addr_2": None}]
        result = coerce_to_dataframe(data, schema=INPUT_SCHEMAS["lot"])
        assert result.schema["addr_2"] == pl.Utf8
        assert result.schema["lot_no"] == pl.Utf8

    def test_ingest_list_of_dicts(self, conn):
        data = [{"lot_no": "0005", "city": "MARINA"}, {"lot_no": "0007", "city": "SEASIDE"}]
        ingest_table(conn, data, "lot")
        rows = conn.execute("SELECT lot_no, city FROM lot ORDER BY lot_no").fetchall()
        assert rows == [("0005", "MARINA"), ("0007", "SEASIDE")]

    def test_ingest_preserves_types(self, conn):
        data = [
            {
                "cust_no": 42,
                "amount": 12.5,
                "service_code": "WC1",
                "tran_date": datetime.date(2010, 1, 15),
            }
        ]
        ingest_table(conn, data, "typed")
        row = conn.execute(
            "SELECT cust_no, amount, service_code, tran_date FROM typed"
        ).fetchone()
        assert row == (42, 12.5, "WC1", datetime.date(2010, 1, 15))

    def test_ingest_empty_list_with_schema(self, conn):
        ingest_table(conn, [], "ub_history", schema=INPUT_SCHEMAS["ub_history"])
        assert conn.execute("SELECT COUNT(*) FROM ub_history").fetchone()[0] == 0
        cols = [
            r[0]
            for r in conn.execute(
                "SELECT column_name FROM information_schema.columns "
                "WHERE table_name = 'ub_history' ORDER BY ordinal_position"
            ).fetchall()
        ]
        assert cols == ["transaction_id", "tran_type", "description", "tran_date"]

    def test_ingest_overwrites_existing(self, conn):
        ingest_table(conn, [{"v": 1}], "t")
        ingest_table(conn, [{"v": 10}, {"v": 20}], "t")
        assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 2

    def test_ingest_csv_file(self, conn, tmp_path: Path):
        df = pl.DataFrame({"cust_no": [1, 2], "service_code": ["WC1", "WC2"]})
        path = tmp_path / "ub_bill_detail.csv"
        df.write_csv(path)

        ingest_csv(conn, path, "csv_t")
        rows = conn.execute("SELECT cust_no, service_code FROM csv_t ORDER BY cust_no").fetchall()
        assert rows == [(1, "WC1"), (2, "WC2")]

    def test_ingest_parquet_file(self, conn, tmp_path: Path):
        df = pl.DataFrame({"id": [1, 2], "val": ["a", "b"]})
        path = tmp_path / "data.parquet"
        df.write_parquet(path)

        ingest_parquet(conn, path, "parquet_t")
        rows = conn.execute("SELECT id, val FROM parquet_t ORDER BY id").fetchall()
        assert rows == [(1, "a"), (2, "b")]

    def test_ingest_missing_file(self, conn, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            ingest_csv(conn, tmp_path / "nope.csv", "t")

    def test_ingest_excel_file(self, conn, tmp_path: Path):
        path = tmp_path / "lot.xlsx"
        wb = Workbook()
        ws = wb.active
        ws.title = "Sheet1"
        ws.append(["lot_no", "city"])
        ws.append(["0005", "MARINA"])
        ws2 = wb.create_sheet(title="Old")
        ws2.append(["lot_no", "city"])
        ws2.append(["0099", "SEASIDE"])
        wb.save(path)

        # Only the first sheet is read
        ingest_excel(conn, path, "lot")
        assert conn.execute("SELECT lot_no, city FROM lot").fetchall() == [
            ("0005", "MARINA")
        ]

    def test_ingest_file_unknown_format(self, conn, tmp_path: Path):
        with pytest.raises(ValueError, match="Unsupported file format"):
            ingest_file(conn, FileInput(path=tmp_path / "x.json", format="json"), "t")


class TestFilePaths:
    def test_parse_file_path(self, tmp_path: Path):
        file_input = parse_file_path(Path("data.csv"), base_dir=tmp_path)
        assert file_input.format == "csv"
        assert file_input.path == (tmp_path / "data.csv").resolve()

    def test_unsupported_extension(self, tmp_path: Path):
        with pytest.raises(ValueError, match="Unsupported"):
            parse_file_path(tmp_path / "data.json")
        with pytest.raises(ValueError, match="Unsupported"):
            parse_file_path(tmp_path / "data.xls")

    def test_find_input_file(self, tmp_path: Path):
        (tmp_path / "lot.parquet").write_bytes(b"")
        found = find_input_file(tmp_path, "lot")
        assert found is not None
        assert found.format == "parquet"
        assert find_input_file(tmp_path, "ub_master") is None

    def test_find_input_file_ambiguous(self, tmp_path: Path):
        (tmp_path / "lot.csv").write_text("lot_no\n1\n")
        (tmp_path / "lot.xlsx").write_bytes(b"")
        with pytest.raises(ValueError, match="Ambiguous"):
            find_input_file(tmp_path, "lot")


class TestSourceNodes:
    def test_source_node_from_rows(self, conn):
        node = Node(name="lot", source=[{"lot_no": "0005"}], columns=["lot_no"])
        result = run_source_node(conn, node)
        assert result.success is True
        assert result.row_count == 1
        assert "lot" in _tables(conn)

    def test_source_node_from_callable(self, conn):
        node = Node(name="lot", source=lambda: {"lot_no": ["1", "2"]})
        result = run_source_node(conn, node)
        assert result.success is True
        assert result.row_count == 2

    def test_source_node_callable_error(self, conn):
        def bad_loader():
            raise FileNotFoundError("lot.csv not found")

        result = run_source_node(conn, Node(name="broken", source=bad_loader))
        assert result.success is False
        assert "lot.csv not found" in result.message

    def test_source_node_from_file(self, conn, tmp_path: Path):
        path = tmp_path / "lot.csv"
        pl.DataFrame({"lot_no": ["A1"]}).write_csv(path)
        result = run_source_node(conn, Node(name="lot", source=parse_file_path(path)))
        assert result.success is True
        assert result.row_count == 1

    def test_source_node_empty_input(self, conn):
        node = Node(name="ub_master", source=[], schema=INPUT_SCHEMAS["ub_master"])
        result = run_source_node(conn, node)
        assert result.success is True
        assert result.row_count == 0
        assert node.validate_outputs(conn) == []
