"""Shared fixtures and helpers for the lotrecon test suite."""

import datetime
from pathlib import Path

import duckdb
import polars as pl
import pytest

from lotrecon.infra import init_infra
from lotrecon.rules import register_udfs
from lotrecon.task import Node


@pytest.fixture
def conn():
    """In-memory DuckDB connection with infra tables and rule UDFs."""
    c = duckdb.connect(":memory:")
    init_infra(c)
    register_udfs(c)
    yield c
    c.close()


def _make_node(**kwargs) -> Node:
    """Helper to create a Node with defaults."""
    defaults = {
        "name": "t",
        "sql": "SELECT 1",
    }
    defaults.update(kwargs)
    return Node(**defaults)


def _views(conn: duckdb.DuckDBPyConnection) -> set[str]:
    """Return the set of user-defined view names."""
    rows = conn.execute(
        "SELECT view_name FROM duckdb_views() WHERE internal = false"
    ).fetchall()
    return {r[0] for r in rows}


def _tables(conn: duckdb.DuckDBPyConnection) -> set[str]:
    """Return the set of user-defined table names."""
    rows = conn.execute(
        "SELECT table_name FROM duckdb_tables() WHERE internal = false"
    ).fetchall()
    return {r[0] for r in rows}


# ---------------------------------------------------------------------------
# Sample billing data
# ---------------------------------------------------------------------------


def d(text: str) -> datetime.date:
    return datetime.date.fromisoformat(text)


def bill(
    cust_no,
    service_code,
    amount,
    *,
    seq=1,
    tran_type="BILLING",
    tran_date="2010-01-15",
    code="FLAT",
    transaction_id=None,
) -> dict:
    return {
        "cust_no": cust_no,
        "cust_sequence": seq,
        "service_code": service_code,
        "tran_type": tran_type,
        "tran_date": d(tran_date),
        "code": code,
        "amount": amount,
        "transaction_id": transaction_id,
    }


def history(
    transaction_id,
    *,
    tran_type="PAYMENT",
    description="PAYMENT",
    tran_date="2010-02-01",
) -> dict:
    return {
        "transaction_id": transaction_id,
        "tran_type": tran_type,
        "description": description,
        "tran_date": d(tran_date),
    }


def master(cust_no, lot_no, *, seq=1, connect_date="2005-01-01", final_date=None) -> dict:
    return {
        "cust_no": cust_no,
        "cust_sequence": seq,
        "lot_no": lot_no,
        "connect_date": d(connect_date),
        "final_date": d(final_date) if final_date else None,
    }


def lot(lot_no, street_name="MAIN ST", street_number="100") -> dict:
    return {
        "lot_no": lot_no,
        "street_number": street_number,
        "street_directional": None,
        "street_name": street_name,
        "addr_2": None,
        "city": "MARINA",
        "state": "CA",
        "zip": "93933",
    }


def sample_sources() -> dict[str, list[dict]]:
    """Two lots, three accounts; payments, a conversion and a reversal.

    Lot 0005 (WC1): billed 100.00 by account 1, paid 100.00.
    Lot 0007 (WC1): billed 60.00 + 40.00 by accounts 2 and 3;
        account 2 paid 30.00 and a reversed 30.00; account 3 has a
        conversion credit of 10.00.
    """
    return {
        "ub_bill_detail": [
            bill(1, "WC1", 100.0),
            bill(1, "WC1", 100.0, tran_type="PAYMENT", transaction_id=11),
            bill(2, "WC1", 60.0),
            bill(2, "WC1", 30.0, tran_type="PAYMENT", transaction_id=21),
            bill(2, "WC1", 30.0, tran_type="PAYMENT", transaction_id=22),
            bill(3, "WC1", 40.0),
            bill(3, "WC1", 10.0, tran_type="CONVERT PMT", transaction_id=31),
        ],
        "ub_history": [
            history(11),
            history(21, description="PAYMENT - LOCKBOX"),
            history(22, description="REVERSE"),
            history(31, tran_type="CONVERT", description="CONVERTED PAYMENT"),
        ],
        "ub_master": [
            master(1, "0005", connect_date="2006-03-01"),
            master(2, "0007", connect_date="2007-01-01", final_date="2012-01-01"),
            master(3, "0007", connect_date="2006-06-01", final_date="2013-01-01"),
        ],
        "lot": [lot("0005"), lot("0007", street_name="OCEAN AVE")],
    }


def write_sample_csvs(directory: Path) -> Path:
    """Write sample_sources() as ``{relation}.csv`` files into *directory*."""
    directory.mkdir(parents=True, exist_ok=True)
    for name, rows in sample_sources().items():
        pl.DataFrame(rows, infer_schema_length=None).write_csv(directory / f"{name}.csv")
    return directory
