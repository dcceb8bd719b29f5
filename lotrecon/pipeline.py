"""Lot-level billing/payment reconciliation as a workspace of nodes.

Source nodes ingest the run parameters and the four billing relations;
SQL nodes build the intermediate aggregates and the final report:

    params, ub_bill_detail ──► billed   (billed_accts)
    billed, ub_history ──────► payments (payments_accts)
    ub_master ───────────────► acct     (acct_lots)
    ub_master ───────────────► dates    (dates_by_lot)
    all of the above + lot ──► report   (report_lots)

Rule functions from :mod:`lotrecon.rules` are available to the SQL as
``recon_*`` UDFs; register them with ``register_udfs`` before running.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import duckdb
import polars as pl

from .config import ReconConfig
from .ingest import FileInput, find_input_file
from .rules import register_udfs
from .task import Node
from .workspace import MEMORY_DB, Workspace

log = logging.getLogger(__name__)


class ReconcileError(RuntimeError):
    """Raised when an in-memory reconciliation run does not complete."""


INPUT_COLUMNS: dict[str, list[str]] = {
    "ub_bill_detail": [
        "cust_no",
        "cust_sequence",
        "service_code",
        "tran_type",
        "tran_date",
        "code",
        "amount",
        "transaction_id",
    ],
    "ub_history": ["transaction_id", "tran_type", "description", "tran_date"],
    "ub_master": ["cust_no", "cust_sequence", "lot_no", "connect_date", "final_date"],
    "lot": [
        "lot_no",
        "street_number",
        "street_directional",
        "street_name",
        "addr_2",
        "city",
        "state",
        "zip",
    ],
}

INPUT_SCHEMAS: dict[str, dict[str, pl.DataType]] = {
    "ub_bill_detail": {
        "cust_no": pl.Int64,
        "cust_sequence": pl.Int64,
        "service_code": pl.Utf8,
        "tran_type": pl.Utf8,
        "tran_date": pl.Date,
        "code": pl.Utf8,
        "amount": pl.Float64,
        "transaction_id": pl.Int64,
    },
    "ub_history": {
        "transaction_id": pl.Int64,
        "tran_type": pl.Utf8,
        "description": pl.Utf8,
        "tran_date": pl.Date,
    },
    "ub_master": {
        "cust_no": pl.Int64,
        "cust_sequence": pl.Int64,
        "lot_no": pl.Utf8,
        "connect_date": pl.Date,
        "final_date": pl.Date,
    },
    "lot": {
        "lot_no": pl.Utf8,
        "street_number": pl.Utf8,
        "street_directional": pl.Utf8,
        "street_name": pl.Utf8,
        "addr_2": pl.Utf8,
        "city": pl.Utf8,
        "state": pl.Utf8,
        "zip": pl.Utf8,
    },
}

ADDRESS_COLUMNS = INPUT_COLUMNS["lot"][1:]
STATUS_COLUMNS = ["total_billed", "difference", "status"]


def report_columns(include_status: bool = False) -> list[str]:
    """Columns of ``report_lots`` in output order."""
    cols = ["lot_no", "service_code", "total_payment"]
    if include_status:
        cols += STATUS_COLUMNS
    return cols + ADDRESS_COLUMNS + ["connect_date", "final_date"]


REPORT_ORDER_BY = ["lot_no", "service_code", *ADDRESS_COLUMNS, "connect_date", "final_date"]

REPORT_COLUMN_LABELS = {
    "total_payment": "total_amount (payment)",
    "total_billed": "total_amount (billed)",
    "difference": "difference (billed - payment)",
    "status": "STATUS",
}


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

# Literal comparisons ignore case and trailing blanks, like the billing
# database's collation does.

BILLED_SQL = """
CREATE OR REPLACE VIEW billed_accts AS
SELECT
    bd.cust_no,
    bd.cust_sequence,
    bd.service_code,
    SUM(CAST(bd.amount AS DECIMAL(18, 4))) AS total_billed
FROM ub_bill_detail AS bd
CROSS JOIN params AS p
WHERE CAST(bd.tran_date AS DATE) BETWEEN p.start_date AND p.end_date
  AND upper(rtrim(bd.tran_type)) IN ('BILLING', 'CONVERT')
  AND starts_with(upper(bd.service_code), upper(p.service_prefix))
  AND upper(rtrim(bd.code)) = upper(rtrim(p.billing_code))
GROUP BY bd.cust_no, bd.cust_sequence, bd.service_code
"""

PAYMENTS_SQL = """
CREATE OR REPLACE VIEW payments_accts AS
SELECT
    m.cust_no,
    m.cust_sequence,
    m.service_code,
    SUM(
        CASE WHEN recon_is_conversion(m.tran_type)
             THEN -CAST(m.amount AS DECIMAL(18, 4))
             ELSE CAST(m.amount AS DECIMAL(18, 4))
        END
    ) AS total_payment
FROM ub_bill_detail AS m
CROSS JOIN params AS p
INNER JOIN ub_history AS h
    ON h.transaction_id = m.transaction_id
   AND recon_counts_as_payment(h.tran_type, h.description)
   AND CAST(h.tran_date AS DATE) BETWEEN p.start_date AND p.end_date
INNER JOIN billed_accts AS ba
    ON ba.cust_no = m.cust_no
   AND ba.cust_sequence = m.cust_sequence
   AND ba.service_code = m.service_code
WHERE starts_with(upper(m.service_code), upper(p.service_prefix))
GROUP BY m.cust_no, m.cust_sequence, m.service_code
"""

ACCT_SQL = """
CREATE OR REPLACE VIEW acct_lots AS
SELECT DISTINCT cust_no, cust_sequence, lot_no
FROM ub_master
"""

DATES_SQL = """
CREATE OR REPLACE VIEW dates_by_lot AS
SELECT
    lot_no,
    MIN(CAST(connect_date AS DATE)) AS connect_date,
    recon_lot_final_date(list(CAST(final_date AS DATE))) AS final_date
FROM ub_master
GROUP BY lot_no
"""

_ADDRESS_SELECT = ",\n        ".join(f"lt.{c}" for c in ADDRESS_COLUMNS)
_ADDRESS_OUT = ",\n    ".join(f"t.{c}" for c in ADDRESS_COLUMNS)


def _report_sql(include_status: bool) -> str:
    status_cols = ""
    if include_status:
        status_cols = """
    CAST(t.total_billed AS DECIMAL(18, 2)) AS total_billed,
    CAST(t.total_billed - t.total_payment AS DECIMAL(18, 2)) AS difference,
    recon_payment_status(
        CAST(t.total_billed AS DECIMAL(38, 4)),
        CAST(t.total_payment AS DECIMAL(38, 4)),
        CAST(p.epsilon AS DECIMAL(38, 4))
    ) AS status,"""
    order_by = ", ".join(f"t.{c}" for c in REPORT_ORDER_BY)
    return f"""
CREATE OR REPLACE VIEW report_lots AS
WITH totals AS (
    SELECT
        lz.lot_no,
        ba.service_code,
        SUM(COALESCE(pa.total_payment, CAST(0 AS DECIMAL(38, 4)))) AS total_payment,
        SUM(ba.total_billed) AS total_billed,
        {_ADDRESS_SELECT},
        d.connect_date,
        d.final_date
    FROM billed_accts AS ba
    INNER JOIN acct_lots AS lz
        ON lz.cust_no = ba.cust_no
       AND lz.cust_sequence = ba.cust_sequence
    LEFT JOIN payments_accts AS pa
        ON pa.cust_no = ba.cust_no
       AND pa.cust_sequence = ba.cust_sequence
       AND pa.service_code = ba.service_code
    INNER JOIN dates_by_lot AS d
        ON d.lot_no = lz.lot_no
    INNER JOIN lot AS lt
        ON lt.lot_no = lz.lot_no
    GROUP BY
        lz.lot_no,
        ba.service_code,
        {_ADDRESS_SELECT},
        d.connect_date,
        d.final_date
)
SELECT
    t.lot_no,
    t.service_code,
    CAST(t.total_payment AS DECIMAL(18, 2)) AS total_payment,{status_cols}
    {_ADDRESS_OUT},
    t.connect_date,
    t.final_date
FROM totals AS t
CROSS JOIN params AS p
ORDER BY {order_by}
"""


ACCT_VALIDATE = {
    "multi_lot": """
SELECT
    'warn' AS status,
    format('Account {}/{} maps to {} lots; its report rows fan out',
           cust_no, cust_sequence, COUNT(DISTINCT lot_no)) AS message
FROM acct_lots
GROUP BY cust_no, cust_sequence
HAVING COUNT(DISTINCT lot_no) > 1
ORDER BY cust_no, cust_sequence
""",
}

REPORT_VALIDATE = {
    "unmapped": """
SELECT
    'warn' AS status,
    format('Billed account {}/{} service {} has no lot mapping; excluded from the report',
           ba.cust_no, ba.cust_sequence, ba.service_code) AS message
FROM billed_accts AS ba
WHERE NOT EXISTS (
    SELECT 1 FROM acct_lots AS lz
    WHERE lz.cust_no = ba.cust_no AND lz.cust_sequence = ba.cust_sequence
)
ORDER BY ba.cust_no, ba.cust_sequence, ba.service_code
""",
    "missing_address": """
SELECT DISTINCT
    'warn' AS status,
    format('Lot {} is billed but has no address record; excluded from the report',
           lz.lot_no) AS message
FROM billed_accts AS ba
INNER JOIN acct_lots AS lz
    ON lz.cust_no = ba.cust_no
   AND lz.cust_sequence = ba.cust_sequence
WHERE NOT EXISTS (SELECT 1 FROM lot AS lt WHERE lt.lot_no = lz.lot_no)
ORDER BY message
""",
    "duplicate_address": """
SELECT
    'warn' AS status,
    format('Lot {} has {} address records; its report rows are repeated per address',
           lot_no, COUNT(*)) AS message
FROM lot
WHERE lot_no IN (SELECT lot_no FROM report_lots)
GROUP BY lot_no
HAVING COUNT(*) > 1
ORDER BY lot_no
""",
}


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


def build_nodes(
    sources: Mapping[str, Any], config: ReconConfig | None = None
) -> list[Node]:
    """Build the reconciliation nodes for *sources*.

    *sources* maps each input relation (``ub_bill_detail``, ``ub_history``,
    ``ub_master``, ``lot``) to anything a source node accepts: a polars
    DataFrame, ``list[dict]``, ``dict[str, list]``, a FileInput, or a
    callable returning one of those.

    Raises ValueError for missing or unknown relations.
    """
    config = config or ReconConfig()
    missing = sorted(set(INPUT_COLUMNS) - set(sources))
    unknown = sorted(set(sources) - set(INPUT_COLUMNS))
    if missing or unknown:
        parts = []
        if missing:
            parts.append(f"missing input(s): {', '.join(missing)}")
        if unknown:
            parts.append(f"unknown input(s): {', '.join(unknown)}")
        raise ValueError("; ".join(parts))

    params_row = config.to_row()
    nodes = [
        Node(name="params", source=[params_row], columns=list(params_row)),
    ]
    for relation in sorted(INPUT_COLUMNS):
        nodes.append(
            Node(
                name=relation,
                source=sources[relation],
                columns=INPUT_COLUMNS[relation],
                schema=INPUT_SCHEMAS[relation],
            )
        )

    nodes += [
        Node(
            name="billed",
            depends_on=["params", "ub_bill_detail"],
            sql=BILLED_SQL,
            output_columns={
                "billed_accts": [
                    "cust_no",
                    "cust_sequence",
                    "service_code",
                    "total_billed",
                ]
            },
        ),
        Node(
            name="payments",
            depends_on=["billed", "params", "ub_bill_detail", "ub_history"],
            sql=PAYMENTS_SQL,
            output_columns={
                "payments_accts": [
                    "cust_no",
                    "cust_sequence",
                    "service_code",
                    "total_payment",
                ]
            },
        ),
        Node(
            name="acct",
            depends_on=["ub_master"],
            sql=ACCT_SQL,
            output_columns={"acct_lots": ["cust_no", "cust_sequence", "lot_no"]},
            validate=ACCT_VALIDATE,
        ),
        Node(
            name="dates",
            depends_on=["ub_master"],
            sql=DATES_SQL,
            output_columns={"dates_by_lot": ["lot_no", "connect_date", "final_date"]},
        ),
        Node(
            name="report",
            depends_on=["acct", "billed", "dates", "lot", "params", "payments"],
            sql=_report_sql(config.include_status),
            output_columns={"report_lots": report_columns(config.include_status)},
            validate=REPORT_VALIDATE,
        ),
    ]
    return nodes


def sources_from_dir(directory: Path | str) -> dict[str, FileInput]:
    """Find one ``{relation}.{csv,parquet,xlsx}`` file per input relation.

    Raises FileNotFoundError if a relation has no file and ValueError if
    one has several.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Input directory not found: {directory}")
    found: dict[str, FileInput] = {}
    missing: list[str] = []
    for relation in sorted(INPUT_COLUMNS):
        file_input = find_input_file(directory, relation)
        if file_input is None:
            missing.append(relation)
        else:
            found[relation] = file_input
    if missing:
        raise FileNotFoundError(
            f"No input file for {', '.join(missing)} in {directory} "
            "(expected <relation>.csv, .parquet or .xlsx)"
        )
    return found


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


def read_report(conn: duckdb.DuckDBPyConnection) -> pl.DataFrame:
    """Read ``report_lots`` in report order."""
    order_by = ", ".join(REPORT_ORDER_BY)
    return conn.execute(f"SELECT * FROM report_lots ORDER BY {order_by}").pl()


def reconcile(
    sources: Mapping[str, Any], config: ReconConfig | None = None
) -> pl.DataFrame:
    """Run the reconciliation in memory and return the report.

    Raises ReconcileError if any node fails.
    """
    config = config or ReconConfig()
    workspace = Workspace(
        db_path=MEMORY_DB,
        nodes=build_nodes(sources, config),
        setup=register_udfs,
        params=config.to_meta(),
    )
    conn = duckdb.connect(MEMORY_DB)
    try:
        result = workspace.run(conn=conn)
        if not result.success:
            failures = [
                f"{name}: {r.message}"
                for name, r in result.node_results.items()
                if not r.success
            ]
            raise ReconcileError(
                "Reconciliation failed:\n" + "\n".join(f"  - {f}" for f in failures)
            )
        return read_report(conn)
    finally:
        conn.close()
