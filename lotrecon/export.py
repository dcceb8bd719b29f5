"""Report exports.

Export functions take ``(conn, path)`` so they can be handed to
``Workspace(exports=...)`` directly. Column headers use the labels of the
original lot report (``total_amount (payment)``, ``STATUS``, ...).
"""

import logging
from pathlib import Path

import duckdb
import polars as pl

from .pipeline import REPORT_COLUMN_LABELS, read_report

log = logging.getLogger(__name__)

EXPORT_FORMATS = {".csv", ".parquet", ".xlsx"}


def labeled_report(conn: duckdb.DuckDBPyConnection) -> pl.DataFrame:
    """The report with display labels as column names."""
    df = read_report(conn)
    return df.rename({k: v for k, v in REPORT_COLUMN_LABELS.items() if k in df.columns})


def export_report(conn: duckdb.DuckDBPyConnection, path: Path) -> None:
    """Write the report to *path* (``.csv``, ``.parquet`` or ``.xlsx``)."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in EXPORT_FORMATS:
        raise ValueError(
            f"Unsupported export format '{suffix}'. "
            f"Supported: {', '.join(sorted(EXPORT_FORMATS))}"
        )
    path.parent.mkdir(parents=True, exist_ok=True)

    df = labeled_report(conn)
    if suffix == ".csv":
        df.write_csv(path)
    elif suffix == ".parquet":
        df.write_parquet(path)
    else:
        _write_xlsx(df, path)
    log.debug("Wrote %d report rows to %s", df.height, path)


def _write_xlsx(df: pl.DataFrame, path: Path) -> None:
    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.title = "Lot Report"
    ws.append(df.columns)
    for row in df.iter_rows():
        ws.append(list(row))
    ws.freeze_panes = "A2"
    wb.save(str(path))
