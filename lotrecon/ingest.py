"""Ingestion module — load billing relations into DuckDB.

Accepts Polars DataFrames, list[dict] (array of structs), or dict[str, list]
(struct of arrays). All are coerced to DataFrame before writing.

Also supports file-based inputs (csv, parquet, excel) read by DuckDB's own
readers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import duckdb
import polars as pl

log = logging.getLogger(__name__)

# Type alias for data a source node can hold
TableData = Any  # pl.DataFrame | list[dict] | dict[str, list]

SUPPORTED_FILE_EXTENSIONS = {
    ".csv": "csv",
    ".parquet": "parquet",
    ".xlsx": "excel",
}


@dataclass(frozen=True)
class FileInput:
    path: Path
    format: str


def coerce_to_dataframe(
    data: TableData, schema: Mapping[str, pl.DataType] | None = None
) -> pl.DataFrame:
    """Convert supported tabular formats to a Polars DataFrame.

    Accepted formats:
    - pl.DataFrame: returned as-is
    - list[dict]: array of structs, e.g. [{"a": 1, "b": 2}, ...]
    - dict[str, list]: struct of arrays, e.g. {"a": [1, 2], "b": [3, 4]}

    With a *schema*, empty input becomes an empty frame with those columns,
    and columns polars could only infer as Null (all values missing) are
    cast to their declared type.

    Raises TypeError for unsupported formats.
    """
    if isinstance(data, pl.DataFrame):
        df = data
    elif isinstance(data, (list, dict)):
        if not data and schema:
            return pl.DataFrame(schema=dict(schema))
        df = pl.DataFrame(data, infer_schema_length=None)
    else:
        raise TypeError(
            f"Unsupported data type: {type(data).__name__}. "
            f"Expected DataFrame, list[dict], or dict[str, list]."
        )

    if schema:
        null_cols = [
            c for c in df.columns if c in schema and df.schema[c] == pl.Null
        ]
        if null_cols:
            df = df.with_columns(pl.col(c).cast(schema[c]) for c in null_cols)
    return df


def _normalize_path(path: Path, base_dir: Path | None = None) -> Path:
    """Resolve path against base_dir (or cwd) and expand user/symlinks."""
    if not path.is_absolute():
        path = (base_dir or Path.cwd()) / path
    return path.expanduser().resolve()


def parse_file_path(path: Path, base_dir: Path | None = None) -> FileInput:
    """Parse a Path into a FileInput."""
    normalized = _normalize_path(path, base_dir=base_dir)
    suffix = normalized.suffix.lower()
    if suffix not in SUPPORTED_FILE_EXTENSIONS:
        raise ValueError(f"Unsupported file extension: {suffix}")
    return FileInput(path=normalized, format=SUPPORTED_FILE_EXTENSIONS[suffix])


def _write_table(
    conn: duckdb.DuckDBPyConnection, df: pl.DataFrame, table_name: str
) -> None:
    """Write a DataFrame to DuckDB using DuckDB's native DataFrame scan."""
    conn.execute(f'DROP TABLE IF EXISTS "{table_name}"')
    conn.register("_df", df)
    try:
        conn.execute(f'CREATE TABLE "{table_name}" AS SELECT * FROM _df')
    finally:
        conn.unregister("_df")


def _write_table_from_query(
    conn: duckdb.DuckDBPyConnection,
    table_name: str,
    query: str,
    params: list[Any] | None = None,
) -> None:
    conn.execute(f'DROP TABLE IF EXISTS "{table_name}"')
    conn.execute(f'CREATE TABLE "{table_name}" AS {query}', params or [])


def ingest_table(
    conn: duckdb.DuckDBPyConnection,
    data: TableData,
    table_name: str,
    schema: Mapping[str, pl.DataType] | None = None,
) -> None:
    """Ingest tabular data into the database as a named table.

    Accepts DataFrame, list[dict], or dict[str, list].
    """
    df = coerce_to_dataframe(data, schema=schema)
    _write_table(conn, df, table_name)


def _ensure_file_exists(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")


def _ingest_single_file(
    conn: duckdb.DuckDBPyConnection, path: Path, table_name: str, reader_fn: str
) -> None:
    """Ingest a single-file format (csv or parquet) using a DuckDB reader function."""
    _ensure_file_exists(path)
    _write_table_from_query(conn, table_name, f"SELECT * FROM {reader_fn}(?)", [str(path)])


def ingest_csv(conn: duckdb.DuckDBPyConnection, path: Path, table_name: str) -> None:
    _ingest_single_file(conn, path, table_name, "read_csv_auto")


def ingest_parquet(
    conn: duckdb.DuckDBPyConnection, path: Path, table_name: str
) -> None:
    _ingest_single_file(conn, path, table_name, "read_parquet")


def ingest_excel(
    conn: duckdb.DuckDBPyConnection,
    path: Path,
    table_name: str,
) -> None:
    _ensure_file_exists(path)
    try:
        conn.execute("INSTALL excel")
        conn.execute("LOAD excel")
    except duckdb.Error as e:
        raise RuntimeError(f"Failed to load DuckDB excel extension: {e}") from e

    # First sheet, first row as header
    _write_table_from_query(
        conn, table_name, "SELECT * FROM read_xlsx(?, header = true)", [str(path)]
    )


def ingest_file(
    conn: duckdb.DuckDBPyConnection, file_input: FileInput, table_name: str
) -> None:
    fmt = file_input.format
    if fmt == "csv":
        ingest_csv(conn, file_input.path, table_name)
    elif fmt == "parquet":
        ingest_parquet(conn, file_input.path, table_name)
    elif fmt == "excel":
        ingest_excel(conn, file_input.path, table_name)
    else:
        raise ValueError(f"Unsupported file format: {fmt}")


def find_input_file(directory: Path, relation: str) -> FileInput | None:
    """Find ``{relation}.{csv,parquet,xlsx}`` in *directory*.

    Returns None if no file exists. Raises ValueError if several do.
    """
    found = [
        directory / f"{relation}{ext}"
        for ext in SUPPORTED_FILE_EXTENSIONS
        if (directory / f"{relation}{ext}").exists()
    ]
    if not found:
        return None
    if len(found) > 1:
        names = ", ".join(p.name for p in found)
        raise ValueError(f"Ambiguous input for '{relation}': {names}")
    log.debug("  %s: %s", relation, found[0])
    return parse_file_path(found[0])
