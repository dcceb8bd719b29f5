"""CLI entry point for the lot reconciliation runner.

Usage:
    lotrecon init

    # Reconcile the relations found in ./data (ub_bill_detail.csv, ...)
    lotrecon run --inputs data --with-status --export report.xlsx

    # Inspect a finished run
    lotrecon show runs/lotrecon_20250904_120000.db
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import duckdb
from dotenv import find_dotenv, load_dotenv

# Load .env by walking upward from the CWD, so LOTRECON_* settings apply.
_dotenv_path = find_dotenv(usecwd=True)
DOTENV_PATH = Path(_dotenv_path) if _dotenv_path else None
if _dotenv_path:
    load_dotenv(_dotenv_path)

from lotrecon.catalog import count_rows_display, list_tables
from lotrecon.config import ConfigError, ReconConfig, load_config
from lotrecon.export import EXPORT_FORMATS, export_report
from lotrecon.infra import read_node_meta, read_workspace_meta
from lotrecon.ingest import FileInput
from lotrecon.pipeline import build_nodes, sources_from_dir
from lotrecon.rules import register_udfs
from lotrecon.task import MAX_INLINE_MESSAGES, Node, resolve_dag
from lotrecon.workspace import Workspace

log = logging.getLogger(__name__)


def _meta_json(meta: dict[str, str], key: str) -> dict[str, Any]:
    """Parse a JSON blob from workspace meta."""
    raw = meta.get(key)
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def _describe_node(n: Node) -> str:
    """One-line description of a node for display.

    Produces a string like:
      ``[source] (data/lot.csv) columns: lot_no, city``
      ``[sql] depends on: ub_master  -> acct_lots(cust_no, cust_sequence, lot_no)``
    """
    parts: list[str] = [f"[{n.node_type()}]"]

    if n.is_source():
        src = n.source
        if isinstance(src, FileInput):
            parts.append(f"({src.path})")
        elif callable(src):
            parts.append("(callable)")
        elif isinstance(src, list):
            parts.append(f"({len(src)} rows)")

    if n.columns:
        parts.append(f"columns: {', '.join(n.columns)}")
    if n.depends_on:
        parts.append(f"depends on: {', '.join(n.depends_on)}")
    if n.output_columns:
        outs = [f"{o}({', '.join(cols)})" for o, cols in n.output_columns.items()]
        parts.append(" -> " + ", ".join(outs))
    if n.has_validation():
        parts.append(f"checks: {', '.join(sorted(n.validate))}")

    return "  ".join(parts)


def _default_output_db_path(now: datetime | None = None) -> Path:
    """Generate a default output .db path from a timestamp."""
    if now is None:
        now = datetime.now(timezone.utc)
    return Path("runs") / f"lotrecon_{now.strftime('%Y%m%d_%H%M%S')}.db"


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps(str(value))


@click.group()
def main():
    """lotrecon — lot-level billing/payment reconciliation."""


@main.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite an existing [tool.lotrecon] block and .env",
)
def init(force: bool):
    """Write default settings into the current project."""
    root = Path.cwd()
    pyproject_path = root / "pyproject.toml"
    gitignore_path = root / ".gitignore"
    env_path = root / ".env"

    created: list[str] = []
    skipped: list[str] = []

    defaults = ReconConfig().to_meta()
    block = "[tool.lotrecon]\n" + "".join(
        f"{k} = {_toml_value(v)}\n" for k, v in defaults.items()
    )

    # --- pyproject.toml ---
    if not pyproject_path.exists():
        pyproject_path.write_text(block)
        created.append("pyproject.toml")
    else:
        text = pyproject_path.read_text()
        if "[tool.lotrecon]" not in text:
            sep = "" if not text or text.endswith("\n\n") else "\n"
            if text and not text.endswith("\n"):
                sep = "\n\n"
            pyproject_path.write_text(text + sep + block)
            created.append("pyproject.toml [tool.lotrecon]")
        elif force:
            start = text.index("[tool.lotrecon]")
            rest = text[start + len("[tool.lotrecon]") :]
            next_table = rest.find("\n[")
            tail = rest[next_table + 1 :] if next_table != -1 else ""
            pyproject_path.write_text(
                text[:start] + block + ("\n" + tail if tail else "")
            )
            created.append("pyproject.toml [tool.lotrecon]")
        else:
            skipped.append("pyproject.toml [tool.lotrecon]")

    # --- .env ---
    if not env_path.exists() or force:
        env_path.write_text(
            "# Overrides for [tool.lotrecon]; CLI options win over both.\n"
            + "".join(f"# LOTRECON_{k.upper()}=\n" for k in defaults)
        )
        created.append(".env")
    else:
        skipped.append(".env")

    # --- .gitignore ---
    gitignore_entries = [".venv/", "__pycache__/", "*.db", "runs/", ".env"]
    if not gitignore_path.exists():
        gitignore_path.write_text("\n".join(gitignore_entries) + "\n")
        created.append(".gitignore")
    else:
        existing = gitignore_path.read_text().splitlines()
        missing = [e for e in gitignore_entries if e not in existing]
        if missing:
            with open(gitignore_path, "a") as f:
                if existing and existing[-1] != "":
                    f.write("\n")
                f.write("\n".join(missing) + "\n")
        skipped.append(".gitignore")

    for name in created:
        click.echo(f"  created  {name}")
    for name in skipped:
        click.echo(f"  exists   {name}")

    click.echo("\nNext:")
    click.echo("  lotrecon run --inputs <dir with ub_bill_detail, ub_history, ub_master, lot>")


@main.command()
@click.option(
    "--inputs",
    "-i",
    "inputs_dir",
    required=True,
    type=click.Path(path_type=Path, file_okay=False),
    help="Directory holding ub_bill_detail, ub_history, ub_master and lot files",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Output database path (default: runs/lotrecon_<timestamp>.db)",
)
@click.option("--start-date", default=None, help="Window start, YYYY-MM-DD (inclusive)")
@click.option("--end-date", default=None, help="Window end, YYYY-MM-DD (inclusive)")
@click.option("--epsilon", default=None, help="STATUS tolerance (default: 0.01)")
@click.option("--service-prefix", default=None, help="Service code prefix (default: WC)")
@click.option("--billing-code", default=None, help="Bill-detail code (default: FLAT)")
@click.option(
    "--with-status/--without-status",
    "include_status",
    default=None,
    help="Add billed total, difference and STATUS columns",
)
@click.option(
    "--export",
    "-e",
    "export_paths",
    multiple=True,
    type=click.Path(path_type=Path),
    help="Write the report to a .csv, .parquet or .xlsx file (repeatable)",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite output file without prompting",
)
def run(
    inputs_dir: Path,
    output: Path | None,
    start_date: str | None,
    end_date: str | None,
    epsilon: str | None,
    service_prefix: str | None,
    billing_code: str | None,
    include_status: bool | None,
    export_paths: tuple[Path, ...],
    quiet: bool,
    force: bool,
):
    """Reconcile billed and paid totals per lot and service code."""
    level = logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    try:
        config = load_config(
            start_date=start_date,
            end_date=end_date,
            epsilon=epsilon,
            service_prefix=service_prefix,
            billing_code=billing_code,
            include_status=include_status,
        )
    except ConfigError as e:
        raise click.ClickException(str(e))

    for path in export_paths:
        if path.suffix.lower() not in EXPORT_FORMATS:
            raise click.ClickException(
                f"Unsupported export format for {path}. "
                f"Supported: {', '.join(sorted(EXPORT_FORMATS))}"
            )

    try:
        sources = sources_from_dir(inputs_dir)
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e))

    if output is None:
        output = _default_output_db_path()
        output.parent.mkdir(parents=True, exist_ok=True)
    else:
        output = Path(output)
        if output.suffix != ".db":
            output = output.with_suffix(".db")
            log.warning("Output path adjusted to %s (added .db suffix)", output)

    if output.exists() and not force:
        click.confirm(
            f"{output} already exists and will be overwritten. Continue?",
            abort=True,
        )

    nodes = build_nodes(sources, config)
    workspace = Workspace(
        db_path=output,
        nodes=nodes,
        exports={str(p): export_report for p in export_paths},
        setup=register_udfs,
        params=config.to_meta(),
    )

    log.info("Inputs: %s", inputs_dir)
    log.info("Output: %s", output)
    log.info(
        "Window: %s .. %s  service: %s*  code: %s  status: %s",
        config.start_date,
        config.end_date,
        config.service_prefix,
        config.billing_code,
        "on" if config.include_status else "off",
    )
    log.info("\nNodes (%d):", len(nodes))
    for layer_idx, layer in enumerate(resolve_dag(nodes)):
        log.info("  Layer %d:", layer_idx)
        for n in layer:
            log.info("    %-16s%s", n.name, _describe_node(n))
    log.info("")

    result = workspace.run()

    log.info("Saved to: %s", output)
    log.info("Report: SELECT * FROM report_lots")
    log.info("Node metadata: SELECT node, meta_json FROM _node_meta")
    log.info("SQL trace: SELECT * FROM _trace")

    if not quiet:
        _report_run_summary(output, nodes)

    sys.exit(0 if result.success else 1)


def _report_run_summary(output: Path, nodes: list[Node]) -> None:
    try:
        conn = duckdb.connect(str(output), read_only=True)
    except duckdb.Error:
        return

    try:
        tables = set(list_tables(conn, exclude_prefixes=("_",)))

        click.echo("\n  Sources:")
        for node in nodes:
            if node.is_source() and node.name in tables:
                click.echo(f"    {node.name}: {count_rows_display(conn, node.name)} rows")

        for node in nodes:
            if node.is_source() or not node.output_columns:
                continue
            click.echo(f"\n  {node.name}:")
            for output_name in node.output_columns:
                if output_name in tables:
                    click.echo(
                        f"    {output_name}: {count_rows_display(conn, output_name)} rows"
                    )
                else:
                    click.echo(f"    {output_name}: MISSING")

        for node in nodes:
            warn_count, warn_msgs = node.validation_warnings(
                conn, limit=MAX_INLINE_MESSAGES
            )
            if warn_count:
                click.echo(f"\n  {node.name} warnings: {warn_count}")
                for msg in warn_msgs:
                    click.echo(f"    - {msg}")
                if warn_count > len(warn_msgs):
                    click.echo(f"    ... and {warn_count - len(warn_msgs)} more")
    finally:
        conn.close()


@main.command()
@click.argument("target", type=click.Path(path_type=Path))
def show(target: Path):
    """Show parameters, inputs and node status of a workspace database.

    \b
    Example:
        lotrecon show runs/lotrecon_20250904_120000.db
    """
    if target.suffix != ".db":
        raise click.ClickException(f"{target} is not a .db file.")
    if not target.exists():
        raise click.ClickException(f"{target} does not exist.")
    try:
        conn = duckdb.connect(str(target), read_only=True)
    except duckdb.Error as e:
        raise click.ClickException(f"Cannot open {target} as a DuckDB database: {e}")
    try:
        meta = read_workspace_meta(conn)
        node_meta = read_node_meta(conn)
    finally:
        conn.close()
    if not meta:
        raise click.ClickException(
            f"{target} has no workspace metadata — not a lotrecon workspace."
        )

    click.echo(f"Workspace: {target}\n")
    click.echo(f"Created: {meta.get('created_at_utc', '(unknown)')}")
    click.echo(f"Version: {meta.get('lotrecon_version', '(unknown)')}")

    params = _meta_json(meta, "params")
    if params:
        click.echo("\nParameters:")
        for key in sorted(params):
            click.echo(f"  {key}: {params[key]}")

    counts = _meta_json(meta, "inputs_row_counts")
    if counts:
        click.echo("\nInputs:")
        for name in sorted(counts):
            click.echo(f"  {name}: {counts[name]} rows")

    if node_meta:
        click.echo(f"\nNodes ({len(node_meta)}):")
        for name in sorted(node_meta):
            m = node_meta[name]
            click.echo(f"  {name:<16}{m.get('validation', '?')}  ({m.get('node_type')})")
            if m.get("error"):
                for line in str(m["error"]).splitlines():
                    click.echo(f"      {line}")

        warned = {n: m.get("warnings") or [] for n, m in node_meta.items()}
        for name in sorted(n for n, w in warned.items() if w):
            msgs = warned[name]
            click.echo(f"\n{name} warnings: {len(msgs)}")
            for msg in msgs[:MAX_INLINE_MESSAGES]:
                click.echo(f"  - {msg}")
            if len(msgs) > MAX_INLINE_MESSAGES:
                click.echo(f"  ... and {len(msgs) - MAX_INLINE_MESSAGES} more")

    exports = _meta_json(meta, "exports")
    if exports:
        results = exports.get("results") or {}
        click.echo("\nExports:")
        click.echo(f"  attempted: {exports.get('attempted')}")
        for name in sorted(results):
            r = results[name]
            if r.get("ok"):
                click.echo(f"  {name}: OK")
            else:
                click.echo(f"  {name}: FAILED ({r.get('error')})")


if __name__ == "__main__":
    main()
