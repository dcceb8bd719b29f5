"""Lot-level water billing/payment reconciliation — core modules."""

from .config import ConfigError, ReconConfig, load_config
from .export import export_report
from .ingest import FileInput, coerce_to_dataframe, ingest_table
from .pipeline import (
    ReconcileError,
    build_nodes,
    read_report,
    reconcile,
    sources_from_dir,
)
from .rules import counts_as_payment, lot_final_date, payment_status, register_udfs
from .task import Node, resolve_dag, resolve_deps, validate_graph
from .workspace import Workspace, WorkspaceResult

__all__ = [
    # Configuration
    "ConfigError",
    "ReconConfig",
    "load_config",
    # Reconciliation
    "ReconcileError",
    "build_nodes",
    "read_report",
    "reconcile",
    "sources_from_dir",
    "export_report",
    # Rules
    "counts_as_payment",
    "lot_final_date",
    "payment_status",
    "register_udfs",
    # Node DAG
    "Node",
    "resolve_dag",
    "resolve_deps",
    "validate_graph",
    # Workspace orchestrator
    "Workspace",
    "WorkspaceResult",
    # Ingestion
    "FileInput",
    "ingest_table",
    "coerce_to_dataframe",
]
