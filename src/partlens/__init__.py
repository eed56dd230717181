"""
Partition topology & health analysis for PostgreSQL.

Provides:
- Catalog snapshot reader (read-only, SQLAlchemy)
- Partition forest reconstruction with depth/cycle guards
- Per-parent rollups and per-partition metrics
- Rule-based assessments and maintenance recommendations

Usage:
    from sqlalchemy import create_engine
    from partlens import CatalogSnapshotReader, run_analysis

    engine = create_engine("postgresql+psycopg://user@host/db")
    report = run_analysis(CatalogSnapshotReader(engine))
    print(report.worst_severity().name)
"""

from __future__ import annotations

from partlens.advisory import (
    Assessment,
    Category,
    PartitionAssessment,
    PartitionStrategy,
    Severity,
    assess_parent,
    assess_partition,
    classify_strategy,
)
from partlens.aggregate import ParentAggregate, PartitionMetrics, aggregate_parent
from partlens.catalog import (
    CatalogSnapshot,
    CatalogSnapshotReader,
    RelationFact,
    facts_from_records,
    facts_to_records,
    load_snapshot,
    save_snapshot,
)
from partlens.config import Settings, load_settings
from partlens.engine import analyze_facts, run_analysis
from partlens.exceptions import (
    ConfigError,
    DataSourceError,
    OrphanPartitionError,
    PartlensError,
)
from partlens.report import PartitionReport, render_markdown
from partlens.thresholds import Thresholds
from partlens.topology import Forest, NodeRole, PartitionNode, build_forest

__version__ = "0.1.0"

__all__ = [
    # Catalog
    "RelationFact",
    "CatalogSnapshot",
    "CatalogSnapshotReader",
    "facts_from_records",
    "facts_to_records",
    "load_snapshot",
    "save_snapshot",
    # Topology
    "Forest",
    "NodeRole",
    "PartitionNode",
    "build_forest",
    # Aggregation
    "ParentAggregate",
    "PartitionMetrics",
    "aggregate_parent",
    # Advisory
    "Assessment",
    "Category",
    "PartitionAssessment",
    "PartitionStrategy",
    "Severity",
    "assess_parent",
    "assess_partition",
    "classify_strategy",
    # Engine / report
    "PartitionReport",
    "analyze_facts",
    "run_analysis",
    "render_markdown",
    # Config
    "Settings",
    "Thresholds",
    "load_settings",
    # Errors
    "PartlensError",
    "ConfigError",
    "DataSourceError",
    "OrphanPartitionError",
]
