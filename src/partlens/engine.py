"""
Analysis pass: fetch once, build once, aggregate once, assess once.

Usage:
    from partlens.engine import analyze_facts, run_analysis

    report = run_analysis(CatalogSnapshotReader(engine), settings)
    # or, offline
    report = analyze_facts(load_snapshot("snap.json").facts, settings, now=...)

Each root's aggregation and advisory evaluation is independent, so with
``settings.workers > 1`` roots are fanned out to a thread pool. Results are
always merged in root-input order.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional, Sequence

from partlens.advisory import (
    assess_constraint_exclusion,
    assess_database_totals,
    assess_parent,
    assess_partition,
    automation_suggestion,
    classify_strategy,
)
from partlens.aggregate import aggregate_tree, partition_metrics
from partlens.catalog import CatalogSnapshotReader, RelationFact
from partlens.config import Settings
from partlens.report import NodeReport, ParentReport, PartitionReport, RootReport
from partlens.thresholds import Thresholds
from partlens.topology import Forest, PartitionNode, build_forest

logger = logging.getLogger(__name__)


def _as_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _node_report(node: PartitionNode, now: datetime, thresholds: Thresholds) -> NodeReport:
    f = node.fact
    return NodeReport(
        name=node.name,
        parent=f.parent,
        depth=node.depth,
        path=node.path,
        role=node.role,
        strategy=classify_strategy(f.partition_bound),
        is_partitioned=f.is_partitioned,
        total_bytes=f.total_bytes,
        table_bytes=f.table_bytes,
        live_rows=f.live_rows,
        partition_bound=f.partition_bound,
        metrics=partition_metrics(f, now),
        assessment=assess_partition(node, now, thresholds),
        children=list(node.children),
        truncated=node.truncated,
        truncated_children=list(node.truncated_children),
        orphan=node.orphan,
        synthetic=node.synthetic,
    )


def _count_partitions(facts: Sequence[RelationFact]) -> int:
    """Every distinct relation with a parent, attached to the forest or not."""
    seen: dict[str, bool] = {}
    for f in facts:
        seen.setdefault(f.name, f.parent is not None)
    return sum(seen.values())


def analyze_root(forest: Forest, root: str, now: datetime, thresholds: Thresholds) -> RootReport:
    """Assess one tree. Pure; safe to run concurrently for different roots."""
    nodes = [_node_report(n, now, thresholds) for n in forest.walk(root)]
    parents = [
        ParentReport(
            aggregate=agg,
            assessments=assess_parent(agg, thresholds),
            automation=automation_suggestion(agg, thresholds),
        )
        for agg in aggregate_tree(forest, root, now, thresholds)
    ]
    return RootReport(root=root, nodes=nodes, parents=parents)


def analyze_facts(
    facts: Sequence[RelationFact],
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    constraint_exclusion: Optional[str] = None,
) -> PartitionReport:
    """
    Run the full analysis over an in-memory snapshot.

    Args:
        facts: Relation facts from the catalog reader (any order)
        settings: Depth limit, worker count and thresholds
        now: Reference time for maintenance ages (default: current UTC time)
        constraint_exclusion: Setting value if it was read; None skips that check

    Returns:
        PartitionReport; identical for identical inputs and ``now``
    """
    settings = settings or Settings()
    thresholds = settings.thresholds
    now = _as_utc(now)

    forest = build_forest(facts, max_depth=settings.max_depth)

    if settings.workers > 1 and len(forest.roots) > 1:
        logger.info(f"Analyzing {len(forest.roots)} roots with {settings.workers} workers")
        with ThreadPoolExecutor(max_workers=settings.workers) as executor:
            # map() yields in submission order
            roots = list(
                executor.map(lambda r: analyze_root(forest, r, now, thresholds), forest.roots)
            )
    else:
        roots = [analyze_root(forest, r, now, thresholds) for r in forest.roots]

    total_partitions = _count_partitions(facts)

    report = PartitionReport(
        captured_at=now,
        max_depth=settings.max_depth,
        thresholds=thresholds,
        roots=roots,
        orphans=list(forest.orphans),
        truncated=list(forest.truncated),
        constraint_exclusion=(
            assess_constraint_exclusion(constraint_exclusion) if constraint_exclusion is not None else None
        ),
        database=assess_database_totals(total_partitions, thresholds),
    )
    logger.info(
        f"Analysis complete: {len(roots)} roots, {len(forest)} nodes, "
        f"worst severity {report.worst_severity().name}"
    )
    return report


def run_analysis(
    reader: CatalogSnapshotReader,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> PartitionReport:
    """
    Fetch a snapshot through ``reader`` and analyze it.

    Raises:
        DataSourceError: if the fetch fails; no partial report is produced
    """
    snapshot = reader.fetch_snapshot()
    return analyze_facts(
        snapshot.facts,
        settings=settings,
        now=now or snapshot.captured_at,
        constraint_exclusion=snapshot.constraint_exclusion,
    )
