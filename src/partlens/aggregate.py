"""
Per-parent rollups and per-partition derived metrics.

A ParentAggregate covers the *immediate* children of one partitioned node:
multi-level hierarchies are aggregated one level at a time, the way an
operator reasons about a single table's partitions. The transitive
descendant count is kept alongside for information only.

Ratios that would divide by zero are reported as None ("undefined").
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import numpy as np
import pandas as pd

from partlens.catalog import RelationFact
from partlens.thresholds import Thresholds
from partlens.topology import Forest

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 86_400.0


@dataclass(frozen=True)
class ParentAggregate:
    """Statistics over the immediate partitions of one partitioned table."""

    parent: str
    partition_count: int
    total_size: int
    avg_size: Optional[float]
    min_size: Optional[int]
    max_size: Optional[int]
    size_stddev: Optional[float]
    total_rows: int
    avg_rows_per_partition: Optional[float]
    empty_partitions: int
    small_partitions: int
    partitions_needing_vacuum: int
    partitions_needing_analyze: int
    descendant_count: int = 0
    depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PartitionMetrics:
    """Activity ratios and maintenance ages of one relation."""

    seq_scan_ratio: Optional[float]
    avg_tuples_per_seq_scan: Optional[float]
    avg_tuples_per_idx_scan: Optional[float]
    vacuum_age_days: Optional[float]
    analyze_age_days: Optional[float]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _ratio(num: float, den: float) -> Optional[float]:
    return float(num) / float(den) if den else None


def _age_days(ts: Optional[datetime], now: datetime) -> Optional[float]:
    if ts is None:
        return None
    return (now - ts).total_seconds() / _SECONDS_PER_DAY


def is_stale(ts: Optional[datetime], now: datetime, days: int) -> bool:
    """True when ``ts`` is older than ``days``. Never (None) is not stale."""
    return ts is not None and ts < now - timedelta(days=days)


def partition_metrics(fact: RelationFact, now: datetime) -> PartitionMetrics:
    return PartitionMetrics(
        seq_scan_ratio=_ratio(fact.seq_scan, fact.seq_scan + fact.idx_scan),
        avg_tuples_per_seq_scan=_ratio(fact.seq_tup_read, fact.seq_scan),
        avg_tuples_per_idx_scan=_ratio(fact.idx_tup_fetch, fact.idx_scan),
        vacuum_age_days=_age_days(fact.vacuumed_at, now),
        analyze_age_days=_age_days(fact.analyzed_at, now),
    )


def _children_frame(facts: list[RelationFact]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "name": [f.name for f in facts],
            "total_bytes": pd.Series([f.total_bytes for f in facts], dtype="int64"),
            "live_rows": pd.Series([f.live_rows for f in facts], dtype="int64"),
            "vacuumed_at": pd.to_datetime([f.vacuumed_at for f in facts], utc=True),
            "analyzed_at": pd.to_datetime([f.analyzed_at for f in facts], utc=True),
        }
    )


def _opt_float(x: Any) -> Optional[float]:
    if x is None or (isinstance(x, float) and np.isnan(x)):
        return None
    return float(x)


def aggregate_parent(
    forest: Forest,
    parent: str,
    now: datetime,
    thresholds: Optional[Thresholds] = None,
) -> ParentAggregate:
    """
    Roll up the immediate children of ``parent``.

    Args:
        forest: Built partition forest
        parent: Identity of a node in ``forest``
        now: Reference time for vacuum/analyze staleness
        thresholds: Small-partition and staleness cut-offs

    Returns:
        ParentAggregate; avg/min/max/stddev are None when there are no children
    """
    t = thresholds or Thresholds()
    node = forest[parent]
    children = [c.fact for c in forest.children_of(parent)]
    descendant_count = len(forest.descendants(parent))

    df = _children_frame(children)
    count = int(len(df))

    if count == 0:
        logger.debug(f"{parent}: no partitions attached; statistics undefined")
        return ParentAggregate(
            parent=parent,
            partition_count=0,
            total_size=0,
            avg_size=None,
            min_size=None,
            max_size=None,
            size_stddev=None,
            total_rows=0,
            avg_rows_per_partition=None,
            empty_partitions=0,
            small_partitions=0,
            partitions_needing_vacuum=0,
            partitions_needing_analyze=0,
            descendant_count=descendant_count,
            depth=node.depth,
        )

    sizes = df["total_bytes"]
    rows = df["live_rows"]
    cutoff = pd.Timestamp(now - timedelta(days=t.stale_after_days))

    # NaT compares False, so never-vacuumed partitions are not counted as stale.
    needing_vacuum = int((df["vacuumed_at"] < cutoff).sum())
    needing_analyze = int((df["analyzed_at"] < cutoff).sum())

    return ParentAggregate(
        parent=parent,
        partition_count=count,
        total_size=int(sizes.sum()),
        avg_size=_opt_float(sizes.mean()),
        min_size=int(sizes.min()),
        max_size=int(sizes.max()),
        size_stddev=_opt_float(sizes.std(ddof=0)),
        total_rows=int(rows.sum()),
        avg_rows_per_partition=_opt_float(rows.mean()),
        empty_partitions=int((rows == 0).sum()),
        small_partitions=int((sizes < t.small_partition_bytes).sum()),
        partitions_needing_vacuum=needing_vacuum,
        partitions_needing_analyze=needing_analyze,
        descendant_count=descendant_count,
        depth=node.depth,
    )


def aggregate_tree(
    forest: Forest,
    root: str,
    now: datetime,
    thresholds: Optional[Thresholds] = None,
) -> list[ParentAggregate]:
    """Aggregates for ``root`` and every partitioned node beneath it, root first."""
    return [
        aggregate_parent(forest, node.name, now, thresholds)
        for node in forest.walk(root)
        if node.is_parent
    ]
