"""
Advisory rules.

Two independent passes, both pure (no I/O):

- Per-partition: ``PARTITION_RULES`` is evaluated top to bottom for every
  PartitionNode. The first match is the node's primary assessment; every
  other matching rule is kept as a secondary finding.
- Per-parent: ``assess_parent`` evaluates every rule group against a
  ParentAggregate and emits all applicable assessments.

Thresholds come from partlens.thresholds.Thresholds, so changing a cut-off
never changes rule order.

MISSING_INDEX_SUSPECT is inferred from scan counters only, without query
plans. It is a best-effort signal and is worded as such.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Callable, Optional

from partlens.aggregate import ParentAggregate, is_stale
from partlens.thresholds import Thresholds
from partlens.topology import PartitionNode


class Severity(IntEnum):
    """Assessment severity, ordered OK < INFO < WARNING < CRITICAL."""
    OK = 0
    INFO = 1
    WARNING = 2
    CRITICAL = 3


class Category(Enum):
    """Assessment categories."""
    # per partition
    MISSING_INDEX_SUSPECT = "missing_index_suspect"
    EMPTY_CANDIDATE = "empty_candidate"
    CONSOLIDATION_CANDIDATE = "consolidation_candidate"
    VACUUM_OVERDUE = "vacuum_overdue"
    ANALYZE_OVERDUE = "analyze_overdue"
    PARTITIONED_PARENT = "partitioned_parent"
    NORMAL = "normal"
    ORPHAN_PARTITION = "orphan_partition"
    HIERARCHY_TRUNCATED = "hierarchy_truncated"
    # per parent
    HIGH_VARIANCE = "high_variance"
    MODERATE_VARIANCE = "moderate_variance"
    LOW_VARIANCE = "low_variance"
    UNDEFINED_STATISTICS = "undefined_statistics"
    PLANNING_OVERHEAD_RISK = "planning_overhead_risk"
    SINGLE_PARTITION = "single_partition"
    REASONABLE_PARTITION_COUNT = "reasonable_partition_count"
    CLEANUP_RECOMMENDED = "cleanup_recommended"
    STRATEGY_REVIEW = "strategy_review"
    MAINTENANCE_SCHEDULE_RECOMMENDED = "maintenance_schedule_recommended"
    MAINTENANCE_CURRENT = "maintenance_current"
    # database wide
    CONSTRAINT_EXCLUSION = "constraint_exclusion"
    PARTITION_VOLUME = "partition_volume"
    PRUNING_NOTE = "pruning_note"


class PartitionStrategy(Enum):
    RANGE = "range"
    LIST = "list"
    HASH = "hash"
    DEFAULT = "default"
    OTHER = "other"


@dataclass(frozen=True)
class Assessment:
    """One verdict with an optional remediation hint."""

    category: Category
    severity: Severity
    message: str
    remediation: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.name,
            "severity": self.severity.name,
            "message": self.message,
            "remediation": self.remediation,
        }


@dataclass(frozen=True)
class PartitionAssessment:
    """First-match verdict plus every other rule that also matched."""

    primary: Assessment
    findings: tuple[Assessment, ...] = field(default_factory=tuple)

    @property
    def categories(self) -> list[Category]:
        return [a.category for a in self.findings]

    @property
    def worst(self) -> Severity:
        return max((a.severity for a in self.findings), default=self.primary.severity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary": self.primary.to_dict(),
            "findings": [a.to_dict() for a in self.findings],
        }


# =============================================================================
# Strategy classification
# =============================================================================

_STRATEGY_PATTERNS = (
    (re.compile(r"FOR\s+VALUES\s+FROM", re.IGNORECASE), PartitionStrategy.RANGE),
    (re.compile(r"FOR\s+VALUES\s+IN", re.IGNORECASE), PartitionStrategy.LIST),
    (re.compile(r"FOR\s+VALUES\s+WITH", re.IGNORECASE), PartitionStrategy.HASH),
    (re.compile(r"^\s*DEFAULT\s*$", re.IGNORECASE), PartitionStrategy.DEFAULT),
)


def classify_strategy(bound: Optional[str]) -> PartitionStrategy:
    """Classify a pg_get_expr(relpartbound) string; anything unrecognized is OTHER."""
    if not bound:
        return PartitionStrategy.OTHER
    for pattern, strategy in _STRATEGY_PATTERNS:
        if pattern.search(bound):
            return strategy
    return PartitionStrategy.OTHER


# =============================================================================
# Per-partition rules
# =============================================================================

@dataclass(frozen=True)
class Rule:
    """A (predicate, category, severity) row of a rule table."""

    name: str
    predicate: Callable[[PartitionNode, Thresholds, datetime], bool]
    category: Category
    severity: Severity
    message: str
    remediation: Optional[str] = None
    exclusive: bool = False            # stop evaluating once this rule matches

    def assessment(self, node: PartitionNode) -> Assessment:
        fmt = {"name": node.name, "parent": node.fact.parent or "<parent>"}
        return Assessment(
            category=self.category,
            severity=self.severity,
            message=self.message.format(**fmt),
            remediation=self.remediation.format(**fmt) if self.remediation else None,
        )


def _is_partitioned_parent(node: PartitionNode, t: Thresholds, now: datetime) -> bool:
    return node.fact.is_partitioned


def _seq_scan_heavy(node: PartitionNode, t: Thresholds, now: datetime) -> bool:
    f = node.fact
    return f.seq_scan > f.idx_scan and f.live_rows > t.seq_scan_min_rows


def _empty(node: PartitionNode, t: Thresholds, now: datetime) -> bool:
    return node.fact.live_rows == 0


def _small(node: PartitionNode, t: Thresholds, now: datetime) -> bool:
    f = node.fact
    return f.total_bytes < t.small_partition_bytes and f.live_rows < t.small_partition_rows


def _vacuum_overdue(node: PartitionNode, t: Thresholds, now: datetime) -> bool:
    f = node.fact
    return is_stale(f.vacuumed_at, now, t.stale_after_days) and f.live_rows > t.maintenance_min_rows


def _analyze_overdue(node: PartitionNode, t: Thresholds, now: datetime) -> bool:
    f = node.fact
    return is_stale(f.analyzed_at, now, t.stale_after_days) and f.live_rows > t.maintenance_min_rows


# Order is the priority: first match wins.
PARTITION_RULES: tuple[Rule, ...] = (
    Rule(
        "partitioned_parent",
        _is_partitioned_parent,
        Category.PARTITIONED_PARENT,
        Severity.OK,
        "{name} is a partitioned table and holds no rows itself; see its parent assessment",
        exclusive=True,
    ),
    Rule(
        "seq_scan_heavy",
        _seq_scan_heavy,
        Category.MISSING_INDEX_SUSPECT,
        Severity.WARNING,
        "{name}: sequential scans outnumber index scans on a large partition "
        "(heuristic from scan counters, not query plans)",
        "Review queries against {name} and consider an index on the filtered columns",
    ),
    Rule(
        "empty",
        _empty,
        Category.EMPTY_CANDIDATE,
        Severity.INFO,
        "{name} is empty: consider dropping or archiving",
        "ALTER TABLE {parent} DETACH PARTITION {name}; DROP TABLE {name};",
    ),
    Rule(
        "small",
        _small,
        Category.CONSOLIDATION_CANDIDATE,
        Severity.INFO,
        "{name} is small: consider consolidating with adjacent partitions",
    ),
    Rule(
        "vacuum_overdue",
        _vacuum_overdue,
        Category.VACUUM_OVERDUE,
        Severity.WARNING,
        "{name} needs VACUUM: no recent vacuum activity",
        "VACUUM (ANALYZE) {name};",
    ),
    Rule(
        "analyze_overdue",
        _analyze_overdue,
        Category.ANALYZE_OVERDUE,
        Severity.WARNING,
        "{name} needs ANALYZE: statistics may be stale",
        "ANALYZE {name};",
    ),
)

NORMAL = Rule(
    "normal",
    lambda node, t, now: True,
    Category.NORMAL,
    Severity.OK,
    "{name}: normal partition usage",
)


def _structural_findings(node: PartitionNode) -> list[Assessment]:
    out: list[Assessment] = []
    if node.orphan is not None:
        out.append(
            Assessment(
                Category.ORPHAN_PARTITION,
                Severity.WARNING,
                str(node.orphan),
                "Check whether the parent was dropped or renamed; the partition is reported as its own root",
            )
        )
    if node.truncated:
        out.append(
            Assessment(
                Category.HIERARCHY_TRUNCATED,
                Severity.WARNING,
                f"{node.name}: expansion stopped at depth {node.depth}; "
                f"not expanded: {', '.join(node.truncated_children)}",
                "Inspect pg_inherits for cycles or unexpectedly deep nesting below this table",
            )
        )
    return out


def assess_partition(
    node: PartitionNode,
    now: datetime,
    thresholds: Optional[Thresholds] = None,
    rules: tuple[Rule, ...] = PARTITION_RULES,
) -> PartitionAssessment:
    """
    Evaluate the per-partition rule table for one node.

    The primary assessment is the first matching rule (NORMAL when none
    match). ``findings`` lists every matching rule in table order, followed by
    orphan / truncation findings for structurally flagged nodes.
    """
    t = thresholds or Thresholds()
    matched: list[Assessment] = []
    for rule in rules:
        if rule.predicate(node, t, now):
            matched.append(rule.assessment(node))
            if rule.exclusive:
                break
    primary = matched[0] if matched else NORMAL.assessment(node)
    findings = (matched or [primary]) + _structural_findings(node)
    return PartitionAssessment(primary=primary, findings=tuple(findings))


# =============================================================================
# Per-parent rules
# =============================================================================

def _assess_variance(agg: ParentAggregate, t: Thresholds) -> Assessment:
    if agg.size_stddev is None or agg.avg_size is None:
        return Assessment(
            Category.UNDEFINED_STATISTICS,
            Severity.INFO,
            f"{agg.parent}: no partitions attached, size statistics undefined",
        )
    if agg.size_stddev > agg.avg_size * t.high_variance_ratio:
        return Assessment(
            Category.HIGH_VARIANCE,
            Severity.WARNING,
            f"{agg.parent}: high variance, unbalanced partition sizes",
            "Revisit partition bounds so data spreads more evenly",
        )
    if agg.size_stddev > agg.avg_size * t.moderate_variance_ratio:
        return Assessment(
            Category.MODERATE_VARIANCE,
            Severity.INFO,
            f"{agg.parent}: moderate variance, some size imbalance",
        )
    return Assessment(
        Category.LOW_VARIANCE,
        Severity.OK,
        f"{agg.parent}: low variance, well-balanced partitions",
    )


def _assess_count(agg: ParentAggregate, t: Thresholds) -> Assessment:
    if agg.partition_count > t.max_partitions:
        return Assessment(
            Category.PLANNING_OVERHEAD_RISK,
            Severity.WARNING,
            f"{agg.parent}: {agg.partition_count} partitions may impact query planning performance",
            "Consider coarser partition bounds or detaching historical partitions",
        )
    if agg.partition_count < t.min_partitions:
        return Assessment(
            Category.SINGLE_PARTITION,
            Severity.INFO,
            f"{agg.parent}: very few partitions ({agg.partition_count}), consider partition strategy",
        )
    return Assessment(
        Category.REASONABLE_PARTITION_COUNT,
        Severity.OK,
        f"{agg.parent}: reasonable partition count ({agg.partition_count})",
    )


def _assess_maintenance(agg: ParentAggregate, t: Thresholds) -> list[Assessment]:
    out: list[Assessment] = []
    n = agg.partition_count

    if agg.empty_partitions > t.max_empty_partitions:
        out.append(
            Assessment(
                Category.CLEANUP_RECOMMENDED,
                Severity.WARNING,
                f"{agg.parent}: {agg.empty_partitions} empty partitions, consider dropping them",
                "DROP TABLE partition_name;",
            )
        )
    if agg.small_partitions > n * t.small_partition_share:
        out.append(
            Assessment(
                Category.STRATEGY_REVIEW,
                Severity.WARNING,
                f"{agg.parent}: {agg.small_partitions} of {n} partitions are small, "
                "consider a different partitioning strategy",
            )
        )

    stale = []
    if agg.partitions_needing_vacuum > n * t.stale_partition_share:
        stale.append(f"VACUUM ({agg.partitions_needing_vacuum} of {n})")
    if agg.partitions_needing_analyze > n * t.stale_partition_share:
        stale.append(f"ANALYZE ({agg.partitions_needing_analyze} of {n})")
    if stale:
        out.append(
            Assessment(
                Category.MAINTENANCE_SCHEDULE_RECOMMENDED,
                Severity.WARNING,
                f"{agg.parent}: schedule regular {' and '.join(stale)} maintenance across partitions",
                "VACUUM (ANALYZE) partition_name;",
            )
        )

    if not out:
        out.append(
            Assessment(
                Category.MAINTENANCE_CURRENT,
                Severity.OK,
                f"{agg.parent}: partition maintenance appears current",
            )
        )
    return out


def assess_parent(agg: ParentAggregate, thresholds: Optional[Thresholds] = None) -> list[Assessment]:
    """All applicable per-parent assessments: variance, count, then maintenance."""
    t = thresholds or Thresholds()
    return [_assess_variance(agg, t), _assess_count(agg, t), *_assess_maintenance(agg, t)]


def automation_suggestion(agg: ParentAggregate, thresholds: Optional[Thresholds] = None) -> Optional[str]:
    """
    Read-only SQL that lists DROP statements for empty partitions of a large parent.

    Returns None below the automation threshold.
    """
    t = thresholds or Thresholds()
    if agg.partition_count <= t.automation_min_partitions:
        return None
    return (
        "-- Empty partitions of {parent}:\n"
        "SELECT 'DROP TABLE ' || quote_ident(n.nspname) || '.' || quote_ident(c.relname) || ';'\n"
        "FROM pg_inherits i\n"
        "JOIN pg_class c ON c.oid = i.inhrelid\n"
        "JOIN pg_namespace n ON n.oid = c.relnamespace\n"
        "JOIN pg_stat_user_tables st ON st.relid = c.oid\n"
        "WHERE i.inhparent = '{parent_lit}'::regclass AND st.n_live_tup = 0;"
    ).format(
        parent=agg.parent,
        parent_lit=agg.parent.replace("'", "''"),
    )


# =============================================================================
# Database-wide checks
# =============================================================================

def assess_constraint_exclusion(setting: Optional[str]) -> Assessment:
    value = (setting or "").strip().lower()
    if value == "off":
        return Assessment(
            Category.CONSTRAINT_EXCLUSION,
            Severity.CRITICAL,
            "constraint_exclusion=off: enable it for partition pruning",
            "ALTER SYSTEM SET constraint_exclusion = 'partition';",
        )
    if value == "on":
        return Assessment(
            Category.CONSTRAINT_EXCLUSION,
            Severity.WARNING,
            "constraint_exclusion=on may impact non-partitioned queries",
            "ALTER SYSTEM SET constraint_exclusion = 'partition';",
        )
    if value == "partition":
        return Assessment(
            Category.CONSTRAINT_EXCLUSION,
            Severity.OK,
            "constraint_exclusion=partition is recommended",
        )
    return Assessment(
        Category.CONSTRAINT_EXCLUSION,
        Severity.INFO,
        f"constraint_exclusion setting unknown ({setting!r}); check it manually",
    )


def assess_database_totals(total_partitions: int, thresholds: Optional[Thresholds] = None) -> list[Assessment]:
    t = thresholds or Thresholds()
    out: list[Assessment] = []
    if total_partitions > t.db_partitions_caution:
        out.append(
            Assessment(
                Category.PARTITION_VOLUME,
                Severity.WARNING,
                f"{total_partitions} partitions: very high partition count may impact metadata operations",
                "Consider pg_partman for automated partition management",
            )
        )
    elif total_partitions > t.db_partitions_monitor:
        out.append(
            Assessment(
                Category.PARTITION_VOLUME,
                Severity.INFO,
                f"{total_partitions} partitions: watch query planning performance",
            )
        )
    else:
        out.append(
            Assessment(
                Category.PARTITION_VOLUME,
                Severity.OK,
                f"{total_partitions} partitions: manageable partition count",
            )
        )
    if total_partitions > t.pruning_note_partitions:
        out.append(
            Assessment(
                Category.PRUNING_NOTE,
                Severity.INFO,
                "Large partition count: make sure queries filter on the partition key so pruning applies",
            )
        )
    return out
