"""Tests for the per-partition and per-parent rule tables."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from partlens.advisory import (
    PARTITION_RULES,
    Category,
    PartitionStrategy,
    Severity,
    assess_constraint_exclusion,
    assess_database_totals,
    assess_parent,
    assess_partition,
    automation_suggestion,
    classify_strategy,
)
from partlens.aggregate import ParentAggregate, aggregate_parent
from partlens.thresholds import Thresholds
from partlens.topology import build_forest

MIB = 1024 * 1024


def _node(make_fact, **kw):
    facts = [make_fact("s.root", partitioned=True), make_fact("s.p", "s.root", **kw)]
    return build_forest(facts)["s.p"]


def _agg(**kw) -> ParentAggregate:
    base = dict(
        parent="s.root",
        partition_count=10,
        total_size=100 * MIB,
        avg_size=10.0 * MIB,
        min_size=10 * MIB,
        max_size=10 * MIB,
        size_stddev=0.0,
        total_rows=50_000,
        avg_rows_per_partition=5000.0,
        empty_partitions=0,
        small_partitions=0,
        partitions_needing_vacuum=0,
        partitions_needing_analyze=0,
    )
    base.update(kw)
    return ParentAggregate(**base)


def _categories(assessments):
    return [a.category for a in assessments]


@pytest.mark.advisory
class TestPartitionRules:
    def test_healthy_partition_is_normal(self, make_fact, now):
        result = assess_partition(_node(make_fact), now)

        assert result.primary.category is Category.NORMAL
        assert result.primary.severity is Severity.OK
        assert result.categories == [Category.NORMAL]

    def test_missing_index_suspect_wins_first(self, make_fact, now):
        old = now - timedelta(days=30)
        node = _node(make_fact, seq_scan=500, idx_scan=3, live_rows=50_000, last_vacuum=old)
        result = assess_partition(node, now)

        assert result.primary.category is Category.MISSING_INDEX_SUSPECT
        assert result.primary.severity is Severity.WARNING
        assert "heuristic" in result.primary.message
        assert Category.VACUUM_OVERDUE in result.categories

    def test_seq_scan_needs_enough_rows(self, make_fact, now):
        node = _node(make_fact, seq_scan=500, idx_scan=3, live_rows=10_000)

        assert assess_partition(node, now).primary.category is Category.NORMAL

    def test_empty_and_small_both_reported(self, make_fact, now):
        node = _node(make_fact, live_rows=0, total_bytes=2 * 1024)
        result = assess_partition(node, now)

        assert result.primary.category is Category.EMPTY_CANDIDATE
        assert result.primary.severity is Severity.INFO
        assert Category.EMPTY_CANDIDATE in result.categories
        assert Category.CONSOLIDATION_CANDIDATE in result.categories
        assert "DETACH PARTITION s.p" in result.primary.remediation

    def test_small_partition(self, make_fact, now):
        node = _node(make_fact, live_rows=10, total_bytes=64 * 1024)

        assert assess_partition(node, now).primary.category is Category.CONSOLIDATION_CANDIDATE

    def test_vacuum_overdue(self, make_fact, now):
        node = _node(make_fact, last_vacuum=now - timedelta(days=8))
        result = assess_partition(node, now)

        assert result.primary.category is Category.VACUUM_OVERDUE
        assert result.primary.severity is Severity.WARNING

    def test_analyze_overdue(self, make_fact, now):
        node = _node(make_fact, last_analyze=now - timedelta(days=8))

        assert assess_partition(node, now).primary.category is Category.ANALYZE_OVERDUE

    def test_maintenance_needs_enough_rows(self, make_fact, now):
        old = now - timedelta(days=30)
        node = _node(make_fact, live_rows=1000, last_vacuum=old, last_analyze=old)

        assert assess_partition(node, now).primary.category is Category.NORMAL

    def test_never_vacuumed_is_not_overdue(self, make_fact, now):
        node = _node(make_fact, last_vacuum=None, last_analyze=None)

        assert assess_partition(node, now).primary.category is Category.NORMAL

    def test_partitioned_parent_stops_evaluation(self, make_fact, now):
        forest = build_forest([make_fact("s.root", partitioned=True)])
        result = assess_partition(forest["s.root"], now)

        assert result.categories == [Category.PARTITIONED_PARENT]

    def test_custom_thresholds(self, make_fact, now):
        node = _node(make_fact, live_rows=5000, total_bytes=3 * MIB)
        t = Thresholds(small_partition_bytes=4 * MIB, small_partition_rows=6000)

        assert assess_partition(node, now, t).primary.category is Category.CONSOLIDATION_CANDIDATE

    def test_orphan_and_truncation_findings(self, make_fact, now):
        forest = build_forest([make_fact("s.lost", "x.y")])
        result = assess_partition(forest["s.lost"], now)

        assert result.primary.category is Category.NORMAL
        assert Category.ORPHAN_PARTITION in result.categories
        assert result.worst is Severity.WARNING

        chain = [
            make_fact("s.r", partitioned=True),
            make_fact("s.c1", "s.r", partitioned=True),
            make_fact("s.c2", "s.c1"),
        ]
        forest = build_forest(chain, max_depth=1)
        assert Category.HIERARCHY_TRUNCATED in assess_partition(forest["s.c1"], now).categories

    def test_rule_order_is_fixed(self):
        assert [r.category for r in PARTITION_RULES] == [
            Category.PARTITIONED_PARENT,
            Category.MISSING_INDEX_SUSPECT,
            Category.EMPTY_CANDIDATE,
            Category.CONSOLIDATION_CANDIDATE,
            Category.VACUUM_OVERDUE,
            Category.ANALYZE_OVERDUE,
        ]


@pytest.mark.advisory
class TestParentRules:
    def test_balanced_parent(self, three_child_facts, now):
        agg = aggregate_parent(build_forest(three_child_facts), "public.events", now)
        out = assess_parent(agg)

        assert out[0].category is Category.LOW_VARIANCE
        assert out[0].severity is Severity.OK
        assert Category.MAINTENANCE_CURRENT in _categories(out)

    def test_variance_levels(self):
        assert assess_parent(_agg(size_stddev=6.0 * MIB))[0].category is Category.HIGH_VARIANCE
        assert assess_parent(_agg(size_stddev=3.0 * MIB))[0].category is Category.MODERATE_VARIANCE
        assert assess_parent(_agg(size_stddev=1.0 * MIB))[0].category is Category.LOW_VARIANCE

    def test_planning_overhead(self):
        out = assess_parent(_agg(partition_count=150))

        assert any(
            a.category is Category.PLANNING_OVERHEAD_RISK and a.severity is Severity.WARNING for a in out
        )

    def test_single_partition(self):
        out = assess_parent(_agg(partition_count=1))

        assert Category.SINGLE_PARTITION in _categories(out)

    def test_all_matching_rules_emitted(self):
        out = assess_parent(
            _agg(
                partition_count=10,
                empty_partitions=6,
                small_partitions=4,
                partitions_needing_vacuum=6,
            )
        )
        cats = _categories(out)

        assert Category.CLEANUP_RECOMMENDED in cats
        assert Category.STRATEGY_REVIEW in cats
        assert Category.MAINTENANCE_SCHEDULE_RECOMMENDED in cats
        assert Category.MAINTENANCE_CURRENT not in cats

    def test_analyze_alone_triggers_schedule(self):
        out = assess_parent(_agg(partitions_needing_analyze=6))
        sched = [a for a in out if a.category is Category.MAINTENANCE_SCHEDULE_RECOMMENDED]

        assert len(sched) == 1
        assert "ANALYZE" in sched[0].message

    def test_zero_children_does_not_raise(self):
        agg = _agg(
            partition_count=0,
            total_size=0,
            avg_size=None,
            min_size=None,
            max_size=None,
            size_stddev=None,
            total_rows=0,
            avg_rows_per_partition=None,
        )
        out = assess_parent(agg)

        assert out[0].category is Category.UNDEFINED_STATISTICS
        assert Category.SINGLE_PARTITION in _categories(out)

    def test_automation_suggestion(self):
        assert automation_suggestion(_agg(partition_count=12)) is None
        sql = automation_suggestion(_agg(partition_count=13))
        assert "'s.root'::regclass" in sql
        assert sql.lstrip().startswith("--")

    def test_thresholds_are_configurable(self):
        agg = _agg(partition_count=50)
        assert Category.PLANNING_OVERHEAD_RISK not in _categories(assess_parent(agg))
        t = replace(Thresholds(), max_partitions=40)
        assert Category.PLANNING_OVERHEAD_RISK in _categories(assess_parent(agg, t))


@pytest.mark.parametrize(
    "bound, expected",
    [
        ("FOR VALUES FROM ('2026-01-01') TO ('2026-02-01')", PartitionStrategy.RANGE),
        ("FOR VALUES IN ('eu', 'us')", PartitionStrategy.LIST),
        ("FOR VALUES WITH (modulus 4, remainder 1)", PartitionStrategy.HASH),
        ("DEFAULT", PartitionStrategy.DEFAULT),
        ("something odd", PartitionStrategy.OTHER),
        ("", PartitionStrategy.OTHER),
        (None, PartitionStrategy.OTHER),
    ],
)
def test_classify_strategy(bound, expected):
    assert classify_strategy(bound) is expected


@pytest.mark.parametrize(
    "setting, severity",
    [
        ("off", Severity.CRITICAL),
        ("on", Severity.WARNING),
        ("partition", Severity.OK),
        ("weird", Severity.INFO),
        (None, Severity.INFO),
    ],
)
def test_constraint_exclusion(setting, severity):
    assert assess_constraint_exclusion(setting).severity is severity


def test_database_totals():
    assert assess_database_totals(10)[0].severity is Severity.OK
    assert assess_database_totals(600)[0].severity is Severity.INFO
    caution = assess_database_totals(1500)
    assert caution[0].severity is Severity.WARNING
    assert Category.PRUNING_NOTE in _categories(caution)


def test_severity_ordering():
    assert Severity.OK < Severity.INFO < Severity.WARNING < Severity.CRITICAL
