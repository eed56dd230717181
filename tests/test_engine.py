"""End-to-end tests for the analysis pass and the report model."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from partlens.advisory import Category, Severity
from partlens.catalog import CatalogSnapshot, RelationFact
from partlens.config import Settings
from partlens.engine import analyze_facts, run_analysis
from partlens.exceptions import DataSourceError
from partlens.report import render_markdown

MIB = 1024 * 1024


def _node(report, name):
    for root in report.roots:
        for n in root.nodes:
            if n.name == name:
                return n
    raise KeyError(name)


def _parent(report, name):
    for root in report.roots:
        for p in root.parents:
            if p.aggregate.parent == name:
                return p
    raise KeyError(name)


class TestScenarios:
    def test_balanced_root(self, three_child_facts, now):
        report = analyze_facts(three_child_facts, now=now)

        parent = _parent(report, "public.events")
        variance = parent.assessments[0]
        assert (variance.category, variance.severity) == (Category.LOW_VARIANCE, Severity.OK)
        for root in report.roots:
            for n in root.nodes:
                assert Category.VACUUM_OVERDUE not in n.assessment.categories

    def test_empty_child(self, three_child_facts, make_fact, now):
        facts = three_child_facts[:-1] + [
            make_fact("public.events_2026_03", "public.events", live_rows=0, total_bytes=2 * 1024)
        ]
        report = analyze_facts(facts, now=now)

        cats = _node(report, "public.events_2026_03").assessment.categories
        assert Category.EMPTY_CANDIDATE in cats
        assert Category.CONSOLIDATION_CANDIDATE in cats

    def test_many_partitions(self, make_fact, now):
        facts = [make_fact("s.big", partitioned=True)]
        facts += [make_fact(f"s.big_{i:03d}", "s.big") for i in range(150)]
        report = analyze_facts(facts, now=now)

        parent = _parent(report, "s.big")
        assert any(
            a.category is Category.PLANNING_OVERHEAD_RISK and a.severity is Severity.WARNING
            for a in parent.assessments
        )
        assert parent.automation is not None

    def test_orphan_reported_not_raised(self, three_child_facts, make_fact, now):
        facts = three_child_facts + [make_fact("s.stray", "x.y")]
        report = analyze_facts(facts, now=now)

        assert [e.partition for e in report.orphans] == ["s.stray"]
        assert [r.root for r in report.roots] == ["public.events", "s.stray"]
        stray = _node(report, "s.stray")
        assert stray.depth == 0
        assert Category.ORPHAN_PARTITION in stray.assessment.categories

    def test_zero_children_parent(self, make_fact, now):
        report = analyze_facts([make_fact("s.lonely", partitioned=True)], now=now)

        agg = _parent(report, "s.lonely").aggregate
        assert agg.partition_count == 0
        assert agg.avg_size is None
        assert agg.size_stddev is None

    def test_cycle_visible_in_report(self, make_fact, now):
        facts = [
            make_fact("c.a", "c.b", partitioned=True),
            make_fact("c.b", "c.a", partitioned=True),
        ]
        report = analyze_facts(facts, now=now)

        assert report.truncated == ["c.b"]
        assert Category.HIERARCHY_TRUNCATED in _node(report, "c.b").assessment.categories


def test_empty_snapshot(now):
    report = analyze_facts([], now=now)

    assert report.roots == []
    assert report.worst_severity() is Severity.OK
    assert report.summary()["nodes"] == 0


def test_idempotent(three_child_facts, make_fact, now):
    facts = three_child_facts + [make_fact("s.stray", "x.y")]

    first = analyze_facts(facts, now=now, constraint_exclusion="partition").to_dict()
    second = analyze_facts(facts, now=now, constraint_exclusion="partition").to_dict()

    assert first == second


def test_workers_match_sequential(make_fact, now):
    facts = []
    for t in range(6):
        facts.append(make_fact(f"s.t{t}", partitioned=True))
        facts += [make_fact(f"s.t{t}_p{i}", f"s.t{t}", total_bytes=(i + 1) * MIB) for i in range(4)]

    sequential = analyze_facts(facts, settings=Settings(workers=1), now=now)
    parallel = analyze_facts(facts, settings=Settings(workers=4), now=now)

    assert [r.root for r in parallel.roots] == [f"s.t{t}" for t in range(6)]
    assert parallel.to_dict() == sequential.to_dict()


def test_constraint_exclusion_only_when_read(three_child_facts, now):
    assert analyze_facts(three_child_facts, now=now).constraint_exclusion is None

    report = analyze_facts(three_child_facts, now=now, constraint_exclusion="off")
    assert report.constraint_exclusion.severity is Severity.CRITICAL
    assert report.worst_severity() is Severity.CRITICAL


def test_report_serializes(three_child_facts, now):
    report = analyze_facts(three_child_facts, now=now)
    data = json.loads(json.dumps(report.to_dict()))

    root = data["roots"][0]
    assert root["root"] == "public.events"
    assert root["nodes"][0]["role"] == "ROOT"
    assert root["nodes"][1]["strategy"] == "RANGE"
    assert data["summary"]["roots"] == 1
    assert data["meta"]["max_depth"] == 10


def test_report_frames_and_markdown(three_child_facts, now):
    report = analyze_facts(three_child_facts, now=now)

    frames = report.to_frames()
    assert len(frames["partitions"]) == 4
    assert len(frames["parents"]) == 1
    assert frames["parents"].loc[0, "partition_count"] == 3

    md = render_markdown(report)
    assert md.startswith("# Partition health report")
    assert "`public.events`" in md
    assert "LOW_VARIANCE" not in md  # messages, not enum names, for parent verdicts
    assert "low variance" in md


@pytest.mark.mocked_deps
def test_run_analysis_uses_single_snapshot(three_child_facts, now, mocker):
    reader = mocker.MagicMock()
    reader.fetch_snapshot.return_value = CatalogSnapshot(
        facts=three_child_facts, captured_at=now, constraint_exclusion="partition"
    )

    report = run_analysis(reader)

    reader.fetch_snapshot.assert_called_once()
    assert report.captured_at == now
    assert report.constraint_exclusion.severity is Severity.OK


@pytest.mark.mocked_deps
def test_run_analysis_propagates_fetch_failure(mocker):
    reader = mocker.MagicMock()
    reader.fetch_snapshot.side_effect = DataSourceError("connection refused")

    with pytest.raises(DataSourceError):
        run_analysis(reader)


class TestTimezones:
    def _facts(self, vacuumed):
        return [
            RelationFact("s.root", is_partitioned=True),
            RelationFact("s.fresh", "s.root", total_bytes=10 * MIB, live_rows=5000, last_vacuum=vacuumed[0]),
            RelationFact("s.old", "s.root", total_bytes=10 * MIB, live_rows=5000, last_vacuum=vacuumed[1]),
        ]

    def test_naive_facts_and_naive_now(self):
        now = datetime(2026, 3, 1, 12, 0)
        report = analyze_facts(self._facts([now - timedelta(days=1), now - timedelta(days=8)]), now=now)

        fresh = _node(report, "s.fresh")
        assert fresh.metrics.vacuum_age_days == pytest.approx(1.0)
        assert Category.VACUUM_OVERDUE in _node(report, "s.old").assessment.categories
        assert _parent(report, "s.root").aggregate.partitions_needing_vacuum == 1

    def test_naive_facts_with_aware_now(self, now):
        naive = now.replace(tzinfo=None)
        report = analyze_facts(self._facts([naive - timedelta(days=1), naive - timedelta(days=8)]), now=now)

        assert _parent(report, "s.root").aggregate.partitions_needing_vacuum == 1

    def test_aware_facts_in_other_zone(self, now):
        plus2 = timezone(timedelta(hours=2))
        local = now.astimezone(plus2)
        report = analyze_facts(self._facts([local - timedelta(days=1), local - timedelta(days=8)]), now=now)

        assert _node(report, "s.fresh").metrics.vacuum_age_days == pytest.approx(1.0)


def test_database_totals_count_partitions_below_truncation(make_fact, now):
    facts = [make_fact("s.r", partitioned=True), make_fact("s.mid", "s.r", partitioned=True)]
    facts += [make_fact(f"s.leaf_{i:02d}", "s.mid") for i in range(60)]

    report = analyze_facts(facts, settings=Settings(max_depth=1), now=now)

    assert report.truncated == ["s.mid"]
    assert report.summary()["nodes"] == 2
    assert Category.PRUNING_NOTE in [a.category for a in report.database]
    assert "61 partitions" in report.database[0].message
