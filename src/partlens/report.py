"""
Report model.

The structured result of one analysis pass: every partition tree with
per-node assessments, per-parent aggregates and assessments, and the
structural anomalies (orphans, truncated branches) found while building the
forest. ``to_dict`` is JSON-serializable; ``to_frames`` gives pandas tables;
``render_markdown`` is a compact human-readable view.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

import pandas as pd

from partlens.advisory import Assessment, PartitionAssessment, PartitionStrategy, Severity
from partlens.aggregate import ParentAggregate, PartitionMetrics
from partlens.exceptions import OrphanPartitionError
from partlens.thresholds import Thresholds
from partlens.topology import NodeRole


@dataclass
class NodeReport:
    name: str
    parent: Optional[str]
    depth: int
    path: tuple[str, ...]
    role: NodeRole
    strategy: PartitionStrategy
    is_partitioned: bool
    total_bytes: int
    table_bytes: int
    live_rows: int
    partition_bound: Optional[str]
    metrics: PartitionMetrics
    assessment: PartitionAssessment
    children: list[str] = field(default_factory=list)
    truncated: bool = False
    truncated_children: list[str] = field(default_factory=list)
    orphan: Optional[OrphanPartitionError] = None
    synthetic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "parent": self.parent,
            "depth": self.depth,
            "path": list(self.path),
            "role": self.role.name,
            "strategy": self.strategy.name,
            "is_partitioned": self.is_partitioned,
            "total_bytes": self.total_bytes,
            "table_bytes": self.table_bytes,
            "live_rows": self.live_rows,
            "partition_bound": self.partition_bound,
            "children": list(self.children),
            "truncated": self.truncated,
            "truncated_children": list(self.truncated_children),
            "orphan": self.orphan.to_dict() if self.orphan else None,
            "synthetic": self.synthetic,
            "metrics": self.metrics.to_dict(),
            "assessment": self.assessment.to_dict(),
        }


@dataclass
class ParentReport:
    aggregate: ParentAggregate
    assessments: list[Assessment]
    automation: Optional[str] = None

    @property
    def worst(self) -> Severity:
        return max((a.severity for a in self.assessments), default=Severity.OK)

    def to_dict(self) -> dict[str, Any]:
        return {
            "aggregate": self.aggregate.to_dict(),
            "assessments": [a.to_dict() for a in self.assessments],
            "automation": self.automation,
        }


@dataclass
class RootReport:
    """One partition tree, nodes in pre-order, parents root first."""

    root: str
    nodes: list[NodeReport]
    parents: list[ParentReport]

    def assessments(self) -> list[Assessment]:
        out: list[Assessment] = []
        for n in self.nodes:
            out.extend(n.assessment.findings)
        for p in self.parents:
            out.extend(p.assessments)
        return out

    def worst_severity(self) -> Severity:
        return max((a.severity for a in self.assessments()), default=Severity.OK)

    def to_dict(self) -> dict[str, Any]:
        return {
            "root": self.root,
            "worst_severity": self.worst_severity().name,
            "nodes": [n.to_dict() for n in self.nodes],
            "parents": [p.to_dict() for p in self.parents],
        }


@dataclass
class PartitionReport:
    captured_at: datetime
    max_depth: int
    thresholds: Thresholds
    roots: list[RootReport] = field(default_factory=list)
    orphans: list[OrphanPartitionError] = field(default_factory=list)
    truncated: list[str] = field(default_factory=list)
    constraint_exclusion: Optional[Assessment] = None
    database: list[Assessment] = field(default_factory=list)

    def all_assessments(self) -> list[Assessment]:
        out: list[Assessment] = []
        for r in self.roots:
            out.extend(r.assessments())
        if self.constraint_exclusion is not None:
            out.append(self.constraint_exclusion)
        out.extend(self.database)
        return out

    def worst_severity(self) -> Severity:
        return max((a.severity for a in self.all_assessments()), default=Severity.OK)

    def summary(self) -> dict[str, Any]:
        counts = Counter(a.severity.name for a in self.all_assessments())
        return {
            "roots": len(self.roots),
            "nodes": sum(len(r.nodes) for r in self.roots),
            "parents": sum(len(r.parents) for r in self.roots),
            "orphans": len(self.orphans),
            "truncated": len(self.truncated),
            "severity_counts": {s.name: counts.get(s.name, 0) for s in Severity},
            "worst_severity": self.worst_severity().name,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "meta": {
                "captured_at": self.captured_at.isoformat(),
                "max_depth": self.max_depth,
                "thresholds": asdict(self.thresholds),
            },
            "summary": self.summary(),
            "constraint_exclusion": self.constraint_exclusion.to_dict() if self.constraint_exclusion else None,
            "database": [a.to_dict() for a in self.database],
            "orphans": [e.to_dict() for e in self.orphans],
            "truncated": list(self.truncated),
            "roots": [r.to_dict() for r in self.roots],
        }

    def to_frames(self) -> dict[str, pd.DataFrame]:
        """Tabular view: one row per node ("partitions") and per parent ("parents")."""
        node_rows: list[dict[str, Any]] = []
        parent_rows: list[dict[str, Any]] = []
        for r in self.roots:
            for n in r.nodes:
                primary = n.assessment.primary
                node_rows.append(
                    {
                        "root": r.root,
                        "name": n.name,
                        "parent": n.parent,
                        "depth": n.depth,
                        "role": n.role.name,
                        "strategy": n.strategy.name,
                        "total_bytes": n.total_bytes,
                        "live_rows": n.live_rows,
                        "seq_scan_ratio": n.metrics.seq_scan_ratio,
                        "vacuum_age_days": n.metrics.vacuum_age_days,
                        "analyze_age_days": n.metrics.analyze_age_days,
                        "category": primary.category.name,
                        "severity": primary.severity.name,
                        "findings": ",".join(c.name for c in n.assessment.categories),
                        "truncated": n.truncated,
                        "orphan": n.orphan is not None,
                    }
                )
            for p in r.parents:
                row = {"root": r.root, **p.aggregate.to_dict()}
                row["worst_severity"] = p.worst.name
                row["categories"] = ",".join(a.category.name for a in p.assessments)
                parent_rows.append(row)
        return {
            "partitions": pd.DataFrame(node_rows),
            "parents": pd.DataFrame(parent_rows),
        }


# -----------------------
# Markdown rendering
# -----------------------

def _md_escape(s: str) -> str:
    return s.replace("|", "\\|")


def _human_bytes(n: Any) -> str:
    try:
        x = float(n)
    except (TypeError, ValueError):
        return "undefined"
    if x < 0:
        return str(n)
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    i = 0
    while x >= 1024.0 and i < len(units) - 1:
        x /= 1024.0
        i += 1
    if i == 0:
        return f"{int(x)} {units[i]}"
    return f"{x:.2f} {units[i]}"


def _fmt_days(v: Optional[float]) -> str:
    return "never" if v is None else f"{v:.1f}d"


def render_markdown(report: PartitionReport) -> str:
    """
    Render a report as Markdown.

    Structure:
      1) Header + summary
      2) Database-wide checks
      3) Structural anomalies (orphans, truncation)
      4) One section per root: parent assessments, then the partition table
    """
    lines: list[str] = []
    s = report.summary()

    lines.append("# Partition health report")
    lines.append("")
    lines.append(f"- Captured at: `{report.captured_at.isoformat()}`")
    lines.append(f"- Roots: **{s['roots']}**, nodes: **{s['nodes']}**, worst severity: **{s['worst_severity']}**")
    counts = ", ".join(f"{k}={v}" for k, v in s["severity_counts"].items())
    lines.append(f"- Assessments: {counts}")
    lines.append("")

    lines.append("## Database")
    lines.append("")
    db = ([report.constraint_exclusion] if report.constraint_exclusion else []) + report.database
    for a in db:
        lines.append(f"- **{a.severity.name}** {_md_escape(a.message)}")
    lines.append("")

    if report.orphans or report.truncated:
        lines.append("## Structural anomalies")
        lines.append("")
        for e in report.orphans:
            lines.append(f"- ORPHAN `{e.partition}` (missing parent `{e.missing_parent}`)")
        for name in report.truncated:
            lines.append(f"- TRUNCATED `{name}`")
        lines.append("")

    for r in report.roots:
        lines.append(f"## `{r.root}` ({r.worst_severity().name})")
        lines.append("")
        for p in r.parents:
            agg = p.aggregate
            lines.append(
                f"### `{agg.parent}`: {agg.partition_count} partitions, "
                f"{_human_bytes(agg.total_size)} total, avg {_human_bytes(agg.avg_size)}, "
                f"{agg.total_rows} rows"
            )
            lines.append("")
            for a in p.assessments:
                lines.append(f"- **{a.severity.name}** {_md_escape(a.message)}")
            if p.automation:
                lines.append("")
                lines.append("```sql")
                lines.append(p.automation)
                lines.append("```")
            lines.append("")

        lines.append("| partition | role | strategy | size | rows | vacuum | analyze | assessment |")
        lines.append("|---|---|---|---:|---:|---:|---:|---|")
        for n in r.nodes:
            label = "  " * n.depth + n.name
            cats = ", ".join(c.name for c in n.assessment.categories)
            lines.append(
                f"| {_md_escape(label)} | {n.role.name} | {n.strategy.name} | "
                f"{_human_bytes(n.total_bytes)} | {n.live_rows} | "
                f"{_fmt_days(n.metrics.vacuum_age_days)} | {_fmt_days(n.metrics.analyze_age_days)} | "
                f"{n.assessment.primary.severity.name}: {_md_escape(cats)} |"
            )
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
