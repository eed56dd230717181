"""
Shared fixtures: a fixed reference time and a RelationFact factory.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from partlens.catalog import RelationFact

MIB = 1024 * 1024


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_fact(now):
    """
    Factory for RelationFacts with healthy defaults.

    Leaf partitions default to 10 MiB / 5000 rows, vacuumed and analyzed a day
    before ``now``; partitioned parents default to zero size and rows.
    """

    def _make(name: str, parent: str | None = None, partitioned: bool = False, **kw) -> RelationFact:
        yesterday = now - timedelta(days=1)
        defaults = dict(
            name=name,
            parent=parent,
            is_partitioned=partitioned,
            total_bytes=0 if partitioned else 10 * MIB,
            table_bytes=0 if partitioned else 8 * MIB,
            live_rows=0 if partitioned else 5000,
            last_vacuum=None if partitioned else yesterday,
            last_analyze=None if partitioned else yesterday,
            partition_bound=None,
        )
        defaults.update(kw)
        return RelationFact(**defaults)

    return _make


@pytest.fixture
def three_child_facts(make_fact):
    """public.events partitioned by month into three equal partitions."""
    return [
        make_fact("public.events", partitioned=True),
        make_fact(
            "public.events_2026_01",
            "public.events",
            partition_bound="FOR VALUES FROM ('2026-01-01') TO ('2026-02-01')",
        ),
        make_fact(
            "public.events_2026_02",
            "public.events",
            partition_bound="FOR VALUES FROM ('2026-02-01') TO ('2026-03-01')",
        ),
        make_fact(
            "public.events_2026_03",
            "public.events",
            partition_bound="FOR VALUES FROM ('2026-03-01') TO ('2026-04-01')",
        ),
    ]
