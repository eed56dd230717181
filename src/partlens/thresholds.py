"""
Advisory thresholds.

The module-level constants are the defaults used by the rule tables in
partlens.advisory and the counters in partlens.aggregate. ``Thresholds``
bundles them so they can be overridden from YAML (see partlens.config)
without touching the rules themselves.
"""

from __future__ import annotations

from dataclasses import dataclass

MIB = 1024 * 1024

# Per-partition rules
SEQ_SCAN_MIN_ROWS = 10_000
SMALL_PARTITION_BYTES = 1 * MIB
SMALL_PARTITION_ROWS = 1_000
MAINTENANCE_MIN_ROWS = 1_000
STALE_AFTER_DAYS = 7

# Per-parent rules
HIGH_VARIANCE_RATIO = 0.5
MODERATE_VARIANCE_RATIO = 0.2
MAX_PARTITIONS = 100
MIN_PARTITIONS = 2
MAX_EMPTY_PARTITIONS = 5
SMALL_PARTITION_SHARE = 0.3
STALE_PARTITION_SHARE = 0.5
AUTOMATION_MIN_PARTITIONS = 12

# Database-wide
DB_PARTITIONS_CAUTION = 1_000
DB_PARTITIONS_MONITOR = 500
PRUNING_NOTE_PARTITIONS = 50

DEFAULT_MAX_DEPTH = 10


@dataclass(frozen=True)
class Thresholds:
    """Numeric cut-offs for every advisory rule."""

    seq_scan_min_rows: int = SEQ_SCAN_MIN_ROWS
    small_partition_bytes: int = SMALL_PARTITION_BYTES
    small_partition_rows: int = SMALL_PARTITION_ROWS
    maintenance_min_rows: int = MAINTENANCE_MIN_ROWS
    stale_after_days: int = STALE_AFTER_DAYS

    high_variance_ratio: float = HIGH_VARIANCE_RATIO
    moderate_variance_ratio: float = MODERATE_VARIANCE_RATIO
    max_partitions: int = MAX_PARTITIONS
    min_partitions: int = MIN_PARTITIONS
    max_empty_partitions: int = MAX_EMPTY_PARTITIONS
    small_partition_share: float = SMALL_PARTITION_SHARE
    stale_partition_share: float = STALE_PARTITION_SHARE
    automation_min_partitions: int = AUTOMATION_MIN_PARTITIONS

    db_partitions_caution: int = DB_PARTITIONS_CAUTION
    db_partitions_monitor: int = DB_PARTITIONS_MONITOR
    pruning_note_partitions: int = PRUNING_NOTE_PARTITIONS
