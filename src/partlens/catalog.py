"""
Catalog snapshot reader.

Pulls flat relation facts for every partitioned table and partition from
PostgreSQL system catalogs in a single read-only query:

- pg_class / pg_namespace: identity, relkind, partition bound
- pg_inherits: parent link
- pg_stat_user_tables: live-row estimate, scan counters, vacuum/analyze times

Usage:
    from sqlalchemy import create_engine
    from partlens.catalog import CatalogSnapshotReader

    engine = create_engine("postgresql+psycopg://user@host/db")
    reader = CatalogSnapshotReader(engine)
    facts = reader.fetch_relation_facts()

Snapshots can also be written to / loaded from JSON (``save_snapshot`` /
``load_snapshot``) so an analysis can be repeated offline.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from sqlalchemy import Engine, bindparam, text
from sqlalchemy.exc import SQLAlchemyError

from partlens.config import ReaderSettings
from partlens.exceptions import DataSourceError

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = ("pg_catalog", "information_schema", "pg_toast")

_RELATIONS_SQL = """
SELECT
    n.nspname || '.' || c.relname AS name,
    CASE WHEN p.oid IS NULL THEN NULL ELSE pn.nspname || '.' || p.relname END AS parent,
    c.relkind = 'p' AS is_partitioned,
    pg_total_relation_size(c.oid) AS total_bytes,
    pg_relation_size(c.oid) AS table_bytes,
    COALESCE(st.n_live_tup, 0) AS live_rows,
    COALESCE(st.seq_scan, 0) AS seq_scan,
    COALESCE(st.seq_tup_read, 0) AS seq_tup_read,
    COALESCE(st.idx_scan, 0) AS idx_scan,
    COALESCE(st.idx_tup_fetch, 0) AS idx_tup_fetch,
    st.last_vacuum,
    st.last_autovacuum,
    st.last_analyze,
    st.last_autoanalyze,
    pg_get_expr(c.relpartbound, c.oid) AS partition_bound
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
LEFT JOIN pg_inherits i ON i.inhrelid = c.oid
LEFT JOIN pg_class p ON p.oid = i.inhparent
LEFT JOIN pg_namespace pn ON pn.oid = p.relnamespace
LEFT JOIN pg_stat_user_tables st ON st.relid = c.oid
WHERE c.relkind IN ('r', 'p', 'f')
  AND (c.relkind = 'p' OR c.relispartition)
  AND n.nspname NOT IN :system_schemas
"""

_SCHEMA_FILTER_SQL = "  AND n.nspname IN :schemas\n"

_ORDER_SQL = "ORDER BY n.nspname, c.relname"

_CONSTRAINT_EXCLUSION_SQL = "SELECT setting FROM pg_settings WHERE name = 'constraint_exclusion'"


# =============================================================================
# Relation facts
# =============================================================================


@dataclass(frozen=True)
class RelationFact:
    """
    One table or partition as seen in the catalog.

    Attributes:
        name: Schema-qualified identity ("schema.table")
        parent: Schema-qualified parent identity, None for a root
        is_partitioned: True for a partitioned table (relkind 'p')
        total_bytes: pg_total_relation_size (table + indexes + toast)
        table_bytes: pg_relation_size (heap only)
        live_rows: n_live_tup estimate
        partition_bound: pg_get_expr(relpartbound), free-form
    """

    name: str
    parent: Optional[str] = None
    is_partitioned: bool = False
    total_bytes: int = 0
    table_bytes: int = 0
    live_rows: int = 0
    seq_scan: int = 0
    seq_tup_read: int = 0
    idx_scan: int = 0
    idx_tup_fetch: int = 0
    last_vacuum: Optional[datetime] = None
    last_autovacuum: Optional[datetime] = None
    last_analyze: Optional[datetime] = None
    last_autoanalyze: Optional[datetime] = None
    partition_bound: Optional[str] = None

    def __post_init__(self) -> None:
        # naive timestamps are UTC, same as records loaded from JSON
        for key in _TS_FIELDS:
            ts = getattr(self, key)
            if ts is not None and ts.tzinfo is None:
                object.__setattr__(self, key, ts.replace(tzinfo=timezone.utc))

    @property
    def vacuumed_at(self) -> Optional[datetime]:
        """Most recent manual or automatic vacuum, None if never."""
        return _latest(self.last_vacuum, self.last_autovacuum)

    @property
    def analyzed_at(self) -> Optional[datetime]:
        """Most recent manual or automatic analyze, None if never."""
        return _latest(self.last_analyze, self.last_autoanalyze)


@dataclass
class CatalogSnapshot:
    """Everything a single analysis pass reads from the database."""

    facts: list[RelationFact]
    captured_at: datetime
    constraint_exclusion: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)


_TS_FIELDS = ("last_vacuum", "last_autovacuum", "last_analyze", "last_autoanalyze")
_COUNTER_FIELDS = (
    "total_bytes",
    "table_bytes",
    "live_rows",
    "seq_scan",
    "seq_tup_read",
    "idx_scan",
    "idx_tup_fetch",
)
_TRUE_STRINGS = {"true", "t", "1", "yes"}
_FALSE_STRINGS = {"false", "f", "0", "no"}


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


def _safe_int(value: Any, default: int = 0) -> int:
    """None means "not reported" and maps to ``default``; anything else must be an integer."""
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"expected an integer, got {value!r}")
    return int(value)


def _parse_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in _TRUE_STRINGS:
            return True
        if s in _FALSE_STRINGS:
            return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _parse_ts(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC. Blank means never."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def fact_from_mapping(row: Mapping[str, Any]) -> RelationFact:
    """
    Build a RelationFact from a catalog row or a JSON record.

    Missing or null counters read as 0 and missing timestamps as "never".
    A value that is present but cannot be read raises DataSourceError.
    """
    name = row.get("name")
    if not isinstance(name, str) or not name:
        raise DataSourceError(f"Relation record without a name: {dict(row)!r}")

    parent = row.get("parent")
    bound = row.get("partition_bound")

    key = "is_partitioned"
    try:
        is_partitioned = _parse_bool(row.get(key))
        counters = {}
        for key in _COUNTER_FIELDS:
            counters[key] = _safe_int(row.get(key))
        stamps = {}
        for key in _TS_FIELDS:
            stamps[key] = _parse_ts(row.get(key))
    except (TypeError, ValueError) as e:
        raise DataSourceError(f"{name}: bad {key}={row.get(key)!r}") from e

    return RelationFact(
        name=name,
        parent=str(parent) if parent else None,
        is_partitioned=is_partitioned,
        partition_bound=str(bound) if bound is not None else None,
        **counters,
        **stamps,
    )


def facts_from_records(records: Iterable[Mapping[str, Any]]) -> list[RelationFact]:
    """Convert JSON-style dict records into RelationFacts (input order kept)."""
    facts: list[RelationFact] = []
    for rec in records:
        if not isinstance(rec, Mapping):
            raise DataSourceError(f"Relation record must be an object, got {type(rec).__name__}")
        facts.append(fact_from_mapping(rec))
    return facts


def facts_to_records(facts: Sequence[RelationFact]) -> list[dict[str, Any]]:
    """Inverse of facts_from_records; timestamps become ISO-8601 strings."""
    out: list[dict[str, Any]] = []
    for f in facts:
        out.append(
            {
                "name": f.name,
                "parent": f.parent,
                "is_partitioned": f.is_partitioned,
                "total_bytes": f.total_bytes,
                "table_bytes": f.table_bytes,
                "live_rows": f.live_rows,
                "seq_scan": f.seq_scan,
                "seq_tup_read": f.seq_tup_read,
                "idx_scan": f.idx_scan,
                "idx_tup_fetch": f.idx_tup_fetch,
                "last_vacuum": _iso(f.last_vacuum),
                "last_autovacuum": _iso(f.last_autovacuum),
                "last_analyze": _iso(f.last_analyze),
                "last_autoanalyze": _iso(f.last_autoanalyze),
                "partition_bound": f.partition_bound,
            }
        )
    return out


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# JSON snapshots
# =============================================================================


def save_snapshot(snapshot: CatalogSnapshot, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "meta": {
            **snapshot.meta,
            "captured_at": snapshot.captured_at.isoformat(),
            "constraint_exclusion": snapshot.constraint_exclusion,
            "relation_count": len(snapshot.facts),
        },
        "relations": facts_to_records(snapshot.facts),
    }
    p.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return p


def load_snapshot(path: str | Path) -> CatalogSnapshot:
    """
    Load a snapshot written by save_snapshot.

    Also accepts a bare JSON list of relation records.
    """
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise DataSourceError(f"Cannot read snapshot {p}: {e}") from e

    if isinstance(data, list):
        meta: dict[str, Any] = {}
        records = data
    elif isinstance(data, dict):
        meta = data.get("meta", {}) or {}
        records = data.get("relations", [])
    else:
        raise DataSourceError(f"Unsupported snapshot shape in {p}")

    if not isinstance(records, list):
        raise DataSourceError(f"'relations' must be a list in {p}")

    try:
        captured_at = _parse_ts(meta.get("captured_at")) or datetime.now(timezone.utc)
    except (TypeError, ValueError) as e:
        raise DataSourceError(f"Bad captured_at in {p}: {meta.get('captured_at')!r}") from e
    return CatalogSnapshot(
        facts=facts_from_records(records),
        captured_at=captured_at,
        constraint_exclusion=meta.get("constraint_exclusion"),
        meta={k: v for k, v in meta.items() if k not in {"captured_at", "constraint_exclusion"}},
    )


# =============================================================================
# Reader
# =============================================================================


class CatalogSnapshotReader:
    """
    Read-only access to the partition catalog.

    Every database failure is wrapped in DataSourceError; the caller aborts
    the analysis. Nothing here retries.
    """

    def __init__(self, engine: Engine, settings: Optional[ReaderSettings] = None):
        """
        Args:
            engine: SQLAlchemy engine for the target database
            settings: Optional schema filter and statement timeout
        """
        self.engine = engine
        self.settings = settings or ReaderSettings()

    def relations_query(self):
        sql = _RELATIONS_SQL
        params = [bindparam("system_schemas", expanding=True)]
        if self.settings.schemas:
            sql += _SCHEMA_FILTER_SQL
            params.append(bindparam("schemas", expanding=True))
        return text(sql + _ORDER_SQL).bindparams(*params)

    def _query_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"system_schemas": list(SYSTEM_SCHEMAS)}
        if self.settings.schemas:
            params["schemas"] = list(self.settings.schemas)
        return params

    def _apply_session_settings(self, conn: Any) -> None:
        conn.execute(
            text("SELECT set_config('statement_timeout', :ms, false)"),
            {"ms": str(int(self.settings.statement_timeout_ms))},
        )

    def fetch_relation_facts(self) -> list[RelationFact]:
        """
        Fetch one RelationFact per partitioned table and partition.

        Returns:
            Facts in catalog order; empty when the database has no partitions

        Raises:
            DataSourceError: if the metadata query cannot be executed
        """
        try:
            with self.engine.connect() as conn:
                self._apply_session_settings(conn)
                rows = conn.execute(self.relations_query(), self._query_params()).mappings().all()
        except SQLAlchemyError as e:
            logger.error(f"Catalog query failed: {e}")
            raise DataSourceError(f"Failed to read partition catalog: {e}") from e

        facts = [fact_from_mapping(r) for r in rows]
        logger.info(f"Fetched {len(facts)} partitioned relations")
        return facts

    def fetch_constraint_exclusion(self) -> Optional[str]:
        """Current value of the constraint_exclusion setting (read, never altered)."""
        try:
            with self.engine.connect() as conn:
                value = conn.execute(text(_CONSTRAINT_EXCLUSION_SQL)).scalar()
        except SQLAlchemyError as e:
            logger.error(f"Reading constraint_exclusion failed: {e}")
            raise DataSourceError(f"Failed to read constraint_exclusion: {e}") from e
        return str(value) if value is not None else None

    def fetch_snapshot(self) -> CatalogSnapshot:
        captured_at = datetime.now(timezone.utc)
        facts = self.fetch_relation_facts()
        setting = self.fetch_constraint_exclusion()
        return CatalogSnapshot(
            facts=facts,
            captured_at=captured_at,
            constraint_exclusion=setting,
            meta={"schemas": list(self.settings.schemas)},
        )
