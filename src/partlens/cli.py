# src/partlens/cli.py
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine

from partlens.advisory import Severity
from partlens.catalog import CatalogSnapshotReader, load_snapshot, save_snapshot
from partlens.config import Settings, load_settings, redact_url, resolve_db_url
from partlens.engine import analyze_facts, run_analysis
from partlens.exceptions import ConfigError, DataSourceError
from partlens.report import PartitionReport, render_markdown

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2
EXIT_SEVERITY = 3


# ----------------------------
# Helpers
# ----------------------------
def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _reader(args: argparse.Namespace, settings: Settings) -> CatalogSnapshotReader:
    url = resolve_db_url(settings, override=getattr(args, "db_url", None))
    logger.info(f"Connecting to {redact_url(url)}")
    engine = create_engine(url)
    return CatalogSnapshotReader(engine, settings.reader)


def _apply_overrides(args: argparse.Namespace, settings: Settings) -> Settings:
    if getattr(args, "schema", None):
        settings.reader.schemas = list(args.schema)
    if getattr(args, "max_depth", None) is not None:
        if args.max_depth < 0:
            raise ConfigError("--max-depth must be >= 0")
        settings.max_depth = int(args.max_depth)
    if getattr(args, "workers", None) is not None:
        settings.workers = max(1, int(args.workers))
    return settings


def _emit(text_out: str, out: Optional[str]) -> None:
    if out:
        p = Path(out)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text_out, encoding="utf-8")
        logger.info(f"Wrote {p}")
    else:
        sys.stdout.write(text_out)


def _format_report(report: PartitionReport, fmt: str) -> str:
    if fmt == "md":
        return render_markdown(report)
    return json.dumps(report.to_dict(), indent=2, default=str) + "\n"


# ----------------------------
# Commands
# ----------------------------
def cmd_analyze(args: argparse.Namespace) -> int:
    """
    Analyze partition health, from a live database or a saved snapshot (--in-path).
    """
    settings = _apply_overrides(args, load_settings(args.config))

    if args.in_path:
        snapshot = load_snapshot(args.in_path)
        logger.info(f"Loaded {len(snapshot.facts)} relations from {args.in_path}")
        report = analyze_facts(
            snapshot.facts,
            settings=settings,
            now=snapshot.captured_at,
            constraint_exclusion=snapshot.constraint_exclusion,
        )
    else:
        report = run_analysis(_reader(args, settings), settings)

    _emit(_format_report(report, args.format), args.out)

    if args.fail_on:
        threshold = Severity[args.fail_on]
        worst = report.worst_severity()
        if worst >= threshold:
            logger.warning(f"Worst severity {worst.name} >= --fail-on {threshold.name}")
            return EXIT_SEVERITY
    return EXIT_OK


def cmd_snapshot(args: argparse.Namespace) -> int:
    """Write the raw relation facts to JSON for later offline analysis."""
    settings = _apply_overrides(args, load_settings(args.config))
    snapshot = _reader(args, settings).fetch_snapshot()
    path = save_snapshot(snapshot, args.out)
    logger.info(f"Wrote {len(snapshot.facts)} relations to {path}")
    return EXIT_OK


# ----------------------------
# Main / Parser
# ----------------------------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="partlens",
        description="Partition topology and health analysis for PostgreSQL (read-only).",
    )
    ap.add_argument("--config", default=None, help="YAML config (default: built-in defaults)")
    ap.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    sub = ap.add_subparsers(dest="cmd")

    def _add_common(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--db-url", default=None, help="Database URL (overrides env / config)")
        sp.add_argument("--schema", action="append", help="Limit to schema (repeatable)")
        sp.add_argument("--max-depth", type=int, default=None, help="Hierarchy depth limit (default 10)")

    p_an = sub.add_parser("analyze", help="Build the partition forest and assess its health")
    _add_common(p_an)
    p_an.add_argument("--in-path", default=None, help="Analyze a snapshot JSON instead of a live DB")
    p_an.add_argument("--format", choices=["json", "md"], default="json")
    p_an.add_argument("--out", default=None, help="Write report here instead of stdout")
    p_an.add_argument("--workers", type=int, default=None, help="Threads for per-root analysis")
    p_an.add_argument(
        "--fail-on",
        choices=[s.name for s in Severity],
        default=None,
        help=f"Exit {EXIT_SEVERITY} when the worst severity reaches this level",
    )
    p_an.set_defaults(func=cmd_analyze)

    p_snap = sub.add_parser("snapshot", help="Write relation facts JSON for offline analysis")
    _add_common(p_snap)
    p_snap.add_argument("--out", required=True, help="Output JSON path")
    p_snap.set_defaults(func=cmd_snapshot)

    return ap


def main(argv: Optional[list[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    _setup_logging(args.log_level)

    if not (hasattr(args, "func") and callable(args.func)):
        ap.print_help()
        return EXIT_USAGE

    try:
        return int(args.func(args))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_ERROR
    except DataSourceError as e:
        logger.error(f"Analysis aborted: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
