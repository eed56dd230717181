"""
Central configuration loader for partlens.

- Reads config/default.yaml (or any YAML path)
- Converts nested mappings into typed dataclasses
- Supports safe forward-compatibility (unknown keys ignored)
- Resolves the database URL from the environment / db_config.env
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from partlens.exceptions import ConfigError
from partlens.thresholds import DEFAULT_MAX_DEPTH, Thresholds

logger = logging.getLogger(__name__)

DB_URL_ENV_VARS = ("PARTLENS_DB_URL", "TARGET_DB_URL")
DEFAULT_STATEMENT_TIMEOUT_MS = 15_000


# -----------------------------
# Small, typed sub-configs
# -----------------------------
@dataclass
class ReaderSettings:
    """Catalog reader options."""
    schemas: list[str] = field(default_factory=list)   # empty => all non-system schemas
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS


# -----------------------------
# Top-level Settings
# -----------------------------
@dataclass
class Settings:
    """
    Root configuration object for partlens.
    This dataclass holds everything parsed from YAML.
    """

    db_url: Optional[str] = None
    max_depth: int = DEFAULT_MAX_DEPTH
    workers: int = 1                   # >1 fans per-root analysis out to threads
    reader: ReaderSettings = field(default_factory=ReaderSettings)
    thresholds: Thresholds = field(default_factory=Thresholds)


# -----------------------------
# Helpers
# -----------------------------
def project_root(start: str | Path | None = None) -> Path:
    """
    Walk upward from 'start' (or the cwd) until a folder containing pyproject.toml or .git is found.
    """
    cur = Path(start or Path.cwd()).resolve()
    for p in [cur, *cur.parents]:
        if (p / "pyproject.toml").exists() or (p / ".git").exists():
            return p
    return cur


def _as(obj: Any, cls: Any):
    """
    Minimal recursive 'constructor' to turn nested dicts into dataclass instances.
    Ignores unknown keys so YAML can be slightly ahead of code.
    """
    if obj is None or isinstance(obj, cls):
        return obj if obj is not None else cls()
    if isinstance(obj, dict):
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(obj) - set(known))
        if unknown:
            logger.warning(f"Ignoring unknown {cls.__name__} keys: {', '.join(unknown)}")
        kwargs = {k: v for k, v in obj.items() if k in known}
        for name, value in list(kwargs.items()):
            default = known[name].default_factory  # type: ignore[misc]
            if not callable(default):
                continue
            sub = type(default())
            if is_dataclass(sub) and not isinstance(value, sub):
                kwargs[name] = _as(value, sub)
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigError(f"Invalid {cls.__name__} section: {e}") from e
    raise ConfigError(f"Expected a mapping for {cls.__name__}, got {type(obj).__name__}")


def load_settings(yaml_path: str | Path | None = None) -> Settings:
    """
    Load YAML into Settings and coerce nested mappings into typed dataclasses.

    With no path, defaults are used. Relative paths are resolved against the
    project root first, then the current directory. Environment variables
    PARTLENS_DB_URL / TARGET_DB_URL override db_url.
    """
    data: dict[str, Any] = {}
    if yaml_path is not None:
        yml = Path(yaml_path)
        candidates = [yml] if yml.is_absolute() else [project_root() / yml, Path.cwd() / yml]
        p = next((c for c in candidates if c.exists()), None)
        if p is None:
            raise ConfigError(f"Configuration file not found: {yaml_path}")
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {p}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Top level of {p} must be a mapping")

    settings = _as(data, Settings)

    for var in DB_URL_ENV_VARS:
        if os.getenv(var):
            settings.db_url = os.getenv(var)
            break

    if settings.max_depth < 0:
        raise ConfigError("max_depth must be >= 0")
    if settings.workers < 1:
        raise ConfigError("workers must be >= 1")
    return settings


# -----------------------------
# Database URL
# -----------------------------
def normalize_db_url(url: str) -> str:
    """
    Accept plain libpq-style or psycopg2 URLs and point them at the psycopg (v3) driver.
    """
    if url.startswith("postgresql+psycopg2://"):
        return url.replace("postgresql+psycopg2://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def load_env_file_if_present(repo_root: Path) -> None:
    """
    Loads db_config.env from repo root *only if* none of the DB URL variables
    are already set in the environment.
    """
    if any(os.environ.get(v) for v in DB_URL_ENV_VARS):
        return

    env_path = repo_root / "db_config.env"
    if not env_path.exists():
        return

    for raw in env_path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        k, v = line.split("=", 1)
        k = k.strip()
        v = v.strip().strip('"').strip("'")
        if k and v and k not in os.environ:
            os.environ[k] = v


def resolve_db_url(settings: Settings, override: Optional[str] = None) -> str:
    """
    Pick the database URL: explicit override, then environment / db_config.env,
    then the YAML value.
    """
    if override:
        return normalize_db_url(override)

    load_env_file_if_present(project_root())
    for var in DB_URL_ENV_VARS:
        if os.environ.get(var):
            return normalize_db_url(os.environ[var])

    if settings.db_url:
        return normalize_db_url(settings.db_url)

    raise ConfigError(
        "No DB URL found. Pass --db-url, set PARTLENS_DB_URL or TARGET_DB_URL, "
        "or provide db_config.env at repo root."
    )


def redact_url(url: str) -> str:
    """Hide the password part of a URL for logging."""
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    creds, host = rest.rsplit("@", 1)
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"
