from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml


def load_yaml(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def apply_defaults(settings: dict[str, Any]) -> dict[str, Any]:
    settings.setdefault("paths", {})
    settings.setdefault("locks", {})
    settings.setdefault("storage", {})
    settings.setdefault("ledger", {})
    settings.setdefault("query", {})
    settings["paths"].setdefault("db_path", os.getenv("BASELINE_DB_PATH", "/data/baseline.db"))
    settings["locks"].setdefault("timeout_seconds", float(os.getenv("BASELINE_LOCK_TIMEOUT_SECONDS", "10")))
    settings["locks"].setdefault("ttl_seconds", float(os.getenv("BASELINE_LOCK_TTL_SECONDS", "300")))
    settings["locks"].setdefault("poll_interval_seconds", 0.05)
    settings["storage"].setdefault("busy_timeout_seconds", float(os.getenv("BASELINE_BUSY_TIMEOUT_SECONDS", "5")))
    settings["ledger"].setdefault("pending_ttl_seconds", int(os.getenv("BASELINE_PENDING_TTL_SECONDS", "3600")))
    settings["ledger"].setdefault("failed_retention_days", 30)
    settings["ledger"].setdefault("sweep_enabled", _env_bool("BASELINE_SWEEP_ENABLED", "true"))
    settings["query"].setdefault("default_limit", 100)
    settings["query"].setdefault("max_limit", 1000)
    return settings


def resolve_settings(path: str | None) -> dict[str, Any]:
    """Settings from a YAML file with environment defaults; a missing file means defaults only."""
    settings = load_yaml(path) if path and Path(path).exists() else {}
    return apply_defaults(settings)


def default_settings() -> dict[str, Any]:
    return apply_defaults({})
