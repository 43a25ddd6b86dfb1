"""Shared fixtures: a fresh SQLite database per test with a small inventory."""
from __future__ import annotations

from contextlib import closing

import pytest

from baseline_engine.settings import apply_defaults
from baseline_engine.storage import connect, init_db, transaction, upsert_package, upsert_system


def nessus_row(host: str, plugin_id: str, severity: str, port=None, family: str = "General", **extra) -> dict:
    row = {
        "hostname": host,
        "plugin_id": plugin_id,
        "severity": severity,
        "port": port,
        "plugin_name": f"Plugin {plugin_id}",
        "plugin_family": family,
    }
    row.update(extra)
    return row


def stig_row(host: str | None, rule_id: str, status: str, severity: str = "medium", control_id=None, **extra) -> dict:
    row = {"rule_id": rule_id, "status": status, "severity": severity, "control_id": control_id}
    if host:
        row["hostname"] = host
    row.update(extra)
    return row


def nessus_batch(filename: str, scan_date: str, rows: list[dict], **extra) -> dict:
    payload = {
        "report": {"filename": filename, "scan_name": filename, "scan_date": scan_date},
        "findings": rows,
    }
    payload.update(extra)
    return payload


def stig_batch(filename: str, scan_date: str, rows: list[dict], benchmark: str = "RHEL_8_STIG_V1R9", **extra) -> dict:
    payload = {
        "report": {
            "filename": filename,
            "scan_name": filename,
            "scan_date": scan_date,
            "benchmark": benchmark,
        },
        "findings": rows,
    }
    payload.update(extra)
    return payload


@pytest.fixture()
def db_path(tmp_path):
    path = str(tmp_path / "baseline.db")
    init_db(path)
    with closing(connect(path)) as conn:
        with transaction(conn):
            upsert_package(conn, 7, "Payments")
            upsert_package(conn, 8, "Intranet")
            upsert_system(conn, 42, "web01", "web01.example.com", "10.0.0.42", 7)
            upsert_system(conn, 43, "db01", "db01.example.com", "10.0.0.43", 7)
            upsert_system(conn, 50, "wiki", "wiki.example.com", "10.0.1.50", 8)
    return path


@pytest.fixture()
def conn(db_path):
    with closing(connect(db_path)) as connection:
        yield connection


@pytest.fixture()
def settings(db_path):
    return apply_defaults(
        {
            "paths": {"db_path": db_path},
            "locks": {"timeout_seconds": 0.5, "poll_interval_seconds": 0.01},
        }
    )
