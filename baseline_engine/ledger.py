from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from contextlib import closing
from datetime import timedelta
from typing import Any, Iterable

from baseline_engine.errors import DuplicateImportError, TransactionConflictError
from baseline_engine.models import (
    REPORT_APPLIED,
    REPORT_FAILED,
    REPORT_PENDING,
    REPORT_RESET,
    ReportDescriptor,
    RowError,
    parse_timestamp,
    utc_now_iso,
)
from baseline_engine.storage import connect, transaction

LOGGER = logging.getLogger(__name__)


def compute_source_identity(report: ReportDescriptor) -> str:
    if report.source_identity:
        return report.source_identity
    payload = {"filename": report.filename, "scan_date": report.scan_date}
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def _live_entry(conn: sqlite3.Connection, source_identity: str) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT id, status FROM scan_reports WHERE source_identity = ? AND status IN (?, ?)",
        (source_identity, REPORT_PENDING, REPORT_APPLIED),
    ).fetchone()


def _raise_for_live(entry: sqlite3.Row, source_identity: str) -> None:
    if entry["status"] == REPORT_APPLIED:
        raise DuplicateImportError(entry["id"], source_identity)
    raise TransactionConflictError(f"Source {source_identity} is already being imported as report {entry['id']}")


def begin(
    conn: sqlite3.Connection,
    report: ReportDescriptor,
    source_kind: str,
    package_id: int | None = None,
    system_id: int | None = None,
) -> int:
    """Record a pending import in its own short transaction and return its id.

    A source identity already applied raises DuplicateImportError; one still
    pending in another batch raises TransactionConflictError.
    """
    source_identity = compute_source_identity(report)
    with transaction(conn):
        entry = _live_entry(conn, source_identity)
        if entry is not None:
            _raise_for_live(entry, source_identity)
        try:
            cursor = conn.execute(
                """
                INSERT INTO scan_reports (
                    source_identity, source_kind, filename, scan_name, scan_date,
                    package_id, system_id, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source_identity,
                    source_kind,
                    report.filename,
                    report.scan_name,
                    report.scan_date,
                    package_id,
                    system_id,
                    REPORT_PENDING,
                    utc_now_iso(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise TransactionConflictError(f"Source {source_identity} registered concurrently") from exc
    report_id = cursor.lastrowid
    LOGGER.info("Import %s pending for %s (%s)", report_id, report.filename, source_identity[:12])
    return report_id


def complete(
    conn: sqlite3.Connection,
    report_id: int,
    counts: dict[str, int],
    system_ids: Iterable[int],
    errors: list[RowError] | None = None,
) -> None:
    """Mark the import applied. Runs inside the batch transaction."""
    conn.execute(
        """
        UPDATE scan_reports SET
            status = ?, finished_at = ?, inserted_count = ?, updated_count = ?,
            unchanged_count = ?, resolved_count = ?, regressed_count = ?,
            skipped_count = ?, duplicate_count = ?, errors_json = ?
        WHERE id = ?
        """,
        (
            REPORT_APPLIED,
            utc_now_iso(),
            counts.get("inserted", 0),
            counts.get("updated", 0),
            counts.get("unchanged", 0),
            counts.get("resolved", 0),
            counts.get("regressed", 0),
            counts.get("skipped", 0),
            counts.get("duplicates", 0),
            json.dumps([error.to_dict() for error in errors or []]),
            report_id,
        ),
    )
    conn.executemany(
        "INSERT OR IGNORE INTO report_systems (report_id, system_id) VALUES (?, ?)",
        [(report_id, system_id) for system_id in sorted(set(system_ids))],
    )


def fail(conn: sqlite3.Connection, report_id: int, reason: str) -> None:
    with transaction(conn):
        conn.execute(
            "UPDATE scan_reports SET status = ?, finished_at = ?, failure_reason = ? WHERE id = ? AND status = ?",
            (REPORT_FAILED, utc_now_iso(), reason, report_id, REPORT_PENDING),
        )
    LOGGER.warning("Import %s failed: %s", report_id, reason)


def get_report(conn: sqlite3.Connection, report_id: int) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM scan_reports WHERE id = ?", (report_id,)).fetchone()
    if not row:
        return None
    report = dict(row)
    report["errors"] = json.loads(report.pop("errors_json") or "[]")
    report["system_ids"] = [
        item["system_id"]
        for item in conn.execute(
            "SELECT system_id FROM report_systems WHERE report_id = ? ORDER BY system_id", (report_id,)
        )
    ]
    return report


def mark_reset(conn: sqlite3.Connection, system_ids: Iterable[int] | None) -> int:
    """Flag applied imports touching the systems as reset; ``None`` means all."""
    if system_ids is None:
        return conn.execute(
            "UPDATE scan_reports SET status = ? WHERE status = ?", (REPORT_RESET, REPORT_APPLIED)
        ).rowcount
    ids = sorted(set(system_ids))
    if not ids:
        return 0
    placeholders = ",".join("?" for _ in ids)
    return conn.execute(
        f"""
        UPDATE scan_reports SET status = ?
        WHERE status = ? AND id IN (
            SELECT report_id FROM report_systems WHERE system_id IN ({placeholders})
        )
        """,
        (REPORT_RESET, REPORT_APPLIED, *ids),
    ).rowcount


def sweep_ledger(db_path: str, settings: dict[str, Any], dry_run: bool = False) -> dict[str, int | bool]:
    """Expire stale pending imports, drop old failures and dead lock rows."""
    ledger = settings.get("ledger", {})
    if not bool(ledger.get("sweep_enabled", True)):
        return {"expired": 0, "failed_removed": 0, "locks_removed": 0, "dry_run": dry_run}

    pending_ttl = int(ledger.get("pending_ttl_seconds", 3600))
    failed_days = int(ledger.get("failed_retention_days", 30))
    now = parse_timestamp(utc_now_iso())
    pending_cutoff = (now - timedelta(seconds=pending_ttl)).isoformat()
    failed_cutoff = (now - timedelta(days=failed_days)).isoformat()
    busy_timeout = float(settings.get("storage", {}).get("busy_timeout_seconds", 5))

    with closing(connect(db_path, busy_timeout=busy_timeout)) as conn:
        with transaction(conn):
            stale = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM scan_reports WHERE status = ? AND created_at < ?",
                    (REPORT_PENDING, pending_cutoff),
                )
            ]
            old_failed = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM scan_reports WHERE status = ? AND COALESCE(finished_at, created_at) < ?",
                    (REPORT_FAILED, failed_cutoff),
                )
            ]
            locks = conn.execute(
                "SELECT COUNT(*) AS value FROM system_locks WHERE expires_at < ?", (now.isoformat(),)
            ).fetchone()["value"]
            if not dry_run:
                conn.executemany(
                    "UPDATE scan_reports SET status = ?, finished_at = ?, failure_reason = 'expired' WHERE id = ?",
                    [(REPORT_FAILED, now.isoformat(), report_id) for report_id in stale],
                )
                conn.executemany("DELETE FROM report_systems WHERE report_id = ?", [(item,) for item in old_failed])
                conn.executemany("DELETE FROM scan_reports WHERE id = ?", [(item,) for item in old_failed])
                conn.execute("DELETE FROM system_locks WHERE expires_at < ?", (now.isoformat(),))

    summary = {"expired": len(stale), "failed_removed": len(old_failed), "locks_removed": locks, "dry_run": dry_run}
    LOGGER.info("Ledger sweep: %s", summary)
    return summary
