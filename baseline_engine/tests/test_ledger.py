from __future__ import annotations

from contextlib import closing

import pytest

from baseline_engine import ledger
from baseline_engine.errors import DuplicateImportError, TransactionConflictError
from baseline_engine.models import ReportDescriptor
from baseline_engine.storage import connect, transaction

REPORT = ReportDescriptor(filename="weekly.nessus", scan_name="weekly", scan_date="2024-03-01T00:00:00+00:00")


def test_source_identity_is_stable_and_date_sensitive():
    other_day = ReportDescriptor(filename="weekly.nessus", scan_name="weekly", scan_date="2024-03-08T00:00:00+00:00")
    assert ledger.compute_source_identity(REPORT) == ledger.compute_source_identity(REPORT)
    assert ledger.compute_source_identity(REPORT) != ledger.compute_source_identity(other_day)


def test_explicit_source_identity_is_used_verbatim():
    report = ReportDescriptor(filename="a.nessus", scan_name="a", scan_date=REPORT.scan_date, source_identity="sha256:abc")
    assert ledger.compute_source_identity(report) == "sha256:abc"


def test_begin_complete_and_duplicate(conn):
    report_id = ledger.begin(conn, REPORT, "nessus")
    assert ledger.get_report(conn, report_id)["status"] == "pending"

    with pytest.raises(TransactionConflictError):
        ledger.begin(conn, REPORT, "nessus")

    with transaction(conn):
        ledger.complete(conn, report_id, {"inserted": 2, "skipped": 1}, [42, 43])

    entry = ledger.get_report(conn, report_id)
    assert entry["status"] == "applied"
    assert entry["inserted_count"] == 2
    assert entry["skipped_count"] == 1
    assert entry["system_ids"] == [42, 43]

    with pytest.raises(DuplicateImportError) as excinfo:
        ledger.begin(conn, REPORT, "nessus")
    assert excinfo.value.report_id == report_id


def test_failed_import_can_be_retried(conn):
    report_id = ledger.begin(conn, REPORT, "nessus")
    ledger.fail(conn, report_id, "lock timeout")
    entry = ledger.get_report(conn, report_id)
    assert entry["status"] == "failed"
    assert entry["failure_reason"] == "lock timeout"

    retry_id = ledger.begin(conn, REPORT, "nessus")
    assert retry_id != report_id


def test_mark_reset_releases_source_identity(conn):
    report_id = ledger.begin(conn, REPORT, "nessus")
    with transaction(conn):
        ledger.complete(conn, report_id, {}, [42])
    with transaction(conn):
        assert ledger.mark_reset(conn, [50]) == 0
        assert ledger.mark_reset(conn, [42]) == 1
    assert ledger.get_report(conn, report_id)["status"] == "reset"
    assert ledger.begin(conn, REPORT, "nessus") != report_id


def _age(db_path, report_id, created_at):
    with closing(connect(db_path)) as conn:
        with transaction(conn):
            conn.execute(
                "UPDATE scan_reports SET created_at = ?, finished_at = ? WHERE id = ?",
                (created_at, created_at, report_id),
            )


def test_sweep_expires_pending_and_prunes_failed(db_path, conn, settings):
    stale = ledger.begin(conn, REPORT, "nessus")
    _age(db_path, stale, "2020-01-01T00:00:00+00:00")
    old_failed = ledger.begin(
        conn,
        ReportDescriptor(filename="old.nessus", scan_name="old", scan_date="2020-01-01T00:00:00+00:00"),
        "nessus",
    )
    ledger.fail(conn, old_failed, "boom")
    _age(db_path, old_failed, "2020-01-01T00:00:00+00:00")
    fresh = ledger.begin(
        conn,
        ReportDescriptor(filename="new.nessus", scan_name="new", scan_date="2024-03-01T00:00:00+00:00"),
        "nessus",
    )

    preview = ledger.sweep_ledger(db_path, settings, dry_run=True)
    assert preview == {"expired": 1, "failed_removed": 1, "locks_removed": 0, "dry_run": True}
    assert ledger.get_report(conn, stale)["status"] == "pending"

    summary = ledger.sweep_ledger(db_path, settings)
    assert summary["expired"] == 1
    assert summary["failed_removed"] == 1

    expired = ledger.get_report(conn, stale)
    assert expired["status"] == "failed"
    assert expired["failure_reason"] == "expired"
    assert ledger.get_report(conn, old_failed) is None
    assert ledger.get_report(conn, fresh)["status"] == "pending"


def test_sweep_disabled(db_path, settings):
    settings["ledger"]["sweep_enabled"] = False
    assert ledger.sweep_ledger(db_path, settings)["expired"] == 0
