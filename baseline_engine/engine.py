"""Entry points for batch submission, queries and administrative resets.

A batch flows: parse, ledger begin, normalize, resolve identity, lock the
touched systems, then one transaction that reconciles findings, refreshes the
baselines and marks the ledger entry applied.
"""
from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from contextlib import closing
from typing import Any

from baseline_engine import ledger
from baseline_engine.aggregator import SCOPE_PACKAGE, SCOPE_SYSTEM, load_snapshot, refresh_snapshots
from baseline_engine.errors import (
    BatchCancelledError,
    DuplicateImportError,
    MalformedInputError,
    ResetNotConfirmedError,
    TransactionConflictError,
)
from baseline_engine.identity import resolve_candidates
from baseline_engine.locks import acquire_system_locks
from baseline_engine.models import (
    KIND_COMPLIANCE,
    KIND_VULNERABILITY,
    SEVERITIES,
    STATES,
    BaselineSnapshot,
    BatchSubmission,
    ImportResult,
)
from baseline_engine.normalizer import FINDING_KINDS, normalize_batch, resolve_source_kind
from baseline_engine.reconciler import apply_plan, batch_coverage, plan_reconciliation
from baseline_engine.settings import apply_defaults
from baseline_engine.storage import (
    connect,
    delete_findings_for_systems,
    delete_snapshots,
    fetch_systems,
    load_findings,
    package_system_ids,
    query_findings,
    transaction,
)

LOGGER = logging.getLogger(__name__)


def _settings(settings: dict[str, Any] | None) -> dict[str, Any]:
    return apply_defaults(copy.deepcopy(settings) if settings else {})


def _connect(db_path: str, settings: dict[str, Any]) -> sqlite3.Connection:
    return connect(db_path, busy_timeout=float(settings["storage"]["busy_timeout_seconds"]))


def submit_batch(
    db_path: str,
    payload: dict[str, Any],
    settings: dict[str, Any] | None = None,
    cancel_event: threading.Event | None = None,
) -> ImportResult:
    """Import one scan report batch.

    Row-level problems are returned in ``errors``. Batch-level failures roll the
    batch back, mark its ledger entry failed and propagate.
    """
    settings = _settings(settings)
    if not isinstance(payload, dict):
        raise MalformedInputError("batch must be an object", field="batch")
    submission = BatchSubmission.from_dict(payload)
    source_kind = resolve_source_kind(submission.report)

    with closing(_connect(db_path, settings)) as conn:
        try:
            report_id = ledger.begin(
                conn,
                submission.report,
                source_kind,
                package_id=submission.package_id,
                system_id=submission.system_id,
            )
        except DuplicateImportError as exc:
            LOGGER.info("Duplicate import of %s, already applied as report %s", submission.report.filename, exc.report_id)
            return ImportResult(accepted=True, report_id=exc.report_id, duplicate=True)

        try:
            result = _apply_batch(conn, submission, source_kind, report_id, settings, cancel_event)
        except Exception as exc:
            ledger.fail(conn, report_id, str(exc) or type(exc).__name__)
            raise

    LOGGER.info(
        "Import %s applied for %s: %s",
        report_id,
        submission.report.filename,
        result.counts(),
    )
    return result


def _apply_batch(
    conn: sqlite3.Connection,
    submission: BatchSubmission,
    source_kind: str,
    report_id: int,
    settings: dict[str, Any],
    cancel_event: threading.Event | None,
) -> ImportResult:
    report = submission.report
    kind = FINDING_KINDS[source_kind]
    normalized = normalize_batch(report, submission.findings, host_optional=submission.system_id is not None)
    resolution = resolve_candidates(
        conn,
        normalized.candidates,
        submission.hosts,
        package_id=submission.package_id,
        system_id=submission.system_id,
    )
    errors = sorted(normalized.errors + resolution.errors, key=lambda error: error.row_index)
    coverage = batch_coverage(kind, resolution.keyed, report.coverage)
    system_ids = sorted(resolution.system_ids)
    lock_settings = settings["locks"]

    with acquire_system_locks(
        conn,
        system_ids,
        holder=f"report-{report_id}",
        timeout=float(lock_settings["timeout_seconds"]),
        ttl_seconds=float(lock_settings["ttl_seconds"]),
        poll_interval=float(lock_settings["poll_interval_seconds"]),
    ):
        try:
            with transaction(conn):
                existing = load_findings(conn, kind, system_ids)
                plan = plan_reconciliation(
                    kind, existing, resolution.keyed, system_ids, coverage, report.scan_date, report_id
                )
                apply_plan(conn, plan)
                refresh_snapshots(conn, system_ids)
                result = ImportResult(accepted=True, report_id=report_id, skipped=len(errors), errors=errors)
                for name, value in plan.counts().items():
                    setattr(result, name, value)
                ledger.complete(conn, report_id, result.counts(), system_ids, errors)
                if cancel_event is not None and cancel_event.is_set():
                    raise BatchCancelledError(f"Import {report_id} cancelled before commit")
        except sqlite3.IntegrityError as exc:
            raise TransactionConflictError(f"Concurrent write to the same findings: {exc}") from exc
    return result


def _page(limit: int | None, offset: int | None, settings: dict[str, Any]) -> tuple[int, int]:
    query = settings["query"]
    limit = int(query["default_limit"]) if limit is None else int(limit)
    offset = 0 if offset is None else int(offset)
    if limit < 1:
        raise MalformedInputError("limit must be positive", field="limit")
    if offset < 0:
        raise MalformedInputError("offset must not be negative", field="offset")
    return min(limit, int(query["max_limit"])), offset


def get_findings(
    db_path: str,
    package_id: int | None = None,
    system_id: int | None = None,
    severity: str | None = None,
    state: str | None = None,
    benchmark: str | None = None,
    kind: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
    settings: dict[str, Any] | None = None,
) -> dict[str, Any]:
    settings = _settings(settings)
    limit, offset = _page(limit, offset, settings)
    if severity and severity.lower() not in SEVERITIES:
        raise MalformedInputError(f"unknown severity {severity!r}", field="severity")
    if state and state.lower() not in STATES:
        raise MalformedInputError(f"unknown state {state!r}", field="state")
    if kind is None:
        kinds = [KIND_VULNERABILITY, KIND_COMPLIANCE]
    elif kind in (KIND_VULNERABILITY, KIND_COMPLIANCE):
        kinds = [kind]
    else:
        raise MalformedInputError(f"unknown kind {kind!r}", field="kind")

    items: list[dict[str, Any]] = []
    total = 0
    with closing(_connect(db_path, settings)) as conn:
        for finding_kind in kinds:
            # each kind contributes enough rows to cover the requested window
            rows, count = query_findings(
                conn,
                finding_kind,
                package_id=package_id,
                system_id=system_id,
                severity=severity,
                state=state,
                benchmark=benchmark,
                limit=limit + offset,
                offset=0,
            )
            items.extend(rows)
            total += count
    items.sort(key=lambda item: (item["last_seen"], item["kind"], item["id"]), reverse=True)
    return {"items": items[offset : offset + limit], "total": total, "limit": limit, "offset": offset}


def get_baseline_snapshot(
    db_path: str,
    package_id: int | None = None,
    system_id: int | None = None,
    settings: dict[str, Any] | None = None,
) -> BaselineSnapshot:
    if (package_id is None) == (system_id is None):
        raise MalformedInputError("exactly one of package_id or system_id is required", field="scope")
    settings = _settings(settings)
    with closing(_connect(db_path, settings)) as conn:
        if package_id is not None:
            return load_snapshot(conn, SCOPE_PACKAGE, package_id)
        return load_snapshot(conn, SCOPE_SYSTEM, system_id)


def get_report(db_path: str, report_id: int, settings: dict[str, Any] | None = None) -> dict[str, Any] | None:
    settings = _settings(settings)
    with closing(_connect(db_path, settings)) as conn:
        return ledger.get_report(conn, report_id)


def reset_token(package_id: int | None) -> str:
    return "all" if package_id is None else f"package:{package_id}"


def reset_baseline(
    db_path: str,
    package_id: int | None = None,
    confirm: str | None = None,
    settings: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Discard findings and snapshots for a package (or everything).

    ``confirm`` must repeat the scope (``package:<id>`` or ``all``). Findings are
    not re-derived; the next import re-seeds the baseline.
    """
    scope = reset_token(package_id)
    if confirm != scope:
        raise ResetNotConfirmedError(f"Reset of {scope} requires confirm={scope!r}")
    settings = _settings(settings)
    lock_settings = settings["locks"]

    with closing(_connect(db_path, settings)) as conn:
        if package_id is None:
            system_ids = [system["id"] for system in fetch_systems(conn)]
        else:
            system_ids = package_system_ids(conn, package_id)
        with acquire_system_locks(
            conn,
            system_ids,
            holder=f"reset-{scope}",
            timeout=float(lock_settings["timeout_seconds"]),
            ttl_seconds=float(lock_settings["ttl_seconds"]),
            poll_interval=float(lock_settings["poll_interval_seconds"]),
        ):
            with transaction(conn):
                target = None if package_id is None else system_ids
                findings_removed = delete_findings_for_systems(conn, target)
                snapshots_removed = delete_snapshots(conn, SCOPE_SYSTEM, target)
                snapshots_removed += delete_snapshots(
                    conn, SCOPE_PACKAGE, None if package_id is None else [package_id]
                )
                reports_reset = ledger.mark_reset(conn, target)

    summary = {
        "scope": scope,
        "findings_removed": findings_removed,
        "snapshots_removed": snapshots_removed,
        "reports_reset": reports_reset,
    }
    LOGGER.warning("Baseline reset: %s", summary)
    return summary


def check_database(db_path: str, settings: dict[str, Any] | None = None) -> bool:
    settings = _settings(settings)
    try:
        with closing(_connect(db_path, settings)) as conn:
            conn.execute("SELECT 1 FROM scan_reports LIMIT 1").fetchall()
    except sqlite3.Error as exc:
        LOGGER.warning("Database check failed: %s", exc)
        return False
    return True
