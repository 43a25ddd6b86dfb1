from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from typing import Any, Iterable

from baseline_engine.models import (
    ACTIVE_STATES,
    RESULT_NOT_APPLICABLE,
    RESULT_PASS,
    SEVERITIES,
    STATE_RESOLVED,
    BaselineSnapshot,
)
from baseline_engine.storage import (
    active_severity_counts,
    compliance_rows,
    fetch_snapshot,
    package_system_ids,
    packages_for_systems,
    save_snapshot,
)

LOGGER = logging.getLogger(__name__)

SCOPE_SYSTEM = "system"
SCOPE_PACKAGE = "package"

CONTROL_COMPLIANT = "compliant"
CONTROL_NON_COMPLIANT = "non_compliant"
CONTROL_NOT_APPLICABLE = "not_applicable"

CONTROL_SEVERITY_WEIGHTS = {"high": 10, "medium": 5, "low": 1}
CONTROL_DEFAULT_WEIGHT = 3
CONTROL_PASS_THRESHOLD = 70.0


def compliance_percent(passing: int, applicable: int) -> float | None:
    if applicable == 0:
        return None
    return round(100.0 * passing / applicable, 2)


def _is_satisfied(row: dict[str, Any]) -> bool:
    return row["result"] == RESULT_PASS or row["state"] == STATE_RESOLVED


def control_status(rows: list[dict[str, Any]]) -> str:
    """Rate one control from the compliance rows mapped to it.

    Each applicable rule contributes its severity weight; the control passes
    when the satisfied weight reaches the threshold and no high-severity rule
    is still failing.
    """
    applicable = [row for row in rows if row["result"] != RESULT_NOT_APPLICABLE]
    if not applicable:
        return CONTROL_NOT_APPLICABLE
    total = 0
    satisfied = 0
    for row in applicable:
        weight = CONTROL_SEVERITY_WEIGHTS.get(row["severity"], CONTROL_DEFAULT_WEIGHT)
        total += weight
        if row["state"] in ACTIVE_STATES:
            if row["severity"] in ("critical", "high"):
                return CONTROL_NON_COMPLIANT
            continue
        satisfied += weight
    score = 100.0 * satisfied / total
    return CONTROL_COMPLIANT if score >= CONTROL_PASS_THRESHOLD else CONTROL_NON_COMPLIANT


def _control_statuses(rows: list[dict[str, Any]]) -> dict[str, str]:
    by_control: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for row in rows:
        if row.get("control_id"):
            by_control[row["control_id"]].append(row)
    return {control: control_status(members) for control, members in sorted(by_control.items())}


def _build_snapshot(scope_type: str, scope_id: int, counts: dict[str, int], rows: list[dict[str, Any]]) -> BaselineSnapshot:
    applicable = sum(1 for row in rows if row["result"] != RESULT_NOT_APPLICABLE)
    passing = sum(1 for row in rows if row["result"] != RESULT_NOT_APPLICABLE and _is_satisfied(row))
    return BaselineSnapshot(
        scope_type=scope_type,
        scope_id=scope_id,
        severity_counts=counts,
        open_total=sum(counts.values()),
        compliance_applicable=applicable,
        compliance_passing=passing,
        compliance_percent=compliance_percent(passing, applicable),
        control_status=_control_statuses(rows),
    )


def compute_system_snapshot(conn: sqlite3.Connection, system_id: int) -> BaselineSnapshot:
    counts = active_severity_counts(conn, system_id)
    return _build_snapshot(SCOPE_SYSTEM, system_id, counts, compliance_rows(conn, system_id))


def compute_package_snapshot(conn: sqlite3.Connection, package_id: int) -> BaselineSnapshot:
    """Package posture is the sum of its member systems' aggregates."""
    counts = {severity: 0 for severity in SEVERITIES}
    rows: list[dict[str, Any]] = []
    for system_id in package_system_ids(conn, package_id):
        for severity, value in active_severity_counts(conn, system_id).items():
            counts[severity] = counts.get(severity, 0) + value
        rows.extend(compliance_rows(conn, system_id))
    return _build_snapshot(SCOPE_PACKAGE, package_id, counts, rows)


def refresh_snapshots(conn: sqlite3.Connection, system_ids: Iterable[int]) -> list[BaselineSnapshot]:
    """Recompute and persist snapshots for the systems and their packages.

    Runs inside the caller's transaction so the snapshot commits atomically with
    the findings it was computed from.
    """
    ids = sorted(set(system_ids))
    refreshed = []
    for system_id in ids:
        snapshot = compute_system_snapshot(conn, system_id)
        save_snapshot(conn, snapshot)
        refreshed.append(snapshot)
    for package_id in packages_for_systems(conn, ids):
        snapshot = compute_package_snapshot(conn, package_id)
        save_snapshot(conn, snapshot)
        refreshed.append(snapshot)
    LOGGER.debug("Refreshed %s snapshots for systems %s", len(refreshed), ids)
    return refreshed


def load_snapshot(conn: sqlite3.Connection, scope_type: str, scope_id: int) -> BaselineSnapshot:
    snapshot = fetch_snapshot(conn, scope_type, scope_id)
    if snapshot is not None:
        return snapshot
    if scope_type == SCOPE_PACKAGE:
        return compute_package_snapshot(conn, scope_id)
    return compute_system_snapshot(conn, scope_id)
