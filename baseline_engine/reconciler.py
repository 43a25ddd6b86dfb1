"""Dedup/upsert of one batch of keyed candidates against stored findings.

``plan_reconciliation`` is pure: it compares the batch with the comparison set
(every stored finding of the batch's kind for the touched systems) and decides
each row's lifecycle transition. ``apply_plan`` writes the decision inside the
caller's transaction.
"""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable

from baseline_engine.identity import row_natural_key
from baseline_engine.models import (
    ACTIVE_STATES,
    KIND_VULNERABILITY,
    RESULT_FAIL,
    STATE_OPEN,
    STATE_REGRESSED,
    STATE_RESOLVED,
    ComplianceCandidate,
    KeyedCandidate,
    VulnerabilityCandidate,
    parse_timestamp,
)
from baseline_engine.storage import insert_findings, update_findings

LOGGER = logging.getLogger(__name__)


@dataclass
class ReconciliationPlan:
    kind: str
    inserts: list[dict[str, Any]] = field(default_factory=list)
    updates: list[dict[str, Any]] = field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    resolved: int = 0
    regressed: int = 0
    duplicates: int = 0

    def counts(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "resolved": self.resolved,
            "regressed": self.regressed,
            "duplicates": self.duplicates,
        }


def row_family(kind: str, row: dict[str, Any]) -> str:
    if kind == KIND_VULNERABILITY:
        return row.get("plugin_family") or ""
    return row.get("benchmark_version") or ""


def is_detection(candidate: VulnerabilityCandidate | ComplianceCandidate) -> bool:
    """True when the candidate reports the failing condition as present."""
    if isinstance(candidate, ComplianceCandidate):
        return candidate.result == RESULT_FAIL
    return True


def collapse_duplicates(keyed: Iterable[KeyedCandidate]) -> tuple[list[KeyedCandidate], int]:
    """Keep one candidate per natural key: latest observation wins, later row breaks ties."""
    winners: dict[tuple, KeyedCandidate] = {}
    duplicates = 0
    for item in keyed:
        current = winners.get(item.key)
        if current is None:
            winners[item.key] = item
            continue
        duplicates += 1
        rank = (parse_timestamp(item.candidate.observed_at), item.candidate.row_index)
        current_rank = (parse_timestamp(current.candidate.observed_at), current.candidate.row_index)
        if rank > current_rank:
            winners[item.key] = item
    return list(winners.values()), duplicates


def _candidate_attributes(candidate: VulnerabilityCandidate | ComplianceCandidate) -> dict[str, Any]:
    if isinstance(candidate, VulnerabilityCandidate):
        return {
            "plugin_id": candidate.plugin_id,
            "port": candidate.port,
            "plugin_name": candidate.plugin_name,
            "plugin_family": candidate.family,
            "severity": candidate.severity,
            "protocol": candidate.protocol,
            "service": candidate.service,
            "cve": candidate.cve,
            "cvss_score": candidate.cvss_score,
        }
    return {
        "rule_id": candidate.rule_id,
        "benchmark_version": candidate.benchmark_version,
        "group_id": candidate.group_id,
        "rule_title": candidate.rule_title,
        "severity": candidate.severity,
        "result": candidate.result,
        "control_id": candidate.control_id,
        "cci": candidate.cci,
    }


def _new_row(item: KeyedCandidate, report_id: int) -> dict[str, Any]:
    candidate = item.candidate
    observed = candidate.observed_at
    row = _candidate_attributes(candidate)
    detected = is_detection(candidate)
    row.update(
        {
            "system_id": item.system_id,
            "first_seen": observed,
            "last_seen": observed,
            "state": STATE_OPEN if detected else STATE_RESOLVED,
            "resolved_at": None if detected else observed,
            "regressed_count": 0,
            "report_id": report_id,
        }
    )
    return row


def _merge_row(existing: dict[str, Any], item: KeyedCandidate, report_id: int) -> tuple[dict[str, Any], str | None]:
    """Return the updated row and the transition applied (regressed/resolved/None)."""
    candidate = item.candidate
    observed = parse_timestamp(candidate.observed_at)
    last_seen = parse_timestamp(existing["last_seen"])
    row = dict(existing)
    transition = None

    if observed >= last_seen:
        # the newest observation owns the descriptive attributes
        row.update(_candidate_attributes(candidate))
        row["last_seen"] = observed.isoformat()
        if observed > last_seen:
            row["report_id"] = report_id

    state = existing["state"]
    if is_detection(candidate):
        if state == STATE_RESOLVED:
            resolved_at = existing.get("resolved_at")
            if resolved_at is None or observed > parse_timestamp(resolved_at):
                row["state"] = STATE_REGRESSED
                row["regressed_count"] = (existing.get("regressed_count") or 0) + 1
                transition = STATE_REGRESSED
    elif state in ACTIVE_STATES and observed > last_seen:
        row["state"] = STATE_RESOLVED
        row["resolved_at"] = observed.isoformat()
        transition = STATE_RESOLVED
    return row, transition


def plan_reconciliation(
    kind: str,
    existing: list[dict[str, Any]],
    keyed: list[KeyedCandidate],
    touched_system_ids: Iterable[int],
    coverage: set[str],
    scan_time: str,
    report_id: int,
) -> ReconciliationPlan:
    plan = ReconciliationPlan(kind=kind)
    winners, plan.duplicates = collapse_duplicates(keyed)
    by_key = {row_natural_key(kind, row): row for row in existing}
    matched_ids: set[int] = set()

    for item in winners:
        current = by_key.get(item.key)
        if current is None:
            plan.inserts.append(_new_row(item, report_id))
            plan.inserted += 1
            continue
        matched_ids.add(current["id"])
        row, transition = _merge_row(current, item, report_id)
        if row == current:
            plan.unchanged += 1
            continue
        plan.updates.append(row)
        if transition == STATE_REGRESSED:
            plan.regressed += 1
        elif transition == STATE_RESOLVED:
            plan.resolved += 1
        else:
            plan.updated += 1

    touched = set(touched_system_ids)
    scan_at = parse_timestamp(scan_time)
    for row in existing:
        if row["id"] in matched_ids or row["system_id"] not in touched:
            continue
        if row["state"] not in ACTIVE_STATES:
            continue
        if row_family(kind, row) not in coverage:
            continue
        # an older scan replayed late cannot resolve a newer detection
        if scan_at <= parse_timestamp(row["last_seen"]):
            continue
        resolved = dict(row)
        resolved["state"] = STATE_RESOLVED
        resolved["resolved_at"] = scan_at.isoformat()
        plan.updates.append(resolved)
        plan.resolved += 1

    LOGGER.debug("Reconciliation plan for %s: %s", kind, plan.counts())
    return plan


def batch_coverage(kind: str, keyed: list[KeyedCandidate], declared: list[str] | None) -> set[str]:
    """Families (plugin family or benchmark) the scan claims to cover."""
    if declared is not None:
        return {str(item) for item in declared}
    return {item.candidate.family for item in keyed}


def apply_plan(conn: sqlite3.Connection, plan: ReconciliationPlan) -> None:
    insert_findings(conn, plan.kind, plan.inserts)
    update_findings(conn, plan.kind, plan.updates)

