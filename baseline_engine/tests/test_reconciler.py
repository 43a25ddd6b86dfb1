from baseline_engine.identity import natural_key
from baseline_engine.models import ComplianceCandidate, KeyedCandidate, VulnerabilityCandidate
from baseline_engine.reconciler import batch_coverage, collapse_duplicates, plan_reconciliation

DAY1 = "2024-03-01T00:00:00+00:00"
DAY2 = "2024-03-08T00:00:00+00:00"
DAY3 = "2024-03-15T00:00:00+00:00"


def _vuln(plugin_id, observed_at, severity="high", port=None, family="General", row_index=0, system_id=42):
    candidate = VulnerabilityCandidate(
        row_index=row_index,
        hostname="web01",
        ip_address=None,
        plugin_id=plugin_id,
        severity=severity,
        observed_at=observed_at,
        port=port,
        plugin_family=family,
    )
    return KeyedCandidate(system_id=system_id, key=natural_key(candidate, system_id), candidate=candidate)


def _rule(rule_id, result, observed_at, severity="medium"):
    candidate = ComplianceCandidate(
        row_index=0,
        hostname="web01",
        ip_address=None,
        rule_id=rule_id,
        benchmark_version="RHEL_8",
        severity=severity,
        result=result,
        observed_at=observed_at,
    )
    return KeyedCandidate(system_id=42, key=natural_key(candidate, 42), candidate=candidate)


def _stored(row_id, plugin_id, state="open", last_seen=DAY1, resolved_at=None, family="General", port=None):
    return {
        "id": row_id,
        "system_id": 42,
        "plugin_id": plugin_id,
        "port": port,
        "plugin_name": None,
        "plugin_family": family,
        "severity": "high",
        "protocol": None,
        "service": None,
        "cve": None,
        "cvss_score": None,
        "first_seen": DAY1,
        "last_seen": last_seen,
        "state": state,
        "resolved_at": resolved_at,
        "regressed_count": 0,
        "report_id": 1,
    }


def test_new_detection_is_inserted_open():
    plan = plan_reconciliation("vulnerability", [], [_vuln("19506", DAY1)], [42], {"General"}, DAY1, 1)
    assert plan.inserted == 1
    row = plan.inserts[0]
    assert row["state"] == "open"
    assert row["first_seen"] == row["last_seen"] == DAY1
    assert row["report_id"] == 1


def test_redetection_refreshes_last_seen():
    plan = plan_reconciliation(
        "vulnerability", [_stored(1, "19506")], [_vuln("19506", DAY2)], [42], {"General"}, DAY2, 2
    )
    assert plan.updated == 1
    assert plan.updates[0]["last_seen"] == DAY2
    assert plan.updates[0]["first_seen"] == DAY1
    assert plan.updates[0]["report_id"] == 2


def test_identical_replay_is_unchanged():
    plan = plan_reconciliation(
        "vulnerability", [_stored(1, "19506")], [_vuln("19506", DAY1)], [42], {"General"}, DAY1, 2
    )
    assert plan.unchanged == 1
    assert plan.updates == []


def test_older_scan_never_moves_last_seen_backwards():
    plan = plan_reconciliation(
        "vulnerability",
        [_stored(1, "19506", last_seen=DAY2)],
        [_vuln("19506", DAY1, severity="low")],
        [42],
        {"General"},
        DAY1,
        3,
    )
    assert plan.unchanged == 1


def test_absent_finding_in_coverage_is_resolved():
    existing = [_stored(1, "19506"), _stored(2, "11213")]
    plan = plan_reconciliation("vulnerability", existing, [_vuln("19506", DAY2)], [42], {"General"}, DAY2, 2)
    resolved = [row for row in plan.updates if row["state"] == "resolved"]
    assert plan.resolved == 1
    assert resolved[0]["id"] == 2
    assert resolved[0]["resolved_at"] == DAY2
    assert resolved[0]["last_seen"] == DAY1


def test_absence_outside_coverage_is_not_evidence():
    existing = [_stored(1, "19506"), _stored(2, "11213", family="Web Servers")]
    plan = plan_reconciliation("vulnerability", existing, [_vuln("19506", DAY2)], [42], {"General"}, DAY2, 2)
    assert plan.resolved == 0


def test_absence_on_untouched_system_is_not_evidence():
    stored = _stored(2, "11213")
    stored["system_id"] = 43
    plan = plan_reconciliation("vulnerability", [stored], [_vuln("19506", DAY2)], [42], {"General"}, DAY2, 2)
    assert plan.resolved == 0


def test_late_older_scan_does_not_resolve_newer_detection():
    existing = [_stored(2, "11213", last_seen=DAY3)]
    plan = plan_reconciliation("vulnerability", existing, [], [42], {"General"}, DAY2, 2)
    assert plan.resolved == 0


def test_resolved_finding_regresses_on_newer_detection():
    existing = [_stored(2, "11213", state="resolved", resolved_at=DAY2)]
    plan = plan_reconciliation("vulnerability", existing, [_vuln("11213", DAY3)], [42], {"General"}, DAY3, 3)
    assert plan.regressed == 1
    row = plan.updates[0]
    assert row["state"] == "regressed"
    assert row["regressed_count"] == 1
    assert row["last_seen"] == DAY3


def test_resolved_finding_stays_resolved_for_older_detection():
    existing = [_stored(2, "11213", state="resolved", resolved_at=DAY3, last_seen=DAY2)]
    plan = plan_reconciliation("vulnerability", existing, [_vuln("11213", DAY2)], [42], {"General"}, DAY2, 3)
    assert plan.regressed == 0
    assert plan.unchanged == 1


def test_in_batch_duplicates_keep_latest_observation():
    items = [
        _vuln("19506", DAY2, severity="medium", row_index=0),
        _vuln("19506", DAY1, severity="low", row_index=1),
        _vuln("19506", DAY2, severity="high", row_index=2),
    ]
    winners, duplicates = collapse_duplicates(items)
    assert duplicates == 2
    assert len(winners) == 1
    assert winners[0].candidate.row_index == 2

    plan = plan_reconciliation("vulnerability", [], items, [42], {"General"}, DAY2, 1)
    assert plan.inserted == 1
    assert plan.duplicates == 2
    assert plan.inserts[0]["severity"] == "high"


def test_port_is_part_of_identity():
    plan = plan_reconciliation(
        "vulnerability",
        [_stored(1, "19506", port=None)],
        [_vuln("19506", DAY2, port=443)],
        [42],
        {"General"},
        DAY2,
        2,
    )
    assert plan.inserted == 1
    assert plan.resolved == 1


def test_compliance_pass_resolves_failing_rule():
    existing = [
        {
            "id": 5,
            "system_id": 42,
            "rule_id": "R1",
            "benchmark_version": "RHEL_8",
            "group_id": None,
            "rule_title": None,
            "severity": "medium",
            "result": "fail",
            "control_id": None,
            "cci": None,
            "first_seen": DAY1,
            "last_seen": DAY1,
            "state": "open",
            "resolved_at": None,
            "regressed_count": 0,
            "report_id": 1,
        }
    ]
    plan = plan_reconciliation("compliance", existing, [_rule("R1", "pass", DAY2)], [42], {"RHEL_8"}, DAY2, 2)
    assert plan.resolved == 1
    assert plan.updates[0]["state"] == "resolved"
    assert plan.updates[0]["result"] == "pass"


def test_compliance_new_passing_rule_is_stored_resolved():
    plan = plan_reconciliation("compliance", [], [_rule("R2", "pass", DAY1)], [42], {"RHEL_8"}, DAY1, 1)
    assert plan.inserts[0]["state"] == "resolved"
    assert plan.inserts[0]["resolved_at"] == DAY1


def test_declared_coverage_overrides_observed_families():
    items = [_vuln("19506", DAY1, family="General")]
    assert batch_coverage("vulnerability", items, None) == {"General"}
    assert batch_coverage("vulnerability", items, ["General", "Web Servers"]) == {"General", "Web Servers"}
