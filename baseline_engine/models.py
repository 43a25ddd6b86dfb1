from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from baseline_engine.errors import MalformedInputError


SEVERITIES = ("critical", "high", "medium", "low", "info")

STATE_OPEN = "open"
STATE_RESOLVED = "resolved"
STATE_REGRESSED = "regressed"
ACTIVE_STATES = (STATE_OPEN, STATE_REGRESSED)
STATES = (STATE_OPEN, STATE_RESOLVED, STATE_REGRESSED)

RESULT_PASS = "pass"
RESULT_FAIL = "fail"
RESULT_NOT_APPLICABLE = "not_applicable"
RESULTS = (RESULT_PASS, RESULT_FAIL, RESULT_NOT_APPLICABLE)

REPORT_PENDING = "pending"
REPORT_APPLIED = "applied"
REPORT_FAILED = "failed"
REPORT_RESET = "reset"

KIND_VULNERABILITY = "vulnerability"
KIND_COMPLIANCE = "compliance"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("empty timestamp")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).replace(microsecond=0)


def to_iso(value: Any) -> str:
    return parse_timestamp(value).isoformat()


@dataclass
class ReportDescriptor:
    filename: str
    scan_name: str
    scan_date: str
    source_identity: str | None = None
    source_kind: str | None = None
    benchmark: str | None = None
    coverage: list[str] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReportDescriptor":
        if not isinstance(data, dict):
            raise MalformedInputError("report descriptor must be an object", field="report")
        filename = data.get("filename")
        if not filename:
            raise MalformedInputError("report filename is required", field="report.filename")
        try:
            scan_date = to_iso(data.get("scan_date"))
        except ValueError as exc:
            raise MalformedInputError(f"invalid scan_date: {exc}", field="report.scan_date") from exc
        coverage = data.get("coverage")
        if coverage is not None and not isinstance(coverage, list):
            raise MalformedInputError("coverage must be a list", field="report.coverage")
        return cls(
            filename=str(filename),
            scan_name=str(data.get("scan_name") or filename),
            scan_date=scan_date,
            source_identity=data.get("source_identity") or None,
            source_kind=(data.get("source_kind") or data.get("tool") or None),
            benchmark=data.get("benchmark") or None,
            coverage=[str(item) for item in coverage] if coverage is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HostDescriptor:
    hostname: str | None = None
    ip_address: str | None = None
    mac_address: str | None = None
    os_info: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HostDescriptor":
        return cls(
            hostname=data.get("hostname") or data.get("host_name") or None,
            ip_address=data.get("ip_address") or data.get("host_ip") or data.get("ip") or None,
            mac_address=data.get("mac_address"),
            os_info=data.get("os_info"),
        )


@dataclass
class BatchSubmission:
    report: ReportDescriptor
    hosts: list[HostDescriptor] = field(default_factory=list)
    findings: list[dict[str, Any]] = field(default_factory=list)
    package_id: int | None = None
    system_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchSubmission":
        report = ReportDescriptor.from_dict(data.get("report") or {})
        rows = data.get("findings")
        if rows is None:
            rows = data.get("vulnerabilities") or []
        if not isinstance(rows, list):
            raise MalformedInputError("findings must be a list", field="findings")
        hosts = data.get("hosts") or []
        return cls(
            report=report,
            hosts=[HostDescriptor.from_dict(item) for item in hosts if isinstance(item, dict)],
            findings=rows,
            package_id=_optional_int(data.get("package_id"), "package_id"),
            system_id=_optional_int(data.get("system_id"), "system_id"),
        )


def _optional_int(value: Any, name: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedInputError(f"{name} must be an integer", field=name) from exc


@dataclass
class VulnerabilityCandidate:
    row_index: int
    hostname: str | None
    ip_address: str | None
    plugin_id: str
    severity: str
    observed_at: str
    port: int | None = None
    plugin_name: str | None = None
    plugin_family: str | None = None
    protocol: str | None = None
    service: str | None = None
    cve: str | None = None
    cvss_score: float | None = None

    kind = KIND_VULNERABILITY

    @property
    def family(self) -> str:
        return self.plugin_family or ""

    @property
    def check_key(self) -> tuple:
        return (self.plugin_id, self.port)


@dataclass
class ComplianceCandidate:
    row_index: int
    hostname: str | None
    ip_address: str | None
    rule_id: str
    benchmark_version: str
    severity: str
    result: str
    observed_at: str
    group_id: str | None = None
    rule_title: str | None = None
    control_id: str | None = None
    cci: str | None = None

    kind = KIND_COMPLIANCE

    @property
    def family(self) -> str:
        return self.benchmark_version

    @property
    def check_key(self) -> tuple:
        return (self.rule_id, self.benchmark_version)


@dataclass
class KeyedCandidate:
    system_id: int
    key: tuple
    candidate: VulnerabilityCandidate | ComplianceCandidate


@dataclass
class RowError:
    row_index: int
    reason: str
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, "field": self.field, "reason": self.reason}


@dataclass
class BaselineSnapshot:
    scope_type: str
    scope_id: int
    severity_counts: dict[str, int]
    open_total: int
    compliance_applicable: int
    compliance_passing: int
    compliance_percent: float | None
    control_status: dict[str, str] = field(default_factory=dict)
    version: int = 0
    computed_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def empty(cls, scope_type: str, scope_id: int) -> "BaselineSnapshot":
        return cls(
            scope_type=scope_type,
            scope_id=scope_id,
            severity_counts={severity: 0 for severity in SEVERITIES},
            open_total=0,
            compliance_applicable=0,
            compliance_passing=0,
            compliance_percent=None,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportResult:
    """Outcome of one submitted batch.

    Each row matching an existing finding is counted exactly once: as
    ``regressed`` or ``resolved`` when its lifecycle state changed, otherwise
    as ``updated`` (stored attributes changed) or ``unchanged``. ``resolved``
    also includes findings closed because the batch no longer reported them.
    A ``duplicate`` result carries all-zero counts.
    """

    accepted: bool
    report_id: int
    duplicate: bool = False
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    resolved: int = 0
    regressed: int = 0
    skipped: int = 0
    duplicates: int = 0
    errors: list[RowError] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "resolved": self.resolved,
            "regressed": self.regressed,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
        }

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "report_id": self.report_id,
        }
        payload.update(self.counts())
        payload["errors"] = [error.to_dict() for error in self.errors]
        return payload
