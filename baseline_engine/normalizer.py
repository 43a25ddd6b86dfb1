from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Callable

from baseline_engine.errors import MalformedInputError
from baseline_engine.models import (
    KIND_COMPLIANCE,
    KIND_VULNERABILITY,
    RESULT_FAIL,
    RESULT_NOT_APPLICABLE,
    RESULT_PASS,
    ComplianceCandidate,
    ReportDescriptor,
    RowError,
    VulnerabilityCandidate,
    to_iso,
)

LOGGER = logging.getLogger(__name__)


NESSUS_SEVERITY_MAP = {
    "0": "info",
    "1": "low",
    "2": "medium",
    "3": "high",
    "4": "critical",
    "NONE": "info",
    "INFO": "info",
    "INFORMATIONAL": "info",
    "LOW": "low",
    "MEDIUM": "medium",
    "MODERATE": "medium",
    "HIGH": "high",
    "CRITICAL": "critical",
}

STIG_SEVERITY_MAP = {
    "HIGH": "high",
    "MEDIUM": "medium",
    "LOW": "low",
    "CAT_I": "high",
    "CAT I": "high",
    "CAT_II": "medium",
    "CAT II": "medium",
    "CAT_III": "low",
    "CAT III": "low",
    "CRITICAL": "critical",
    "INFO": "info",
}

# Not_Reviewed counts against posture until someone reviews it
STIG_RESULT_MAP = {
    "OPEN": RESULT_FAIL,
    "FAIL": RESULT_FAIL,
    "FAILED": RESULT_FAIL,
    "NOT_REVIEWED": RESULT_FAIL,
    "NOTREVIEWED": RESULT_FAIL,
    "NOTAFINDING": RESULT_PASS,
    "NOT_A_FINDING": RESULT_PASS,
    "PASS": RESULT_PASS,
    "PASSED": RESULT_PASS,
    "NOT_APPLICABLE": RESULT_NOT_APPLICABLE,
    "NOTAPPLICABLE": RESULT_NOT_APPLICABLE,
    "NA": RESULT_NOT_APPLICABLE,
    "N/A": RESULT_NOT_APPLICABLE,
}

EXTENSION_KINDS = {
    ".nessus": "nessus",
    ".ckl": "stig",
    ".cklb": "stig",
    ".xccdf": "stig",
    ".xml": "stig",
}


@dataclass
class NormalizationResult:
    candidates: list[VulnerabilityCandidate | ComplianceCandidate] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)


Normalizer = Callable[[ReportDescriptor, dict[str, Any], int, bool], "VulnerabilityCandidate | ComplianceCandidate"]

NORMALIZERS: dict[str, Normalizer] = {}
FINDING_KINDS: dict[str, str] = {}


def register_normalizer(kind: str, finding_kind: str) -> Callable[[Normalizer], Normalizer]:
    def decorator(func: Normalizer) -> Normalizer:
        NORMALIZERS[kind] = func
        FINDING_KINDS[kind] = finding_kind
        return func

    return decorator


def _first(row: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = row.get(name)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _lookup(mapping: dict[str, str], value: Any, field_name: str, row_index: int) -> str:
    if value is None or str(value).strip() == "":
        raise MalformedInputError(f"{field_name} is required", field=field_name, row_index=row_index)
    mapped = mapping.get(str(value).strip().upper())
    if mapped is None:
        raise MalformedInputError(f"unrecognized {field_name} {value!r}", field=field_name, row_index=row_index)
    return mapped


def _host(row: dict[str, Any], row_index: int, host_optional: bool) -> tuple[str | None, str | None]:
    hostname = _text(_first(row, "hostname", "host_name", "host", "host-fqdn", "netbios_name"))
    ip_address = _text(_first(row, "ip_address", "host_ip", "host-ip", "ip"))
    if not hostname and not ip_address and not host_optional:
        raise MalformedInputError("host identity is required", field="host", row_index=row_index)
    return hostname, ip_address


NESSUS_HOST_END_FORMAT = "%a %b %d %H:%M:%S %Y"


def _host_end(report: ReportDescriptor, value: Any) -> str:
    """HOST_END tag as written by Nessus, e.g. ``Thu Mar 14 10:20:31 2024``."""
    text = str(value).strip()
    try:
        return datetime.strptime(text, NESSUS_HOST_END_FORMAT).replace(tzinfo=timezone.utc).isoformat()
    except ValueError:
        pass
    try:
        return to_iso(text)
    except ValueError:
        LOGGER.debug("Unparseable host_end %r, using report scan date", text)
        return report.scan_date


def _observed_at(report: ReportDescriptor, row: dict[str, Any], row_index: int) -> str:
    value = _first(row, "observed_at", "scan_date")
    if value is None:
        host_end = _first(row, "host_end")
        if host_end is None:
            return report.scan_date
        return _host_end(report, host_end)
    try:
        return to_iso(value)
    except ValueError as exc:
        raise MalformedInputError(f"invalid timestamp {value!r}", field="observed_at", row_index=row_index) from exc


def _port(value: Any) -> int | None:
    if value is None:
        return None
    text = str(value).split("/")[0].strip()
    if not text:
        return None
    try:
        port = int(text)
    except ValueError:
        return None
    # nessus reports host-level plugins on port 0
    return port or None


def _float(value: Any) -> float | None:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


@register_normalizer("nessus", KIND_VULNERABILITY)
def normalize_nessus(report: ReportDescriptor, row: dict[str, Any], row_index: int, host_optional: bool = False) -> VulnerabilityCandidate:
    hostname, ip_address = _host(row, row_index, host_optional)
    plugin_id = _text(_first(row, "plugin_id", "pluginID", "pluginId"))
    if not plugin_id:
        raise MalformedInputError("plugin_id is required", field="plugin_id", row_index=row_index)
    severity = _lookup(
        NESSUS_SEVERITY_MAP,
        _first(row, "severity", "risk_factor"),
        "severity",
        row_index,
    )
    cve = _first(row, "cve")
    if isinstance(cve, list):
        cve = ", ".join(str(item) for item in cve)
    return VulnerabilityCandidate(
        row_index=row_index,
        hostname=hostname,
        ip_address=ip_address,
        plugin_id=plugin_id,
        severity=severity,
        observed_at=_observed_at(report, row, row_index),
        port=_port(row.get("port")),
        plugin_name=_text(_first(row, "plugin_name", "pluginName")),
        plugin_family=_text(_first(row, "plugin_family", "pluginFamily")),
        protocol=_text(row.get("protocol")),
        service=_text(_first(row, "service", "svc_name")),
        cve=_text(cve),
        cvss_score=_float(_first(row, "cvss3_score", "cvss_score", "cvss3_base_score", "cvss_base_score")),
    )


@register_normalizer("stig", KIND_COMPLIANCE)
def normalize_stig(report: ReportDescriptor, row: dict[str, Any], row_index: int, host_optional: bool = False) -> ComplianceCandidate:
    hostname, ip_address = _host(row, row_index, host_optional)
    rule_id = _text(_first(row, "rule_id", "ruleId", "rule_id_src", "Rule_ID"))
    if not rule_id:
        raise MalformedInputError("rule_id is required", field="rule_id", row_index=row_index)
    severity = _lookup(STIG_SEVERITY_MAP, _first(row, "severity", "Severity"), "severity", row_index)
    result = _lookup(STIG_RESULT_MAP, _first(row, "status", "result", "STATUS"), "status", row_index)
    benchmark = _text(_first(row, "benchmark_version", "benchmark", "stig_id")) or report.benchmark or ""
    ccis = _first(row, "cci", "ccis", "CCI_REF")
    if isinstance(ccis, list):
        ccis = ccis[0] if ccis else None
    return ComplianceCandidate(
        row_index=row_index,
        hostname=hostname,
        ip_address=ip_address,
        rule_id=rule_id,
        benchmark_version=benchmark,
        severity=severity,
        result=result,
        observed_at=_observed_at(report, row, row_index),
        group_id=_text(_first(row, "group_id", "groupId", "vuln_id", "Vuln_Num")),
        rule_title=_text(_first(row, "rule_title", "ruleTitle", "title")),
        control_id=_text(_first(row, "control_id", "controlId")),
        cci=_text(ccis),
    )


def resolve_source_kind(report: ReportDescriptor) -> str:
    if report.source_kind:
        kind = report.source_kind.lower()
    else:
        kind = EXTENSION_KINDS.get(PurePath(report.filename).suffix.lower(), "")
    if kind not in NORMALIZERS:
        raise MalformedInputError(
            f"Unsupported source kind {kind or report.filename!r}",
            field="report.source_kind",
        )
    return kind


def normalize_batch(report: ReportDescriptor, rows: list[Any], host_optional: bool = False) -> NormalizationResult:
    """Map raw adapter rows onto canonical candidates.

    Malformed rows are dropped and reported; they never fail the batch.
    """
    normalizer = NORMALIZERS[resolve_source_kind(report)]
    result = NormalizationResult()
    for row_index, row in enumerate(rows):
        if not isinstance(row, dict):
            result.errors.append(RowError(row_index=row_index, field=None, reason="row must be an object"))
            continue
        try:
            candidate = normalizer(report, row, row_index, host_optional)
        except MalformedInputError as exc:
            LOGGER.debug("Skipping row %s of %s: %s", row_index, report.filename, exc.reason)
            result.errors.append(RowError(row_index=row_index, field=exc.field, reason=exc.reason))
            continue
        result.candidates.append(candidate)
    return result
