from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from baseline_engine.errors import UnknownHostError
from baseline_engine.models import (
    KIND_VULNERABILITY,
    ComplianceCandidate,
    HostDescriptor,
    KeyedCandidate,
    RowError,
    VulnerabilityCandidate,
)
from baseline_engine.storage import fetch_system, fetch_systems

LOGGER = logging.getLogger(__name__)


def natural_key(candidate: VulnerabilityCandidate | ComplianceCandidate, system_id: int) -> tuple:
    """(kind, system_id, check...) identifying the same real-world issue across scans."""
    return (candidate.kind, system_id, *candidate.check_key)


def row_natural_key(kind: str, row: dict[str, Any]) -> tuple:
    if kind == KIND_VULNERABILITY:
        return (kind, row["system_id"], row["plugin_id"], row["port"])
    return (kind, row["system_id"], row["rule_id"], row["benchmark_version"])


def _normalize_hostname(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip().lower().rstrip(".") or None


class SystemRegistry:
    """Hostname / address index over the monitored systems."""

    def __init__(self, systems: list[dict[str, Any]]) -> None:
        self.systems = {system["id"]: system for system in systems}
        self._by_hostname: dict[str, int] = {}
        self._by_short_name: dict[str, int] = {}
        # systems registered without a domain, matchable from any scanned fqdn
        self._by_bare_name: dict[str, int] = {}
        self._by_address: dict[str, int] = {}
        for system in systems:
            hostname = _normalize_hostname(system.get("hostname"))
            name = _normalize_hostname(system.get("name"))
            if hostname:
                self._by_hostname.setdefault(hostname, system["id"])
                self._by_short_name.setdefault(hostname.split(".")[0], system["id"])
                if "." not in hostname:
                    self._by_bare_name.setdefault(hostname, system["id"])
            elif name and "." not in name:
                self._by_bare_name.setdefault(name, system["id"])
            if name:
                self._by_short_name.setdefault(name, system["id"])
            address = (system.get("ip_address") or "").strip()
            if address:
                self._by_address.setdefault(address, system["id"])

    @classmethod
    def load(cls, conn: sqlite3.Connection, package_id: int | None = None) -> "SystemRegistry":
        return cls(fetch_systems(conn, package_id))

    def resolve(self, hostname: str | None, ip_address: str | None) -> int | None:
        if ip_address and ip_address.strip() in self._by_address:
            return self._by_address[ip_address.strip()]
        normalized = _normalize_hostname(hostname)
        if normalized:
            if normalized in self._by_hostname:
                return self._by_hostname[normalized]
            if normalized in self._by_address:
                return self._by_address[normalized]
            if "." not in normalized:
                return self._by_short_name.get(normalized)
            # a qualified name only falls back to systems registered without a domain
            return self._by_bare_name.get(normalized.split(".")[0])
        return None


@dataclass
class ResolutionResult:
    keyed: list[KeyedCandidate] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    system_ids: set[int] = field(default_factory=set)


def _describe_host(hostname: str | None, ip_address: str | None) -> str:
    return hostname or ip_address or "<none>"


def resolve_candidates(
    conn: sqlite3.Connection,
    candidates: list[VulnerabilityCandidate | ComplianceCandidate],
    hosts: list[HostDescriptor],
    package_id: int | None = None,
    system_id: int | None = None,
) -> ResolutionResult:
    """Attach system ids and natural keys to candidates.

    With ``system_id`` the batch is a single-system re-scan: host-less rows and
    rows naming that system are attributed to it, anything else is skipped.
    With ``package_id`` only the package's systems are eligible matches.
    """
    result = ResolutionResult()

    if system_id is not None:
        scoped = fetch_system(conn, system_id)
        if scoped is None:
            raise UnknownHostError(f"System {system_id} does not exist")
        if package_id is not None and scoped.get("package_id") != package_id:
            raise UnknownHostError(f"System {system_id} is not a member of package {package_id}")
        registry = SystemRegistry([scoped])
        result.system_ids.add(system_id)
    else:
        registry = SystemRegistry.load(conn, package_id)

    for host in hosts:
        resolved = registry.resolve(host.hostname, host.ip_address)
        if resolved is not None:
            result.system_ids.add(resolved)
        elif system_id is None:
            LOGGER.debug("Host %s not found in system registry", _describe_host(host.hostname, host.ip_address))

    for candidate in candidates:
        if system_id is not None and not candidate.hostname and not candidate.ip_address:
            resolved = system_id
        else:
            resolved = registry.resolve(candidate.hostname, candidate.ip_address)
        if resolved is None:
            host = _describe_host(candidate.hostname, candidate.ip_address)
            result.errors.append(RowError(row_index=candidate.row_index, field="host", reason=f"unknown host {host}"))
            continue
        result.system_ids.add(resolved)
        result.keyed.append(
            KeyedCandidate(system_id=resolved, key=natural_key(candidate, resolved), candidate=candidate)
        )
    return result
