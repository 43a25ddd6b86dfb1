from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from baseline_engine.errors import TransactionConflictError
from baseline_engine.models import (
    ACTIVE_STATES,
    KIND_COMPLIANCE,
    KIND_VULNERABILITY,
    SEVERITIES,
    BaselineSnapshot,
)

LOGGER = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS packages (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS systems (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    hostname TEXT,
    ip_address TEXT,
    package_id INTEGER,
    FOREIGN KEY (package_id) REFERENCES packages(id)
);

CREATE TABLE IF NOT EXISTS scan_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_identity TEXT NOT NULL,
    source_kind TEXT NOT NULL,
    filename TEXT NOT NULL,
    scan_name TEXT NOT NULL,
    scan_date TEXT NOT NULL,
    package_id INTEGER,
    system_id INTEGER,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    finished_at TEXT,
    inserted_count INTEGER NOT NULL DEFAULT 0,
    updated_count INTEGER NOT NULL DEFAULT 0,
    unchanged_count INTEGER NOT NULL DEFAULT 0,
    resolved_count INTEGER NOT NULL DEFAULT 0,
    regressed_count INTEGER NOT NULL DEFAULT 0,
    skipped_count INTEGER NOT NULL DEFAULT 0,
    duplicate_count INTEGER NOT NULL DEFAULT 0,
    errors_json TEXT NOT NULL DEFAULT '[]',
    failure_reason TEXT
);

CREATE TABLE IF NOT EXISTS report_systems (
    report_id INTEGER NOT NULL,
    system_id INTEGER NOT NULL,
    PRIMARY KEY (report_id, system_id),
    FOREIGN KEY (report_id) REFERENCES scan_reports(id)
);

CREATE TABLE IF NOT EXISTS vulnerability_findings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    system_id INTEGER NOT NULL,
    plugin_id TEXT NOT NULL,
    port INTEGER,
    plugin_name TEXT,
    plugin_family TEXT NOT NULL DEFAULT '',
    severity TEXT NOT NULL,
    protocol TEXT,
    service TEXT,
    cve TEXT,
    cvss_score REAL,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    state TEXT NOT NULL,
    resolved_at TEXT,
    regressed_count INTEGER NOT NULL DEFAULT 0,
    report_id INTEGER NOT NULL,
    FOREIGN KEY (system_id) REFERENCES systems(id)
);

CREATE TABLE IF NOT EXISTS compliance_findings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    system_id INTEGER NOT NULL,
    rule_id TEXT NOT NULL,
    benchmark_version TEXT NOT NULL DEFAULT '',
    group_id TEXT,
    rule_title TEXT,
    severity TEXT NOT NULL,
    result TEXT NOT NULL,
    control_id TEXT,
    cci TEXT,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    state TEXT NOT NULL,
    resolved_at TEXT,
    regressed_count INTEGER NOT NULL DEFAULT 0,
    report_id INTEGER NOT NULL,
    FOREIGN KEY (system_id) REFERENCES systems(id)
);

CREATE TABLE IF NOT EXISTS baseline_snapshots (
    scope_type TEXT NOT NULL,
    scope_id INTEGER NOT NULL,
    version INTEGER NOT NULL,
    computed_at TEXT NOT NULL,
    critical_count INTEGER NOT NULL DEFAULT 0,
    high_count INTEGER NOT NULL DEFAULT 0,
    medium_count INTEGER NOT NULL DEFAULT 0,
    low_count INTEGER NOT NULL DEFAULT 0,
    info_count INTEGER NOT NULL DEFAULT 0,
    open_total INTEGER NOT NULL DEFAULT 0,
    compliance_applicable INTEGER NOT NULL DEFAULT 0,
    compliance_passing INTEGER NOT NULL DEFAULT 0,
    compliance_percent REAL,
    controls_json TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (scope_type, scope_id)
);

CREATE TABLE IF NOT EXISTS system_locks (
    system_id INTEGER PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_vuln_natural_key
    ON vulnerability_findings(system_id, plugin_id, COALESCE(port, -1));
CREATE UNIQUE INDEX IF NOT EXISTS uq_compliance_natural_key
    ON compliance_findings(system_id, rule_id, benchmark_version);
CREATE UNIQUE INDEX IF NOT EXISTS uq_reports_live_identity
    ON scan_reports(source_identity) WHERE status IN ('pending', 'applied');
CREATE INDEX IF NOT EXISTS idx_vuln_severity ON vulnerability_findings(severity);
CREATE INDEX IF NOT EXISTS idx_vuln_state ON vulnerability_findings(state);
CREATE INDEX IF NOT EXISTS idx_compliance_state ON compliance_findings(state);
CREATE INDEX IF NOT EXISTS idx_compliance_benchmark ON compliance_findings(benchmark_version);
CREATE INDEX IF NOT EXISTS idx_systems_package ON systems(package_id);
CREATE INDEX IF NOT EXISTS idx_reports_status ON scan_reports(status, created_at);
"""

FINDING_TABLES = {
    KIND_VULNERABILITY: "vulnerability_findings",
    KIND_COMPLIANCE: "compliance_findings",
}

VULNERABILITY_COLUMNS = (
    "system_id", "plugin_id", "port", "plugin_name", "plugin_family", "severity", "protocol",
    "service", "cve", "cvss_score", "first_seen", "last_seen", "state", "resolved_at",
    "regressed_count", "report_id",
)

COMPLIANCE_COLUMNS = (
    "system_id", "rule_id", "benchmark_version", "group_id", "rule_title", "severity", "result",
    "control_id", "cci", "first_seen", "last_seen", "state", "resolved_at", "regressed_count",
    "report_id",
)

TABLE_COLUMNS = {
    KIND_VULNERABILITY: VULNERABILITY_COLUMNS,
    KIND_COMPLIANCE: COMPLIANCE_COLUMNS,
}


def connect(db_path: str, busy_timeout: float = 5.0) -> sqlite3.Connection:
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # autocommit mode: transactions are opened explicitly by transaction()
    conn = sqlite3.connect(path, timeout=busy_timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str) -> None:
    with closing(connect(db_path)) as conn:
        conn.executescript(SCHEMA_SQL)
    LOGGER.info("SQLite initialized at %s", db_path)


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = True) -> Iterator[sqlite3.Connection]:
    """Run a block inside one SQLite transaction; roll back on any exception."""
    try:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    except sqlite3.OperationalError as exc:
        if _is_busy(exc):
            raise TransactionConflictError(f"Could not start transaction: {exc}") from exc
        raise
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    try:
        conn.execute("COMMIT")
    except sqlite3.OperationalError as exc:
        conn.execute("ROLLBACK")
        if _is_busy(exc):
            raise TransactionConflictError(f"Commit failed: {exc}") from exc
        raise


def _to_sqlite_text(value):
    if value is None:
        return None
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


# ---------------------------------------------------------------------------
# Inventory (owned by inventory management; seeded here for imports and tests)
# ---------------------------------------------------------------------------

def upsert_package(conn: sqlite3.Connection, package_id: int, name: str) -> None:
    conn.execute(
        "INSERT INTO packages (id, name) VALUES (?, ?) ON CONFLICT(id) DO UPDATE SET name = excluded.name",
        (package_id, name),
    )


def upsert_system(
    conn: sqlite3.Connection,
    system_id: int,
    name: str,
    hostname: str | None = None,
    ip_address: str | None = None,
    package_id: int | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO systems (id, name, hostname, ip_address, package_id)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            hostname = excluded.hostname,
            ip_address = excluded.ip_address,
            package_id = excluded.package_id
        """,
        (system_id, name, hostname, ip_address, package_id),
    )


def fetch_systems(conn: sqlite3.Connection, package_id: int | None = None) -> list[dict[str, Any]]:
    if package_id is None:
        rows = conn.execute("SELECT * FROM systems ORDER BY id").fetchall()
    else:
        rows = conn.execute("SELECT * FROM systems WHERE package_id = ? ORDER BY id", (package_id,)).fetchall()
    return [dict(row) for row in rows]


def fetch_system(conn: sqlite3.Connection, system_id: int) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM systems WHERE id = ?", (system_id,)).fetchone()
    return dict(row) if row else None


def package_system_ids(conn: sqlite3.Connection, package_id: int) -> list[int]:
    rows = conn.execute("SELECT id FROM systems WHERE package_id = ? ORDER BY id", (package_id,)).fetchall()
    return [row["id"] for row in rows]


def packages_for_systems(conn: sqlite3.Connection, system_ids: Iterable[int]) -> list[int]:
    ids = sorted(set(system_ids))
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    rows = conn.execute(
        f"SELECT DISTINCT package_id FROM systems WHERE id IN ({placeholders}) AND package_id IS NOT NULL",
        ids,
    ).fetchall()
    return sorted(row["package_id"] for row in rows)


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------

def load_findings(conn: sqlite3.Connection, kind: str, system_ids: Iterable[int]) -> list[dict[str, Any]]:
    ids = sorted(set(system_ids))
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    rows = conn.execute(
        f"SELECT * FROM {FINDING_TABLES[kind]} WHERE system_id IN ({placeholders}) ORDER BY id",
        ids,
    ).fetchall()
    return [dict(row) for row in rows]


def insert_findings(conn: sqlite3.Connection, kind: str, rows: list[dict[str, Any]]) -> None:
    if not rows:
        return
    columns = TABLE_COLUMNS[kind]
    conn.executemany(
        f"INSERT INTO {FINDING_TABLES[kind]} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        [tuple(row.get(column) for column in columns) for row in rows],
    )


def update_findings(conn: sqlite3.Connection, kind: str, rows: list[dict[str, Any]]) -> None:
    """Write back full rows keyed by id; only mutable columns are touched."""
    if not rows:
        return
    columns = [column for column in TABLE_COLUMNS[kind] if column not in {"system_id", "first_seen"}]
    assignments = ", ".join(f"{column} = ?" for column in columns)
    conn.executemany(
        f"UPDATE {FINDING_TABLES[kind]} SET {assignments} WHERE id = ?",
        [tuple(row.get(column) for column in columns) + (row["id"],) for row in rows],
    )


def query_findings(
    conn: sqlite3.Connection,
    kind: str,
    package_id: int | None = None,
    system_id: int | None = None,
    severity: str | None = None,
    state: str | None = None,
    benchmark: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[dict[str, Any]], int]:
    table = FINDING_TABLES[kind]
    where = " WHERE 1=1"
    params: list[Any] = []
    if package_id is not None:
        where += " AND f.system_id IN (SELECT id FROM systems WHERE package_id = ?)"
        params.append(package_id)
    if system_id is not None:
        where += " AND f.system_id = ?"
        params.append(system_id)
    if severity:
        where += " AND f.severity = ?"
        params.append(severity.lower())
    if state:
        where += " AND f.state = ?"
        params.append(state.lower())
    if benchmark:
        if kind != KIND_COMPLIANCE:
            return [], 0
        where += " AND f.benchmark_version = ?"
        params.append(benchmark)
    total = conn.execute(f"SELECT COUNT(*) AS value FROM {table} f{where}", params).fetchone()["value"]
    rows = conn.execute(
        f"SELECT f.*, s.package_id AS package_id FROM {table} f LEFT JOIN systems s ON s.id = f.system_id"
        f"{where} ORDER BY f.last_seen DESC, f.id DESC LIMIT ? OFFSET ?",
        [*params, limit, offset],
    ).fetchall()
    items = []
    for row in rows:
        item = dict(row)
        item["kind"] = kind
        items.append(item)
    return items, total


def delete_findings_for_systems(conn: sqlite3.Connection, system_ids: Iterable[int] | None) -> int:
    """Delete finding rows of both kinds; ``None`` means every system."""
    removed = 0
    for table in FINDING_TABLES.values():
        if system_ids is None:
            cursor = conn.execute(f"DELETE FROM {table}")
        else:
            ids = sorted(set(system_ids))
            if not ids:
                continue
            placeholders = ",".join("?" for _ in ids)
            cursor = conn.execute(f"DELETE FROM {table} WHERE system_id IN ({placeholders})", ids)
        removed += cursor.rowcount
    return removed


# ---------------------------------------------------------------------------
# Aggregation reads
# ---------------------------------------------------------------------------

def active_severity_counts(conn: sqlite3.Connection, system_id: int) -> dict[str, int]:
    counts = {severity: 0 for severity in SEVERITIES}
    placeholders = ",".join("?" for _ in ACTIVE_STATES)
    for table in FINDING_TABLES.values():
        rows = conn.execute(
            f"SELECT severity, COUNT(*) AS value FROM {table} "
            f"WHERE system_id = ? AND state IN ({placeholders}) GROUP BY severity",
            (system_id, *ACTIVE_STATES),
        ).fetchall()
        for row in rows:
            counts[row["severity"]] = counts.get(row["severity"], 0) + row["value"]
    return counts


def compliance_rows(conn: sqlite3.Connection, system_id: int) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT rule_id, severity, result, state, control_id FROM compliance_findings WHERE system_id = ?",
        (system_id,),
    ).fetchall()
    return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def save_snapshot(conn: sqlite3.Connection, snapshot: BaselineSnapshot) -> int:
    """Upsert a materialized snapshot, bumping its version. Returns the new version."""
    row = conn.execute(
        "SELECT version FROM baseline_snapshots WHERE scope_type = ? AND scope_id = ?",
        (snapshot.scope_type, snapshot.scope_id),
    ).fetchone()
    version = (row["version"] if row else 0) + 1
    counts = snapshot.severity_counts
    conn.execute(
        """
        INSERT OR REPLACE INTO baseline_snapshots (
            scope_type, scope_id, version, computed_at, critical_count, high_count,
            medium_count, low_count, info_count, open_total, compliance_applicable,
            compliance_passing, compliance_percent, controls_json
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            snapshot.scope_type,
            snapshot.scope_id,
            version,
            snapshot.computed_at,
            counts.get("critical", 0),
            counts.get("high", 0),
            counts.get("medium", 0),
            counts.get("low", 0),
            counts.get("info", 0),
            snapshot.open_total,
            snapshot.compliance_applicable,
            snapshot.compliance_passing,
            snapshot.compliance_percent,
            _to_sqlite_text(snapshot.control_status) or "{}",
        ),
    )
    snapshot.version = version
    return version


def fetch_snapshot(conn: sqlite3.Connection, scope_type: str, scope_id: int) -> BaselineSnapshot | None:
    row = conn.execute(
        "SELECT * FROM baseline_snapshots WHERE scope_type = ? AND scope_id = ?",
        (scope_type, scope_id),
    ).fetchone()
    if not row:
        return None
    return BaselineSnapshot(
        scope_type=row["scope_type"],
        scope_id=row["scope_id"],
        severity_counts={severity: row[f"{severity}_count"] for severity in SEVERITIES},
        open_total=row["open_total"],
        compliance_applicable=row["compliance_applicable"],
        compliance_passing=row["compliance_passing"],
        compliance_percent=row["compliance_percent"],
        control_status=json.loads(row["controls_json"] or "{}"),
        version=row["version"],
        computed_at=row["computed_at"],
    )


def delete_snapshots(conn: sqlite3.Connection, scope_type: str, scope_ids: Iterable[int] | None) -> int:
    if scope_ids is None:
        return conn.execute("DELETE FROM baseline_snapshots WHERE scope_type = ?", (scope_type,)).rowcount
    ids = sorted(set(scope_ids))
    if not ids:
        return 0
    placeholders = ",".join("?" for _ in ids)
    return conn.execute(
        f"DELETE FROM baseline_snapshots WHERE scope_type = ? AND scope_id IN ({placeholders})",
        (scope_type, *ids),
    ).rowcount
