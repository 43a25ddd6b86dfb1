"""Per-system advisory locks stored in the ``system_locks`` table.

A lock row carries its holder and an expiry so a crashed importer never blocks
a system for longer than the TTL. Batches take their locks in ascending system
id order, which rules out lock-order deadlocks between overlapping batches.
"""
from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterable, Iterator

from baseline_engine.errors import ConcurrentLockTimeoutError, TransactionConflictError
from baseline_engine.models import parse_timestamp, utc_now_iso
from baseline_engine.storage import transaction

LOGGER = logging.getLogger(__name__)


def new_holder_id() -> str:
    return f"import-{uuid.uuid4().hex}"


def try_acquire(conn: sqlite3.Connection, system_id: int, holder: str, ttl_seconds: float) -> bool:
    """Take the lock if it is free or expired. Returns False when someone else holds it."""
    now = parse_timestamp(utc_now_iso())
    expires_at = now + timedelta(seconds=ttl_seconds)
    try:
        with transaction(conn):
            conn.execute(
                """
                INSERT INTO system_locks (system_id, holder, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(system_id) DO UPDATE SET
                    holder = excluded.holder,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                WHERE system_locks.expires_at < excluded.acquired_at
                """,
                (system_id, holder, now.isoformat(), expires_at.isoformat()),
            )
            row = conn.execute("SELECT holder FROM system_locks WHERE system_id = ?", (system_id,)).fetchone()
    except TransactionConflictError:
        return False
    return row is not None and row["holder"] == holder


def release(conn: sqlite3.Connection, system_ids: Iterable[int], holder: str) -> None:
    ids = list(system_ids)
    if not ids:
        return
    with transaction(conn):
        conn.executemany(
            "DELETE FROM system_locks WHERE system_id = ? AND holder = ?",
            [(system_id, holder) for system_id in ids],
        )


def purge_expired_locks(conn: sqlite3.Connection) -> int:
    with transaction(conn):
        return conn.execute("DELETE FROM system_locks WHERE expires_at < ?", (utc_now_iso(),)).rowcount


@contextmanager
def acquire_system_locks(
    conn: sqlite3.Connection,
    system_ids: Iterable[int],
    holder: str | None = None,
    timeout: float = 10.0,
    ttl_seconds: float = 300.0,
    poll_interval: float = 0.05,
) -> Iterator[list[int]]:
    """Hold the locks of every system for the duration of the block.

    Raises ConcurrentLockTimeoutError when one of them cannot be taken within
    ``timeout``; locks acquired so far are released first.
    """
    holder = holder or new_holder_id()
    ordered = sorted(set(system_ids))
    held: list[int] = []
    deadline = time.monotonic() + timeout
    try:
        for system_id in ordered:
            waited = False
            while not try_acquire(conn, system_id, holder, ttl_seconds):
                if time.monotonic() >= deadline:
                    LOGGER.warning("Lock timeout on system %s after %ss (%s)", system_id, timeout, holder)
                    raise ConcurrentLockTimeoutError(system_id, timeout)
                if not waited:
                    LOGGER.info("Waiting for lock on system %s", system_id)
                    waited = True
                time.sleep(poll_interval)
            held.append(system_id)
        LOGGER.debug("%s holds locks on systems %s", holder, held)
        yield held
    finally:
        release(conn, held, holder)
