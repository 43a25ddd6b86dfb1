from __future__ import annotations

from contextlib import closing

import pytest

from baseline_engine.errors import ConcurrentLockTimeoutError
from baseline_engine.locks import acquire_system_locks, purge_expired_locks, try_acquire
from baseline_engine.storage import connect, transaction


def _holders(conn):
    return {row["system_id"]: row["holder"] for row in conn.execute("SELECT system_id, holder FROM system_locks")}


def test_locks_are_taken_in_order_and_released(conn):
    with acquire_system_locks(conn, [43, 42, 43], holder="a") as held:
        assert held == [42, 43]
        assert _holders(conn) == {42: "a", 43: "a"}
    assert _holders(conn) == {}


def test_locks_released_when_block_raises(conn):
    with pytest.raises(ValueError):
        with acquire_system_locks(conn, [42], holder="a"):
            raise ValueError("boom")
    assert _holders(conn) == {}


def test_contended_lock_times_out_and_releases_partial_set(db_path, conn):
    with closing(connect(db_path)) as other:
        assert try_acquire(other, 43, "other", ttl_seconds=60)
        with pytest.raises(ConcurrentLockTimeoutError) as excinfo:
            with acquire_system_locks(conn, [42, 43], holder="a", timeout=0.1, poll_interval=0.01):
                pass
        assert excinfo.value.system_id == 43
        assert excinfo.value.retryable
        # 42 was acquired first and must not leak
        assert _holders(conn) == {43: "other"}


def test_expired_lock_can_be_taken_over(conn):
    with transaction(conn):
        conn.execute(
            "INSERT INTO system_locks (system_id, holder, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
            (42, "crashed", "2020-01-01T00:00:00+00:00", "2020-01-01T00:05:00+00:00"),
        )
    assert try_acquire(conn, 42, "b", ttl_seconds=60)
    assert _holders(conn) == {42: "b"}


def test_purge_expired_locks(conn):
    with transaction(conn):
        conn.execute(
            "INSERT INTO system_locks (system_id, holder, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
            (42, "crashed", "2020-01-01T00:00:00+00:00", "2020-01-01T00:05:00+00:00"),
        )
    assert try_acquire(conn, 43, "live", ttl_seconds=60)
    assert purge_expired_locks(conn) == 1
    assert _holders(conn) == {43: "live"}
