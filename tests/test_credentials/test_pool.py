"""Tests for CredentialPool — LRU rotation, quota rollover, reconcile, concurrency."""

from __future__ import annotations

import sqlite3
import threading
from collections import Counter

import pytest

from perf_ingestor.credentials.pool import CredentialPool
from perf_ingestor.db.connection import get_connection
from perf_ingestor.db.repositories.credential_repo import CredentialRepository
from perf_ingestor.exceptions import (
    CredentialUnavailableError,
    NoActiveCredentialsError,
)


@pytest.fixture
def pool(db_file, tick_clock) -> CredentialPool:
    p = CredentialPool(db_file, usage_limit=10, clock=tick_clock)
    p.reconcile("gemini", ["k1", "k2", "k3"])
    return p


def _usage(pool: CredentialPool, service: str = "gemini") -> dict[str, int]:
    return {r.secret: r.usage_count for r in pool.status(service)}


class TestAcquire:
    def test_rotates_least_recently_used(self, pool):
        assert [pool.acquire("gemini") for _ in range(6)] == ["k1", "k2", "k3", "k1", "k2", "k3"]
        assert _usage(pool) == {"k1": 2, "k2": 2, "k3": 2}

    def test_records_last_used_at(self, pool):
        pool.acquire("gemini")
        k1 = pool.status("gemini")[0]
        assert k1.last_used_at is not None
        assert k1.usage_count == 1

    def test_quota_exhaustion_rolls_over_and_still_succeeds(self, pool):
        first_window = [pool.acquire("gemini") for _ in range(30)]
        assert Counter(first_window) == {"k1": 10, "k2": 10, "k3": 10}
        assert _usage(pool) == {"k1": 10, "k2": 10, "k3": 10}

        # 31st call: nothing selectable, every record is reset, LRU wins
        assert pool.acquire("gemini") == "k1"
        assert _usage(pool) == {"k1": 1, "k2": 0, "k3": 0}

    def test_usage_never_exceeds_limit(self, db_file, tick_clock):
        pool = CredentialPool(db_file, usage_limit=3, clock=tick_clock)
        pool.reconcile("gemini", ["k1", "k2"])
        for _ in range(20):
            pool.acquire("gemini")
            assert all(count <= 3 for count in _usage(pool).values())

    def test_inactive_records_are_skipped(self, pool, db_file):
        with get_connection(db_file) as conn:
            conn.execute("UPDATE api_credentials SET is_active = 0 WHERE secret = 'k1';")
        assert {pool.acquire("gemini") for _ in range(4)} == {"k2", "k3"}

    def test_no_records_raises(self, pool):
        with pytest.raises(NoActiveCredentialsError) as exc_info:
            pool.acquire("unknown-service")
        assert exc_info.value.service == "unknown-service"

    def test_all_inactive_raises_and_leaves_counts_untouched(self, pool, db_file):
        pool.acquire("gemini")
        with get_connection(db_file) as conn:
            conn.execute("UPDATE api_credentials SET is_active = 0;")
        with pytest.raises(NoActiveCredentialsError):
            pool.acquire("gemini")
        assert _usage(pool)["k1"] == 1

    def test_services_are_independent(self, pool):
        pool.reconcile("other", ["o1"])
        assert pool.acquire("other") == "o1"
        assert pool.acquire("gemini") == "k1"
        assert _usage(pool, "other") == {"o1": 1}

    def test_storage_error_is_wrapped_without_cause(self, tmp_path):
        pool = CredentialPool(str(tmp_path / "no_schema.db"))
        with pytest.raises(CredentialUnavailableError) as exc_info:
            pool.acquire("gemini")
        err = exc_info.value
        assert err.service == "gemini"
        assert "no such table" not in str(err)
        assert err.__cause__ is None
        assert err.__suppress_context__

    def test_invalid_usage_limit(self, db_file):
        with pytest.raises(ValueError):
            CredentialPool(db_file, usage_limit=0)


class TestConcurrentAcquire:
    def test_no_over_issuance_across_threads_and_pools(self, db_file):
        # Two pool instances share the database but not their in-process locks,
        # so the second one exercises the BEGIN IMMEDIATE path.
        pools = [
            CredentialPool(db_file, usage_limit=10, busy_timeout_ms=20000),
            CredentialPool(db_file, usage_limit=10, busy_timeout_ms=20000),
        ]
        pools[0].reconcile("gemini", ["k1", "k2", "k3"])

        handed_out: list[str] = []
        errors: list[BaseException] = []
        guard = threading.Lock()

        def worker(p: CredentialPool) -> None:
            try:
                for _ in range(25):
                    secret = p.acquire("gemini")
                    with guard:
                        handed_out.append(secret)
            except BaseException as exc:  # surfaced via the errors list
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(pools[i % 2],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(handed_out) == 100
        usage = _usage(pools[0])
        # 100 acquisitions = three full 30-use windows + 10 uses into the fourth
        assert all(count <= 10 for count in usage.values())
        assert sum(usage.values()) == 10


class TestReconcile:
    def test_adds_missing_and_removes_stale(self, pool):
        result = pool.reconcile("gemini", ["k2", "k3", "k4"])
        assert (result.added, result.removed) == (1, 1)
        assert result.changed
        assert set(_usage(pool)) == {"k2", "k3", "k4"}

    def test_keeps_usage_of_surviving_records(self, pool):
        pool.acquire("gemini")
        pool.acquire("gemini")
        pool.reconcile("gemini", ["k1", "k2", "k5"])
        assert _usage(pool) == {"k1": 1, "k2": 1, "k5": 0}

    def test_identical_set_is_a_no_op(self, pool):
        result = pool.reconcile("gemini", {"k1", "k2", "k3"})
        assert not result.changed

    def test_other_services_untouched(self, pool):
        pool.reconcile("other", ["o1"])
        pool.reconcile("gemini", [])
        assert _usage(pool) == {}
        assert _usage(pool, "other") == {"o1": 0}

    def test_failure_mid_reconcile_rolls_back_everything(self, pool, monkeypatch):
        def fail_delete(self, service, secrets):
            raise sqlite3.OperationalError("database disk image is malformed")

        monkeypatch.setattr(CredentialRepository, "delete_secrets", fail_delete)
        with pytest.raises(sqlite3.OperationalError):
            pool.reconcile("gemini", ["k2", "k3", "k4"])

        assert _usage(pool) == {"k1": 0, "k2": 0, "k3": 0}
