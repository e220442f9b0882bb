"""
Transactional rotation pool for usage-capped API secrets.

``CredentialPool.acquire(service)`` hands out the least recently used secret
of a service whose ``usage_count`` is still below the quota, then bumps its
count, all inside one ``BEGIN IMMEDIATE`` transaction:

  1. Select the selectable record with the oldest ``last_used_at``
     (never-used first, ties → lowest ``credential_id``).
  2. None selectable → reset every active record of the service to 0 (quota
     window rollover) and select once more.  Still none →
     ``NoActiveCredentialsError``.
  3. Increment ``usage_count``, stamp ``last_used_at``, commit.

Locking
-------
SQLite has no row locks.  ``BEGIN IMMEDIATE`` takes the database write lock
before the SELECT, so two processes can never both read the same pre-
increment count.  The lock is database-wide, which means acquisitions for
different services also serialise, but only for the few statements of one
transaction; nothing is held while the caller uses the secret.  Within one
process a per-service ``threading.Lock`` keeps same-service callers from
queuing on the SQLite busy timeout.

Each call opens its own short-lived connection, so a pool instance can be
shared freely across threads.  Use a file-backed database: every
``:memory:`` connection is a separate, empty database.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from perf_ingestor.config import AppConfig
from perf_ingestor.db.connection import get_connection, transaction
from perf_ingestor.db.repositories.credential_repo import CredentialRecord, CredentialRepository
from perf_ingestor.exceptions import (
    CredentialError,
    CredentialUnavailableError,
    NoActiveCredentialsError,
)
from perf_ingestor.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of mirroring a desired secret set into storage."""

    service: str
    added: int
    removed: int

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class CredentialPool:
    """Hands out pooled secrets for named services.

    Args:
        db_path: SQLite database file holding ``api_credentials``.
        usage_limit: Uses a secret may serve per quota window.
        wal_mode: Passed through to ``get_connection()``.
        busy_timeout_ms: How long to wait for another writer's lock.
        clock: Returns the current UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        db_path: str,
        usage_limit: int = 10,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if usage_limit < 1:
            raise ValueError(f"usage_limit must be >= 1, got {usage_limit}.")
        self.db_path = db_path
        self.usage_limit = usage_limit
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config: AppConfig, db_path: str | None = None) -> "CredentialPool":
        return cls(
            db_path=db_path or config.database.db_path,
            usage_limit=config.credentials.usage_limit,
            wal_mode=config.database.wal_mode,
            busy_timeout_ms=config.database.busy_timeout_ms,
        )

    # ── Public API ─────────────────────────────────────────────────────────────

    def acquire(self, service: str) -> str:
        """Return a secret for ``service`` and record one use of it.

        Raises:
            NoActiveCredentialsError: The service has no active record, even
                after a usage reset.
            CredentialUnavailableError: Storage failed; the cause is logged
                here and not attached.
        """
        with self._service_lock(service):
            try:
                with self._connect() as conn, transaction(conn, immediate=True):
                    repo = CredentialRepository(conn)
                    record = repo.select_available(service, self.usage_limit)
                    if record is None:
                        reset = repo.reset_usage(service)
                        logger.info(
                            "Credential quota window rolled over | service=%s | reset=%d",
                            service, reset,
                        )
                        record = repo.select_available(service, self.usage_limit)
                    if record is None:
                        raise NoActiveCredentialsError(service)
                    repo.mark_used(record.credential_id, self._clock())
            except CredentialError:
                raise
            except sqlite3.Error as exc:
                logger.error("Credential selection failed | service=%s | %s", service, exc)
                raise CredentialUnavailableError(service) from None

        logger.debug(
            "Credential acquired | service=%s | credential_id=%d | usage=%d/%d",
            service, record.credential_id, record.usage_count + 1, self.usage_limit,
        )
        return record.secret

    def reconcile(self, service: str, desired: Iterable[str]) -> ReconcileResult:
        """Make the stored secrets of ``service`` equal ``desired``.

        Missing secrets are inserted (active, zero usage); stored secrets not
        in ``desired`` are deleted.  Both happen in one transaction, so a
        concurrent ``acquire`` sees either the old set or the new one.
        """
        desired_set = set(desired)
        with self._service_lock(service):
            with self._connect() as conn, transaction(conn, immediate=True):
                repo = CredentialRepository(conn)
                existing = repo.get_secrets(service)
                to_add = sorted(desired_set - existing)
                to_remove = sorted(existing - desired_set)
                repo.insert_secrets(service, to_add)
                repo.delete_secrets(service, to_remove)

        result = ReconcileResult(service=service, added=len(to_add), removed=len(to_remove))
        logger.info(
            "Credentials reconciled | service=%s | added=%d | removed=%d | total=%d",
            service, result.added, result.removed, len(desired_set),
        )
        return result

    def status(self, service: str) -> list[CredentialRecord]:
        """Return every stored record of ``service`` ordered by id."""
        with self._connect() as conn:
            return CredentialRepository(conn).get_by_service(service)

    # ── Private helpers ────────────────────────────────────────────────────────

    def _connect(self):
        return get_connection(
            self.db_path,
            wal_mode=self.wal_mode,
            busy_timeout_ms=self.busy_timeout_ms,
        )

    def _service_lock(self, service: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(service)
            if lock is None:
                lock = self._locks[service] = threading.Lock()
            return lock
