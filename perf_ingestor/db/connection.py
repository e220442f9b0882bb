"""
SQLite connection and transaction management.

``get_connection()`` is a context manager that:
  - Enables foreign key enforcement (OFF by default in SQLite).
  - Enables WAL journal mode so readers are not blocked during a batch run.
  - Sets a busy timeout to handle lock contention gracefully.
  - Uses ``sqlite3.Row`` factory so rows behave like dicts.
  - Commits on clean exit, rolls back on exception.

``transaction()`` opens an explicit transaction on an existing connection.
``immediate=True`` issues ``BEGIN IMMEDIATE``, taking the database write
lock up front so a read-then-write sequence cannot interleave with another
writer (used by the credential pool).

Usage::

    from perf_ingestor.db.connection import get_connection, transaction

    with get_connection("data/db/perf_ingestor.db") as conn:
        with transaction(conn, immediate=True):
            conn.execute("UPDATE ...")
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager yielding a configured SQLite connection.

    The connection is committed on clean exit and rolled back on exception.
    The database file (and any parent directories) are created if they do
    not already exist.

    Args:
        db_path: Path to the SQLite database file. Use ``":memory:"`` for
            in-memory databases (useful in tests).
        wal_mode: If ``True``, enable WAL journal mode for better concurrency.
        busy_timeout_ms: Milliseconds to wait when the database is locked
            before raising ``OperationalError``.

    Yields:
        An open, configured ``sqlite3.Connection``.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened or is locked.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000)
    conn.row_factory = sqlite3.Row

    try:
        # These pragmas must be set before any DML/DDL
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")

        if wal_mode and db_path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL;")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        conn.close()


@contextmanager
def transaction(
    conn: sqlite3.Connection,
    immediate: bool = False,
) -> Generator[sqlite3.Connection, None, None]:
    """Run the enclosed block in one explicit transaction.

    Commits on clean exit; rolls back and re-raises on any exception, so no
    partial mutation from the block is ever visible to other connections.

    Args:
        conn: An open connection with no transaction in progress.
        immediate: Take the write lock at ``BEGIN`` rather than at first write.

    Raises:
        RuntimeError: If ``conn`` already has an open transaction.
    """
    if conn.in_transaction:
        raise RuntimeError("transaction() called while a transaction is already open.")

    conn.execute("BEGIN IMMEDIATE;" if immediate else "BEGIN;")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()
