"""
Base repository providing shared SQLite execution helpers.

All repositories inherit from ``BaseRepository`` and receive a
``sqlite3.Connection`` at construction time. The connection and its
transaction boundaries are owned by the caller (``get_connection()`` /
``transaction()``); repositories never commit on their own.

Design:
  - No ORM — all SQL is explicit and lives in repository methods.
  - ``row_factory = sqlite3.Row`` (set by ``get_connection()``) gives
    dict-like row access throughout.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

logger = logging.getLogger(__name__)

Params = tuple[Any, ...] | dict[str, Any]


class BaseRepository:
    """Shared SQL execution helpers for all repository classes.

    Attributes:
        conn: The active ``sqlite3.Connection``.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def execute(self, sql: str, params: Params = ()) -> sqlite3.Cursor:
        """Execute a single SQL statement with ``?`` or ``:name`` placeholders."""
        logger.debug("SQL: %s | params: %s", " ".join(sql.split()), params)
        return self.conn.execute(sql, params)

    def executemany(self, sql: str, params_list: list[Params]) -> sqlite3.Cursor:
        """Execute a SQL statement for each element in ``params_list``."""
        logger.debug("SQL (many): %s | count: %d", " ".join(sql.split()), len(params_list))
        return self.conn.executemany(sql, params_list)

    def fetchone(self, sql: str, params: Params = ()) -> Optional[sqlite3.Row]:
        """Execute a query and return the first row, or ``None``."""
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Params = ()) -> list[sqlite3.Row]:
        """Execute a query and return all rows."""
        return self.execute(sql, params).fetchall()

    def scalar(self, sql: str, params: Params = ()) -> Any:
        """Execute a query and return the first column of the first row.

        Returns:
            The value, or ``None`` when the query yields no rows.
        """
        row = self.execute(sql, params).fetchone()
        return row[0] if row is not None else None

    def last_insert_rowid(self) -> int:
        """Return the rowid of the last successful INSERT."""
        value = self.scalar("SELECT last_insert_rowid();")
        assert value is not None
        return int(value)
