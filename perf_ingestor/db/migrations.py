"""
Simple sequential schema migration bootstrap.

This is NOT a full migration framework (no Alembic, no down migrations):

  1. A ``schema_versions`` table tracks applied migration IDs.
  2. Each migration is a Python function taking a ``sqlite3.Connection``.
  3. ``run_migrations()`` applies any migrations not yet recorded.

Adding a new migration:
  1. Define a function ``migration_NNNN_description(conn)`` below.
  2. Add it to ``MIGRATIONS`` with a string key like ``"0003_description"``.

Migrations are applied in dictionary insertion order.  The base schema is
applied via ``apply_schema()`` in ``schema.py`` before any migrations run —
migrations are for incremental changes only.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

logger = logging.getLogger(__name__)

MigrationFn = Callable[[sqlite3.Connection], None]


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_versions`` tracking table if it does not exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_versions (
            version_id  TEXT    NOT NULL PRIMARY KEY,
            applied_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
            description TEXT
        );
    """)
    conn.commit()


def _get_applied_versions(conn: sqlite3.Connection) -> set[str]:
    """Return the set of already-applied migration version IDs."""
    rows = conn.execute("SELECT version_id FROM schema_versions;").fetchall()
    return {row[0] for row in rows}


def _mark_applied(conn: sqlite3.Connection, version_id: str, description: str) -> None:
    """Record a migration as applied."""
    conn.execute(
        "INSERT INTO schema_versions(version_id, description) VALUES (?, ?);",
        (version_id, description),
    )
    conn.commit()


# ── Migration functions ────────────────────────────────────────────────────────

def migration_0001_bootstrap(conn: sqlite3.Connection) -> None:
    """Baseline marker; the version table itself is created above."""


def migration_0002_chunk_report_type(conn: sqlite3.Connection) -> None:
    """Record which report type each chunk requested."""
    existing = {
        row[1] for row in conn.execute("PRAGMA table_info(ingestion_chunks);").fetchall()
    }
    if "report_type" not in existing:
        conn.execute("ALTER TABLE ingestion_chunks ADD COLUMN report_type TEXT;")
    conn.commit()


# ── Registry ──────────────────────────────────────────────────────────────────

MIGRATIONS: dict[str, tuple[MigrationFn, str]] = {
    "0001_bootstrap": (
        migration_0001_bootstrap,
        "Baseline: schema_versions table created",
    ),
    "0002_chunk_report_type": (
        migration_0002_chunk_report_type,
        "Add report_type to ingestion_chunks",
    ),
}


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply all pending migrations.

    Args:
        conn: An open ``sqlite3.Connection`` with the base schema applied.

    Returns:
        Number of migrations applied in this call.
    """
    _ensure_version_table(conn)
    applied = _get_applied_versions(conn)

    count = 0
    for version_id, (fn, description) in MIGRATIONS.items():
        if version_id in applied:
            logger.debug("Migration %s already applied; skipping.", version_id)
            continue

        logger.info("Applying migration %s: %s", version_id, description)
        try:
            fn(conn)
            _mark_applied(conn, version_id, description)
            count += 1
        except Exception as exc:
            conn.rollback()
            logger.error("Migration %s FAILED: %s", version_id, exc)
            raise

    if count:
        logger.info("Applied %d migration(s).", count)
    else:
        logger.debug("No pending migrations.")

    return count
