"""
SQLite schema DDL — all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Table creation order respects foreign key dependencies:
  1. api_credentials            (no FKs)
  2. sales_traffic_by_asin      (no FKs)
  3. run_metadata               (no FKs)
  4. query_performance_records  (→ run_metadata)
  5. ingestion_chunks           (→ run_metadata)

Idempotence contract:
  ``query_performance_records`` is unique on
  ``(entity_id, period_start, record_key)``; writers insert with
  ``ON CONFLICT DO NOTHING`` so re-ingesting a period never duplicates or
  overwrites a row.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_API_CREDENTIALS = """
CREATE TABLE IF NOT EXISTS api_credentials (
    credential_id   INTEGER PRIMARY KEY AUTOINCREMENT,
    service         TEXT    NOT NULL,
    secret          TEXT    NOT NULL,
    usage_count     INTEGER NOT NULL DEFAULT 0,
    last_used_at    TEXT,
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (service, secret)
);
"""

_DDL_API_CREDENTIALS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_credentials_selectable
    ON api_credentials(service, is_active, usage_count);
"""

_DDL_SALES_TRAFFIC = """
CREATE TABLE IF NOT EXISTS sales_traffic_by_asin (
    traffic_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id       TEXT    NOT NULL,
    report_date     TEXT    NOT NULL,
    sessions        INTEGER NOT NULL DEFAULT 0,
    page_views      INTEGER,
    units_ordered   INTEGER,
    ingested_at     TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (entity_id, report_date)
);
"""

_DDL_SALES_TRAFFIC_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_traffic_date
    ON sales_traffic_by_asin(report_date);
"""

_DDL_RUN_METADATA = """
CREATE TABLE IF NOT EXISTS run_metadata (
    run_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    run_slug        TEXT    NOT NULL UNIQUE,
    pipeline_stage  TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'started',
    config_snapshot TEXT    NOT NULL,
    rows_processed  INTEGER NOT NULL DEFAULT 0,
    error_message   TEXT,
    started_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    finished_at     TEXT
);
"""

_DDL_QUERY_PERFORMANCE = """
CREATE TABLE IF NOT EXISTS query_performance_records (
    record_id       INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id       TEXT    NOT NULL,
    period_start    TEXT    NOT NULL,
    period_end      TEXT    NOT NULL,
    record_key      TEXT    NOT NULL,
    payload_json    TEXT    NOT NULL,
    run_id          INTEGER REFERENCES run_metadata(run_id),
    ingested_at     TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (entity_id, period_start, record_key)
);
"""

_DDL_QUERY_PERFORMANCE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_qp_period
    ON query_performance_records(period_start, entity_id);
"""

_DDL_INGESTION_CHUNKS = """
CREATE TABLE IF NOT EXISTS ingestion_chunks (
    chunk_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id          INTEGER REFERENCES run_metadata(run_id),
    period_start    TEXT    NOT NULL,
    period_end      TEXT    NOT NULL,
    chunk_index     INTEGER NOT NULL,
    entity_ids      TEXT    NOT NULL,
    report_id       TEXT,
    status          TEXT    NOT NULL,
    records_returned INTEGER NOT NULL DEFAULT 0,
    rows_inserted   INTEGER NOT NULL DEFAULT 0,
    error_message   TEXT,
    started_at      TEXT    NOT NULL,
    finished_at     TEXT
);
"""

_DDL_INGESTION_CHUNKS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_chunks_run
    ON ingestion_chunks(run_id);
CREATE INDEX IF NOT EXISTS idx_chunks_failed
    ON ingestion_chunks(status)
    WHERE status = 'failed';
"""

# ── Ordered list of all DDL to apply ──────────────────────────────────────────

_ALL_DDL: list[str] = [
    _DDL_API_CREDENTIALS,
    _DDL_API_CREDENTIALS_INDEXES,
    _DDL_SALES_TRAFFIC,
    _DDL_SALES_TRAFFIC_INDEXES,
    _DDL_RUN_METADATA,
    _DDL_QUERY_PERFORMANCE,
    _DDL_QUERY_PERFORMANCE_INDEXES,
    _DDL_INGESTION_CHUNKS,
    _DDL_INGESTION_CHUNKS_INDEXES,
]

# Table names for introspection / tests
ALL_TABLE_NAMES = [
    "api_credentials",
    "sales_traffic_by_asin",
    "run_metadata",
    "query_performance_records",
    "ingestion_chunks",
]


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent — safe to call on an already-initialized database.
    Each statement uses ``IF NOT EXISTS`` guards.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        for statement in _split_ddl(ddl):
            conn.execute(statement)

    conn.commit()
    logger.info("Schema applied: %d tables, indexes created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the sorted list of table names present in the database."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]


def get_existing_indexes(conn: sqlite3.Connection) -> list[str]:
    """Return the sorted list of explicitly created index names."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND sql IS NOT NULL ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]
