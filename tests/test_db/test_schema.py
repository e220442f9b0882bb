"""Tests for SQLite schema — idempotency, tables, indexes, migrations, transactions."""

from __future__ import annotations

import sqlite3

import pytest

from perf_ingestor.db.connection import get_connection, transaction
from perf_ingestor.db.migrations import MIGRATIONS, run_migrations
from perf_ingestor.db.schema import (
    ALL_TABLE_NAMES,
    apply_schema,
    get_existing_indexes,
    get_existing_tables,
)


class TestApplySchema:
    def test_all_tables_created(self, in_memory_db):
        tables = get_existing_tables(in_memory_db)
        for expected_table in ALL_TABLE_NAMES:
            assert expected_table in tables, (
                f"Expected table '{expected_table}' not found. Found: {tables}"
            )

    def test_idempotent_double_apply(self, in_memory_db):
        apply_schema(in_memory_db)
        tables = get_existing_tables(in_memory_db)
        assert len(tables) >= len(ALL_TABLE_NAMES)

    def test_key_indexes_created(self, in_memory_db):
        indexes = get_existing_indexes(in_memory_db)
        for idx in ("idx_credentials_selectable", "idx_qp_period", "idx_chunks_run"):
            assert idx in indexes

    def test_ingestion_key_is_unique(self, in_memory_db):
        sql = """
            INSERT INTO query_performance_records
                (entity_id, period_start, period_end, record_key, payload_json)
            VALUES ('B1', '2024-03-03', '2024-03-09', 'q', '{}');
        """
        in_memory_db.execute(sql)
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(sql)

    def test_credential_secret_unique_per_service(self, in_memory_db):
        in_memory_db.execute(
            "INSERT INTO api_credentials (service, secret) VALUES ('gemini', 'k1');"
        )
        in_memory_db.execute(
            "INSERT INTO api_credentials (service, secret) VALUES ('other', 'k1');"
        )
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(
                "INSERT INTO api_credentials (service, secret) VALUES ('gemini', 'k1');"
            )


class TestMigrations:
    def test_all_migrations_recorded(self, in_memory_db):
        rows = in_memory_db.execute("SELECT version_id FROM schema_versions;").fetchall()
        assert {r[0] for r in rows} == set(MIGRATIONS)

    def test_rerun_applies_nothing(self, in_memory_db):
        assert run_migrations(in_memory_db) == 0

    def test_report_type_column_added(self, in_memory_db):
        columns = {r[1] for r in in_memory_db.execute("PRAGMA table_info(ingestion_chunks);")}
        assert "report_type" in columns


class TestConnection:
    def test_fk_enforcement_is_on(self, db_file):
        with get_connection(db_file) as conn:
            assert conn.execute("PRAGMA foreign_keys;").fetchone()[0] == 1

    def test_wal_mode_for_file_db(self, db_file):
        with get_connection(db_file) as conn:
            assert conn.execute("PRAGMA journal_mode;").fetchone()[0].lower() == "wal"

    def test_commit_on_clean_exit(self, db_file):
        with get_connection(db_file) as conn:
            conn.execute("INSERT INTO api_credentials (service, secret) VALUES ('s', 'k');")
        with get_connection(db_file) as conn:
            assert conn.execute("SELECT COUNT(*) FROM api_credentials;").fetchone()[0] == 1

    def test_rollback_on_exception(self, db_file):
        with pytest.raises(RuntimeError):
            with get_connection(db_file) as conn:
                conn.execute("INSERT INTO api_credentials (service, secret) VALUES ('s', 'k');")
                raise RuntimeError("boom")
        with get_connection(db_file) as conn:
            assert conn.execute("SELECT COUNT(*) FROM api_credentials;").fetchone()[0] == 0


class TestTransaction:
    def test_commits(self, db_file):
        with get_connection(db_file) as conn:
            with transaction(conn, immediate=True):
                conn.execute("INSERT INTO api_credentials (service, secret) VALUES ('s', 'k');")
            assert not conn.in_transaction
        with get_connection(db_file) as conn:
            assert conn.execute("SELECT COUNT(*) FROM api_credentials;").fetchone()[0] == 1

    def test_rolls_back_whole_block(self, db_file):
        with get_connection(db_file) as conn:
            with pytest.raises(ValueError):
                with transaction(conn):
                    conn.execute("INSERT INTO api_credentials (service, secret) VALUES ('s', 'a');")
                    conn.execute("INSERT INTO api_credentials (service, secret) VALUES ('s', 'b');")
                    raise ValueError("abort")
            assert conn.execute("SELECT COUNT(*) FROM api_credentials;").fetchone()[0] == 0

    def test_nested_transaction_rejected(self, db_file):
        with get_connection(db_file) as conn:
            with transaction(conn):
                with pytest.raises(RuntimeError):
                    with transaction(conn):
                        pass
