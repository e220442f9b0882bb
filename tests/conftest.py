"""
Shared pytest fixtures for the performance report ingestor test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema and migrations applied.
  - ``db_file``: Path to a temp-file database with the schema applied, for
    code that opens its own connections (pool, orchestrator, CLI).
  - ``tick_clock``: A deterministic UTC clock that advances one second per call.
  - Sample domain object factories for use in multiple test modules.
"""

from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta, timezone
from typing import Generator

import pytest

from perf_ingestor.config import AppConfig, DatabaseConfig, ReportCredentials
from perf_ingestor.db.connection import get_connection
from perf_ingestor.db.migrations import run_migrations
from perf_ingestor.db.schema import apply_schema
from perf_ingestor.models.report import IngestionRecord, Period


# ── Database fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the full schema applied.

    Foreign key enforcement is ON. Connection is closed after the test.
    """
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    apply_schema(conn)
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def db_file(tmp_path) -> str:
    """Return the path of a temp-file database with the schema applied."""
    path = str(tmp_path / "db" / "test.db")
    with get_connection(path) as conn:
        apply_schema(conn)
        run_migrations(conn)
    return path


@pytest.fixture
def app_config(db_file) -> AppConfig:
    """Default ``AppConfig`` pointed at ``db_file``."""
    return AppConfig(database=DatabaseConfig(db_path=db_file))


# ── Clock ─────────────────────────────────────────────────────────────────────

class TickClock:
    """Deterministic clock: each call returns ``start + n * step``."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def tick_clock() -> TickClock:
    return TickClock(datetime(2024, 3, 20, 12, 0, 0, tzinfo=timezone.utc))


# ── Sample domain object factories ────────────────────────────────────────────

@pytest.fixture
def report_credentials() -> ReportCredentials:
    return ReportCredentials(
        client_id="amzn1.application-oa2-client.test",
        client_secret="client-secret-value",
        refresh_token="Atzr|refresh-token-value",
        marketplace_id="ATVPDKIKX0DER",
    )


@pytest.fixture
def sample_period() -> Period:
    """Week 10 of 2024: Sunday 2024-03-03 to Saturday 2024-03-09."""
    return Period(start=date(2024, 3, 3), end=date(2024, 3, 9))


def make_report_item(asin: str, query: str, impressions: int = 100) -> dict:
    """One element of a report's ``dataByAsin`` list."""
    return {
        "asin": asin,
        "startDate": "2024-03-03",
        "endDate": "2024-03-09",
        "searchQueryData": {"searchQuery": query, "searchQueryScore": 1, "searchQueryVolume": 500},
        "impressionData": {"asinImpressionCount": impressions},
    }


@pytest.fixture
def sample_record(sample_period) -> IngestionRecord:
    return IngestionRecord.from_report_item(make_report_item("B000TEST01", "yoga mat"), sample_period)
