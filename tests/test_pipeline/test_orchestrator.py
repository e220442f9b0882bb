"""Tests for BatchOrchestrator — eligibility, resumption, chunk isolation, skips."""

from __future__ import annotations

import sqlite3
from datetime import date

import pytest

from perf_ingestor.config import AppConfig, BatchConfig, DatabaseConfig
from perf_ingestor.db.connection import get_connection
from perf_ingestor.db.repositories.activity_repo import ActivityRepository, DailyActivity
from perf_ingestor.db.repositories.chunk_repo import ChunkOutcomeRepository
from perf_ingestor.db.repositories.performance_repo import PerformanceRepository
from perf_ingestor.db.repositories.run_repo import RunMetadataRepository
from perf_ingestor.exceptions import JobFailedError
from perf_ingestor.models.report import IngestionRecord, Period, PeriodRange, ReportSpec
from perf_ingestor.pipeline.orchestrator import BatchOrchestrator

# tick_clock starts 2024-03-20 (a Wednesday):
#   week 10 = 2024-03-03..09, week 11 = 03-10..16 (both complete), week 12 = 03-17..23 (future)
WEEK_10 = Period(start=date(2024, 3, 3), end=date(2024, 3, 9))
WEEK_11 = Period(start=date(2024, 3, 10), end=date(2024, 3, 16))


class FakeReportClient:
    """Stands in for ReportJobClient: two records per requested entity."""

    report_type = "GET_BRAND_ANALYTICS_SEARCH_QUERY_PERFORMANCE_REPORT"

    def __init__(self, queries=("q1", "q2")) -> None:
        self.queries = queries
        self.specs: list[ReportSpec] = []
        self.fail_if = None

    def run(self, spec: ReportSpec) -> list[IngestionRecord]:
        self.specs.append(spec)
        if self.fail_if is not None and self.fail_if(spec):
            raise JobFailedError("R-fatal", "FATAL")
        return [
            IngestionRecord.from_report_item(
                {"asin": e, "searchQueryData": {"searchQuery": q}}, spec.period
            )
            for e in spec.entity_ids
            for q in self.queries
        ]


def _seed_activity(db_file: str, entity_ids, sessions: int = 5) -> None:
    with get_connection(db_file) as conn:
        ActivityRepository(conn).upsert_many(
            [DailyActivity(e, date(2024, 3, 18), sessions=sessions) for e in entity_ids]
        )


def _count(db_file: str, period_start=None) -> int:
    with get_connection(db_file) as conn:
        return PerformanceRepository(conn).count(period_start)


@pytest.fixture
def client() -> FakeReportClient:
    return FakeReportClient()


@pytest.fixture
def sleeps() -> list[float]:
    return []


def _orchestrator(db_file, client, sleeps, clock, chunk_size: int = 10) -> BatchOrchestrator:
    config = AppConfig(
        database=DatabaseConfig(db_path=db_file),
        batch=BatchConfig(chunk_size=chunk_size),
    )
    return BatchOrchestrator(config, client, sleep=sleeps.append, clock=clock)


class TestEligibility:
    def test_only_remaining_entities_are_submitted(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A", "B", "C"])
        with get_connection(db_file) as conn:
            PerformanceRepository(conn).insert_ignore_many(
                [IngestionRecord.from_report_item({"asin": "A", "searchQueryData": {"searchQuery": "q"}}, WEEK_10)]
            )

        result = _orchestrator(db_file, client, sleeps, tick_clock).run(
            PeriodRange(year=2024, start_week=10, end_week=10)
        )

        assert [s.entity_ids for s in client.specs] == [("B", "C")]
        assert client.specs[0].period == WEEK_10
        assert result.status == "success"
        assert result.rows_inserted == 4

    def test_inactive_and_stale_entities_excluded(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A"])
        _seed_activity(db_file, ["Z"], sessions=0)
        with get_connection(db_file) as conn:
            ActivityRepository(conn).upsert_many([DailyActivity("OLD", date(2024, 2, 1), sessions=9)])

        result = _orchestrator(db_file, client, sleeps, tick_clock).run(
            PeriodRange(year=2024, start_week=10, end_week=10)
        )
        assert result.eligible == ["A"]

    def test_lookback_window_covers_seven_days_including_today(
        self, db_file, client, sleeps, tick_clock
    ):
        with get_connection(db_file) as conn:
            ActivityRepository(conn).upsert_many([
                DailyActivity("SEVEN_DAYS_AGO", date(2024, 3, 13), sessions=4),
                DailyActivity("SIX_DAYS_AGO", date(2024, 3, 14), sessions=4),
                DailyActivity("TODAY", date(2024, 3, 20), sessions=4),
            ])

        result = _orchestrator(db_file, client, sleeps, tick_clock).run(
            PeriodRange(year=2024, start_week=10, end_week=10)
        )
        assert result.eligible == ["SIX_DAYS_AGO", "TODAY"]

    def test_empty_eligible_set_is_not_an_error(self, db_file, client, sleeps, tick_clock):
        result = _orchestrator(db_file, client, sleeps, tick_clock).run(
            PeriodRange(year=2024, start_week=10, end_week=11)
        )
        assert result.status == "success"
        assert result.eligible == []
        assert result.periods == []
        assert client.specs == []


class TestPeriods:
    def test_future_period_is_skipped(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A"])
        result = _orchestrator(db_file, client, sleeps, tick_clock).run(
            PeriodRange(year=2024, start_week=11, end_week=12)
        )
        assert [p.skipped_reason for p in result.periods] == [None, "future"]
        assert [s.period for s in client.specs] == [WEEK_11]

    def test_chunking_and_inter_chunk_delay(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A", "B", "C", "D", "E"])
        result = _orchestrator(db_file, client, sleeps, tick_clock, chunk_size=2).run(
            PeriodRange(year=2024, start_week=10, end_week=10)
        )
        assert [s.entity_ids for s in client.specs] == [("A", "B"), ("C", "D"), ("E",)]
        assert sleeps == [5.0, 5.0, 5.0]
        assert len(result.chunk_results) == 3


class TestResumability:
    def test_second_run_adds_nothing(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A", "B", "C"])
        period_range = PeriodRange(year=2024, start_week=10, end_week=11)
        orchestrator = _orchestrator(db_file, client, sleeps, tick_clock)

        first = orchestrator.run(period_range)
        after_first = _count(db_file)
        submitted_first = len(client.specs)

        second = orchestrator.run(period_range)

        assert after_first == 12
        assert _count(db_file) == after_first
        assert len(client.specs) == submitted_first
        assert second.rows_inserted == 0
        assert [p.skipped_reason for p in second.periods] == ["complete", "complete"]
        assert first.status == second.status == "success"

    def test_resubmitted_records_are_conflict_safe(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A"])
        orchestrator = _orchestrator(db_file, client, sleeps, tick_clock)
        orchestrator.run(PeriodRange(year=2024, start_week=10, end_week=10))

        # A new query for the same entity appears later; existing keys stay untouched
        client.queries = ("q1", "q3")
        with get_connection(db_file) as conn:
            inserted = PerformanceRepository(conn).insert_ignore_many(client.run(
                ReportSpec(entity_ids=("A",), period=WEEK_10)
            ))
        assert inserted == 1
        assert _count(db_file) == 3


class TestChunkIsolation:
    def test_fatal_chunk_does_not_abort_run(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A", "B", "C", "D", "E"])
        client.fail_if = lambda spec: "C" in spec.entity_ids and spec.period == WEEK_10

        result = _orchestrator(db_file, client, sleeps, tick_clock, chunk_size=2).run(
            PeriodRange(year=2024, start_week=10, end_week=11)
        )

        assert result.status == "partial"
        assert len(result.failed_chunks) == 1
        failed = result.failed_chunks[0]
        assert failed.entity_ids == ["C", "D"]
        assert failed.report_id == "R-fatal"
        assert "FATAL" in failed.error
        # week 10: A, B, E persisted; week 11: all five
        assert _count(db_file, WEEK_10.start) == 6
        assert _count(db_file, WEEK_11.start) == 10
        # sleep follows failed chunks too
        assert len(sleeps) == 6

    def test_failed_chunk_is_retried_on_next_run(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A", "B", "C", "D", "E"])
        orchestrator = _orchestrator(db_file, client, sleeps, tick_clock, chunk_size=2)
        period_range = PeriodRange(year=2024, start_week=10, end_week=10)

        client.fail_if = lambda spec: "C" in spec.entity_ids
        orchestrator.run(period_range)

        client.fail_if = None
        client.specs.clear()
        result = orchestrator.run(period_range)

        assert [s.entity_ids for s in client.specs] == [("C", "D")]
        assert result.status == "success"
        assert _count(db_file, WEEK_10.start) == 10

    def test_persistence_error_rolls_back_only_that_chunk(
        self, db_file, client, sleeps, tick_clock, monkeypatch
    ):
        _seed_activity(db_file, ["A", "B", "C"])
        original = PerformanceRepository.insert_ignore_many

        def insert_then_fail(self, records, run_id=None):
            inserted = original(self, records, run_id=run_id)
            if any(r.entity_id == "C" for r in records):
                raise sqlite3.IntegrityError("simulated constraint failure")
            return inserted

        monkeypatch.setattr(PerformanceRepository, "insert_ignore_many", insert_then_fail)
        result = _orchestrator(db_file, client, sleeps, tick_clock, chunk_size=2).run(
            PeriodRange(year=2024, start_week=10, end_week=10)
        )

        assert result.status == "partial"
        with get_connection(db_file) as conn:
            assert PerformanceRepository(conn).get_ingested_entity_ids(WEEK_10.start) == {"A", "B"}


class TestAudit:
    def test_run_and_chunk_outcomes_recorded(self, db_file, client, sleeps, tick_clock):
        _seed_activity(db_file, ["A", "B", "C"])
        client.fail_if = lambda spec: "C" in spec.entity_ids

        result = _orchestrator(db_file, client, sleeps, tick_clock, chunk_size=2).run(
            PeriodRange(year=2024, start_week=10, end_week=10)
        )

        with get_connection(db_file) as conn:
            run = RunMetadataRepository(conn).get_run_by_slug(result.run_slug)
            outcomes = ChunkOutcomeRepository(conn).get_by_run(result.run_id)

        assert run is not None
        assert run.status == "partial"
        assert run.rows_processed == 4
        assert run.finished_at is not None
        assert "JobFailedError" in run.error_message
        assert run.config_snapshot["period_range"] == {"year": 2024, "start_week": 10, "end_week": 10}

        assert [(o.chunk_index, o.status) for o in outcomes] == [(0, "success"), (1, "failed")]
        assert outcomes[0].rows_inserted == 4
        assert outcomes[1].report_id == "R-fatal"
        assert outcomes[1].report_type == FakeReportClient.report_type

    def test_top_level_error_marks_run_failed_and_propagates(
        self, db_file, client, sleeps, tick_clock, monkeypatch
    ):
        def broken(self, since):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(ActivityRepository, "get_active_entity_ids", broken)
        orchestrator = _orchestrator(db_file, client, sleeps, tick_clock)

        with pytest.raises(sqlite3.OperationalError):
            orchestrator.run(PeriodRange(year=2024, start_week=10, end_week=10))

        with get_connection(db_file) as conn:
            runs = RunMetadataRepository(conn).get_recent_runs("query_performance")
        assert runs[0].status == "failed"
        assert "disk I/O error" in runs[0].error_message
