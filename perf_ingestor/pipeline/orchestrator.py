"""
Batch orchestration for weekly query-performance ingestion.

The ``BatchOrchestrator`` drives one run over a range of Sunday-start weeks:

  Step 1 — Pre-flight:   Apply schema + migrations, persist run start.
  Step 2 — Eligibility:  Entities with ``sessions > 0`` in the trailing
                         ``activity_lookback_days`` calendar days, today
                         included.  Empty → nothing to do.
  Step 3 — Per period (ascending week order):
             a. Skip if the period ends after today (UTC).
             b. remaining = eligible − already ingested for the period.
             c. Split ``remaining`` into ``chunk_size`` chunks.
             d. Per chunk, strictly sequentially: one transaction around
                ``ReportJobClient.run`` + insert-or-ignore of every record;
                then sleep ``inter_chunk_delay_seconds``.
  Step 4 — Finalise:     Status, persist run finish.

Failure isolation
-----------------
- Chunk failure (job, auth, HTTP, parse, or DB error): the chunk's
  transaction is rolled back, the error is logged and recorded in
  ``ingestion_chunks``, and the run moves on to the next chunk.
- Any other error (eligibility query, schema): the run is marked ``failed``
  and the exception propagates to the caller.
- Run-metadata writes are best-effort: logged, never fatal.

Resumability
------------
Re-running an overlapping range only re-queries the already-ingested sets;
already-ingested entities are never resubmitted, and the insert is conflict-
safe on ``(entity_id, period_start, record_key)`` even if one were.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from perf_ingestor.config import AppConfig
from perf_ingestor.db.connection import get_connection, transaction
from perf_ingestor.db.repositories.activity_repo import ActivityRepository
from perf_ingestor.db.repositories.chunk_repo import (
    CHUNK_FAILED,
    CHUNK_SUCCESS,
    ChunkOutcome,
    ChunkOutcomeRepository,
)
from perf_ingestor.db.repositories.performance_repo import PerformanceRepository
from perf_ingestor.db.repositories.run_repo import RunMetadataRepository
from perf_ingestor.ingestion.report_client import ReportJobClient
from perf_ingestor.models.meta import RunMetadata
from perf_ingestor.models.report import Period, PeriodRange, ReportSpec
from perf_ingestor.utils.time_utils import chunked, utcnow

logger = logging.getLogger(__name__)

PIPELINE_STAGE = "query_performance"


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass
class ChunkResult:
    """Outcome of one chunk.

    Attributes:
        period_start:     First day of the chunk's period.
        chunk_index:      0-based chunk position within the period.
        entity_ids:       Entities requested.
        success:          True if the chunk's transaction committed.
        records_returned: Records in the downloaded report.
        rows_inserted:    Rows newly written (conflicts excluded).
        report_id:        Service-assigned id, when known.
        error:            Exception message if success=False.
    """

    period_start:     date
    chunk_index:      int
    entity_ids:       list[str]
    success:          bool
    records_returned: int = 0
    rows_inserted:    int = 0
    report_id:        Optional[str] = None
    error:            Optional[str] = None


@dataclass
class PeriodResult:
    """Outcome of one period.

    ``skipped_reason`` is one of ``"future"``, ``"complete"`` or ``None``.
    """

    week:           int
    period:         Period
    remaining:      list[str]            = field(default_factory=list)
    chunks:         list[ChunkResult]    = field(default_factory=list)
    skipped_reason: Optional[str]        = None

    @property
    def rows_inserted(self) -> int:
        return sum(c.rows_inserted for c in self.chunks)


@dataclass
class BatchResult:
    """Complete result of one batch run.

    Attributes:
        run_id:          DB run_id of the run_metadata record.
        run_slug:        UUID identifying the run.
        started_at:      UTC datetime when the run started.
        finished_at:     UTC datetime when the run finished.
        eligible:        Entities that passed the activity predicate.
        periods:         Per-period outcomes, in week order.
        errors:          Accumulated error messages.
        status:          ``"success"``, ``"partial"`` or ``"failed"``.
    """

    run_id:      Optional[int]       = None
    run_slug:    str                 = ""
    started_at:  Optional[datetime]  = None
    finished_at: Optional[datetime]  = None
    eligible:    list[str]           = field(default_factory=list)
    periods:     list[PeriodResult]  = field(default_factory=list)
    errors:      list[str]           = field(default_factory=list)
    status:      str                 = "started"

    @property
    def chunk_results(self) -> list[ChunkResult]:
        return [c for p in self.periods for c in p.chunks]

    @property
    def failed_chunks(self) -> list[ChunkResult]:
        return [c for c in self.chunk_results if not c.success]

    @property
    def rows_inserted(self) -> int:
        return sum(p.rows_inserted for p in self.periods)

    @property
    def periods_processed(self) -> int:
        return sum(1 for p in self.periods if p.skipped_reason is None)

    @property
    def periods_skipped(self) -> int:
        return sum(1 for p in self.periods if p.skipped_reason is not None)


# ── Orchestrator ──────────────────────────────────────────────────────────────

class BatchOrchestrator:
    """Coordinates one resumable ingestion run.

    Args:
        config:        AppConfig for this run.
        report_client: Client that runs one report job per chunk.
        db_path:       Override DB path (defaults to config.database.db_path).
        sleep:         Sleep function for the inter-chunk delay.
        clock:         Returns the current UTC datetime.
    """

    def __init__(
        self,
        config: AppConfig,
        report_client: ReportJobClient,
        db_path: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config        = config
        self.report_client = report_client
        self.db_path       = db_path or config.database.db_path
        self._sleep        = sleep
        self._clock        = clock

    def run(self, period_range: PeriodRange) -> BatchResult:
        """Ingest every eligible entity for every period in ``period_range``.

        Returns:
            BatchResult.  Chunk failures make the status ``"partial"``;
            they never raise.

        Raises:
            Exception: Any non-chunk error, after the run is marked failed.
        """
        result = BatchResult(run_slug=str(uuid4()), started_at=self._clock())
        logger.info(
            "BatchOrchestrator | run_slug=%s | year=%d | weeks=%d..%d",
            result.run_slug, period_range.year, period_range.start_week, period_range.end_week,
        )

        try:
            self._ensure_schema()
            result.run_id = self._persist_run_start(result, period_range)
            self._run_periods(period_range, result)
        except Exception as exc:
            result.status = "failed"
            result.errors.append(f"{type(exc).__name__}: {exc}")
            result.finished_at = self._clock()
            logger.error("Batch run %s aborted: %s", result.run_slug, exc)
            self._persist_run_finish(result)
            raise

        result.finished_at = self._clock()
        result.status = "partial" if result.failed_chunks else "success"
        self._persist_run_finish(result)

        logger.info(
            "BatchOrchestrator finished | status=%s | periods=%d processed, %d skipped | "
            "chunks=%d (%d failed) | rows_inserted=%d",
            result.status, result.periods_processed, result.periods_skipped,
            len(result.chunk_results), len(result.failed_chunks), result.rows_inserted,
        )
        return result

    # ── Steps ─────────────────────────────────────────────────────────────────

    def _run_periods(self, period_range: PeriodRange, result: BatchResult) -> None:
        today = self._clock().date()
        since = today - timedelta(days=self.config.batch.activity_lookback_days - 1)

        with self._connect() as conn:
            eligible = ActivityRepository(conn).get_active_entity_ids(since)
        result.eligible = eligible

        if not eligible:
            logger.info("No entities with activity since %s; nothing to ingest.", since)
            return
        logger.info("%d eligible entities (activity since %s).", len(eligible), since)

        for week, period in period_range.periods():
            result.periods.append(self._run_period(week, period, eligible, today, result.run_id))

    def _run_period(
        self,
        week: int,
        period: Period,
        eligible: list[str],
        today: date,
        run_id: Optional[int],
    ) -> PeriodResult:
        period_result = PeriodResult(week=week, period=period)

        if period.is_in_future(today):
            logger.info("Skipping %s: period has not ended yet.", period.label)
            period_result.skipped_reason = "future"
            return period_result

        with self._connect() as conn:
            ingested = PerformanceRepository(conn).get_ingested_entity_ids(period.start)
        remaining = [e for e in eligible if e not in ingested]
        period_result.remaining = remaining

        if not remaining:
            logger.info("Skipping %s: all %d entities already ingested.", period.label, len(eligible))
            period_result.skipped_reason = "complete"
            return period_result

        chunks = chunked(remaining, self.config.batch.chunk_size)
        logger.info(
            "%s | remaining=%d (already ingested=%d) | chunks=%d",
            period.label, len(remaining), len(ingested), len(chunks),
        )
        for index, entity_ids in enumerate(chunks):
            chunk_result = self._process_chunk(period, index, entity_ids, run_id)
            period_result.chunks.append(chunk_result)
            self._sleep(self.config.batch.inter_chunk_delay_seconds)

        return period_result

    def _process_chunk(
        self,
        period: Period,
        index: int,
        entity_ids: list[str],
        run_id: Optional[int],
    ) -> ChunkResult:
        """Run one chunk in its own transaction, isolating any failure."""
        started_at = self._clock()
        chunk_result = ChunkResult(
            period_start=period.start, chunk_index=index, entity_ids=entity_ids, success=False,
        )
        spec = ReportSpec(entity_ids=tuple(entity_ids), period=period)

        try:
            with self._connect() as conn, transaction(conn):
                records = self.report_client.run(spec)
                chunk_result.records_returned = len(records)
                chunk_result.rows_inserted = PerformanceRepository(conn).insert_ignore_many(
                    records, run_id=run_id
                )
            chunk_result.success = True
            logger.info(
                "Chunk %d of %s committed | entities=%d | records=%d | inserted=%d",
                index, period.start, len(entity_ids),
                chunk_result.records_returned, chunk_result.rows_inserted,
            )
        except Exception as exc:
            chunk_result.error = f"{type(exc).__name__}: {exc}"
            chunk_result.report_id = getattr(exc, "report_id", None)
            logger.error(
                "Chunk %d of %s failed and was rolled back | entities=%s | %s",
                index, period.start, ",".join(entity_ids), chunk_result.error,
            )

        self._persist_chunk_outcome(chunk_result, period, run_id, started_at)
        return chunk_result

    # ── Private helpers ───────────────────────────────────────────────────────

    def _connect(self):
        return get_connection(
            self.db_path,
            wal_mode=self.config.database.wal_mode,
            busy_timeout_ms=self.config.database.busy_timeout_ms,
        )

    def _ensure_schema(self) -> None:
        """Verify DB is accessible and schema is current (idempotent)."""
        from perf_ingestor.db.migrations import run_migrations
        from perf_ingestor.db.schema import apply_schema

        with self._connect() as conn:
            apply_schema(conn)
            run_migrations(conn)

    def _persist_run_start(
        self, result: BatchResult, period_range: PeriodRange
    ) -> Optional[int]:
        """Write the initial run_metadata record; ``None`` if that fails."""
        try:
            run = RunMetadata(
                run_slug=result.run_slug,
                pipeline_stage=PIPELINE_STAGE,
                config_snapshot={
                    "period_range": period_range.model_dump(),
                    "reports": self.config.reports.model_dump(),
                    "batch": self.config.batch.model_dump(),
                },
                started_at=result.started_at or self._clock(),
            )
            with self._connect() as conn:
                return RunMetadataRepository(conn).insert_run(run)
        except Exception as exc:
            logger.warning("Could not persist run start: %s", exc)
            return None

    def _persist_run_finish(self, result: BatchResult) -> None:
        """Update the run_metadata record with the final status."""
        if result.run_id is None:
            return
        errors = result.errors + [
            f"chunk {c.chunk_index} of {c.period_start}: {c.error}" for c in result.failed_chunks
        ]
        try:
            with self._connect() as conn:
                repo = RunMetadataRepository(conn)
                run = repo.get_run_by_slug(result.run_slug)
                if run is None:
                    return
                run.status = result.status
                run.rows_processed = result.rows_inserted
                run.error_message = "; ".join(errors) if errors else None
                run.finished_at = result.finished_at
                repo.update_run(run)
        except Exception as exc:
            logger.warning("Could not persist run finish: %s", exc)

    def _persist_chunk_outcome(
        self,
        chunk_result: ChunkResult,
        period: Period,
        run_id: Optional[int],
        started_at: datetime,
    ) -> None:
        outcome = ChunkOutcome(
            run_id=run_id,
            period_start=period.start,
            period_end=period.end,
            chunk_index=chunk_result.chunk_index,
            entity_ids=chunk_result.entity_ids,
            status=CHUNK_SUCCESS if chunk_result.success else CHUNK_FAILED,
            started_at=started_at,
            report_type=self.report_client.report_type,
            report_id=chunk_result.report_id,
            records_returned=chunk_result.records_returned,
            rows_inserted=chunk_result.rows_inserted,
            error_message=chunk_result.error,
            finished_at=self._clock(),
        )
        try:
            with self._connect() as conn:
                ChunkOutcomeRepository(conn).insert_outcome(outcome)
        except Exception as exc:
            logger.warning(
                "Could not record outcome of chunk %d of %s: %s",
                chunk_result.chunk_index, period.start, exc,
            )
