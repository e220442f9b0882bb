"""
Repository for per-chunk ingestion outcomes.

Every chunk a batch run attempts gets one ``ingestion_chunks`` row, whether
it succeeded or failed.  The row is written in its own commit after the
chunk's data transaction has been committed or rolled back, so a failed
chunk still leaves a trace of what was asked, which report id (if any) the
service assigned, and why it failed.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from perf_ingestor.db.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

CHUNK_SUCCESS = "success"
CHUNK_FAILED = "failed"


@dataclass
class ChunkOutcome:
    """Outcome of one chunk of one period.

    Attributes:
        run_id: FK to ``run_metadata.run_id``.
        period_start: First day of the chunk's period.
        period_end: Last day of the chunk's period.
        chunk_index: 0-based position of the chunk within its period.
        entity_ids: The entities the chunk requested.
        status: ``"success"`` or ``"failed"``.
        started_at: UTC time the chunk began.
        report_type: Report type requested.
        report_id: Id assigned by the report service, if submission got that far.
        records_returned: Records the report contained.
        rows_inserted: Rows newly written (conflicts excluded).
        error_message: Failure description; ``None`` on success.
        finished_at: UTC time the chunk finished.
        chunk_id: Auto-assigned DB PK; ``None`` before insertion.
    """

    run_id: Optional[int]
    period_start: date
    period_end: date
    chunk_index: int
    entity_ids: list[str]
    status: str
    started_at: datetime
    report_type: Optional[str] = None
    report_id: Optional[str] = None
    records_returned: int = 0
    rows_inserted: int = 0
    error_message: Optional[str] = None
    finished_at: Optional[datetime] = None
    chunk_id: Optional[int] = field(default=None)

    @property
    def succeeded(self) -> bool:
        return self.status == CHUNK_SUCCESS


class ChunkOutcomeRepository(BaseRepository):
    """Read/write access to the ``ingestion_chunks`` table."""

    def insert_outcome(self, outcome: ChunkOutcome) -> int:
        """Persist a chunk outcome and return its ``chunk_id``."""
        self.execute(
            """
            INSERT INTO ingestion_chunks (
                run_id, period_start, period_end, chunk_index, entity_ids,
                report_type, report_id, status, records_returned, rows_inserted,
                error_message, started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                outcome.run_id,
                outcome.period_start.isoformat(),
                outcome.period_end.isoformat(),
                outcome.chunk_index,
                json.dumps(outcome.entity_ids),
                outcome.report_type,
                outcome.report_id,
                outcome.status,
                outcome.records_returned,
                outcome.rows_inserted,
                outcome.error_message,
                outcome.started_at.isoformat(),
                outcome.finished_at.isoformat() if outcome.finished_at else None,
            ),
        )
        chunk_id = self.last_insert_rowid()
        outcome.chunk_id = chunk_id
        return chunk_id

    def get_by_run(self, run_id: int) -> list[ChunkOutcome]:
        """Return every chunk outcome of a run in insertion order."""
        rows = self.fetchall(
            "SELECT * FROM ingestion_chunks WHERE run_id = ? ORDER BY chunk_id;",
            (run_id,),
        )
        return [_row_to_outcome(r) for r in rows]

    def get_failed(self, limit: int = 50) -> list[ChunkOutcome]:
        """Return the most recent failed chunks, newest first."""
        rows = self.fetchall(
            """
            SELECT * FROM ingestion_chunks
            WHERE status = 'failed'
            ORDER BY chunk_id DESC LIMIT ?;
            """,
            (limit,),
        )
        return [_row_to_outcome(r) for r in rows]


def _row_to_outcome(row: sqlite3.Row) -> ChunkOutcome:
    return ChunkOutcome(
        chunk_id=row["chunk_id"],
        run_id=row["run_id"],
        period_start=date.fromisoformat(row["period_start"]),
        period_end=date.fromisoformat(row["period_end"]),
        chunk_index=row["chunk_index"],
        entity_ids=json.loads(row["entity_ids"]),
        report_type=row["report_type"],
        report_id=row["report_id"],
        status=row["status"],
        records_returned=row["records_returned"],
        rows_inserted=row["rows_inserted"],
        error_message=row["error_message"],
        started_at=datetime.fromisoformat(row["started_at"]),
        finished_at=(
            datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None
        ),
    )
