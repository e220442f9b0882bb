"""
Repository for ingested query-performance records.

Writes are insert-or-ignore on ``(entity_id, period_start, record_key)``:
once a record is stored it is never duplicated or overwritten, so any run can
be replayed safely and only fills gaps.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from perf_ingestor.db.repositories.base import BaseRepository
from perf_ingestor.models.report import IngestionRecord
from perf_ingestor.utils.time_utils import week_label

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestedPeriod:
    """Summary of one period present in the store."""

    period_start: date
    period_end: date
    entity_count: int
    record_count: int

    @property
    def label(self) -> str:
        return week_label(self.period_start)


class PerformanceRepository(BaseRepository):
    """Read/write access to ``query_performance_records``."""

    def insert_ignore_many(
        self, records: list[IngestionRecord], run_id: Optional[int] = None
    ) -> int:
        """Insert records, skipping any whose key already exists.

        Returns:
            Number of rows actually inserted.
        """
        inserted = 0
        for rec in records:
            cur = self.execute(
                """
                INSERT INTO query_performance_records
                    (entity_id, period_start, period_end, record_key, payload_json, run_id)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (entity_id, period_start, record_key) DO NOTHING;
                """,
                (
                    rec.entity_id,
                    rec.period_start.isoformat(),
                    rec.period_end.isoformat(),
                    rec.record_key,
                    json.dumps(rec.payload, sort_keys=True, default=str),
                    run_id,
                ),
            )
            inserted += cur.rowcount
        return inserted

    def get_ingested_entity_ids(self, period_start: date) -> set[str]:
        """Entities that already have at least one record for the period."""
        rows = self.fetchall(
            "SELECT DISTINCT entity_id FROM query_performance_records WHERE period_start = ?;",
            (period_start.isoformat(),),
        )
        return {row["entity_id"] for row in rows}

    def count(self, period_start: Optional[date] = None) -> int:
        if period_start is None:
            return int(self.scalar("SELECT COUNT(*) FROM query_performance_records;"))
        return int(
            self.scalar(
                "SELECT COUNT(*) FROM query_performance_records WHERE period_start = ?;",
                (period_start.isoformat(),),
            )
        )

    def get_records(self, entity_id: str, period_start: date) -> list[IngestionRecord]:
        """Return the stored records of one entity in one period, by key."""
        rows = self.fetchall(
            """
            SELECT * FROM query_performance_records
            WHERE entity_id = ? AND period_start = ?
            ORDER BY record_key;
            """,
            (entity_id, period_start.isoformat()),
        )
        return [
            IngestionRecord(
                entity_id=row["entity_id"],
                period_start=date.fromisoformat(row["period_start"]),
                period_end=date.fromisoformat(row["period_end"]),
                record_key=row["record_key"],
                payload=json.loads(row["payload_json"]),
            )
            for row in rows
        ]

    def list_periods(self) -> list[IngestedPeriod]:
        """Return every ingested period, most recent first."""
        rows = self.fetchall(
            """
            SELECT period_start, period_end,
                   COUNT(DISTINCT entity_id) AS entity_count,
                   COUNT(*)                  AS record_count
            FROM query_performance_records
            GROUP BY period_start, period_end
            ORDER BY period_start DESC;
            """
        )
        return [
            IngestedPeriod(
                period_start=date.fromisoformat(row["period_start"]),
                period_end=date.fromisoformat(row["period_end"]),
                entity_count=row["entity_count"],
                record_count=row["record_count"],
            )
            for row in rows
        ]
