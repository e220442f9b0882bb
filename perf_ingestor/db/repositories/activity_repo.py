"""
Repository for per-entity daily activity (sales & traffic).

The batch run only requests reports for entities that showed activity
recently; this table is the source of that eligibility set.  It is filled by
a separate sales-and-traffic feed and only read here (``upsert_many`` exists
for backfills and tests).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from perf_ingestor.db.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyActivity:
    """One entity's traffic on one day."""

    entity_id: str
    report_date: date
    sessions: int
    page_views: Optional[int] = None
    units_ordered: Optional[int] = None


class ActivityRepository(BaseRepository):
    """Read/write access to ``sales_traffic_by_asin``."""

    def get_active_entity_ids(self, since: date) -> list[str]:
        """Return distinct entities with ``sessions > 0`` on or after ``since``.

        Returns:
            Sorted list of entity ids; empty when nothing was active.
        """
        rows = self.fetchall(
            """
            SELECT DISTINCT entity_id FROM sales_traffic_by_asin
            WHERE report_date >= ? AND sessions > 0
            ORDER BY entity_id;
            """,
            (since.isoformat(),),
        )
        return [row["entity_id"] for row in rows]

    def upsert_many(self, rows: list[DailyActivity]) -> int:
        """Insert or refresh daily activity rows.

        Returns:
            Number of rows written.
        """
        if not rows:
            return 0
        self.executemany(
            """
            INSERT INTO sales_traffic_by_asin
                (entity_id, report_date, sessions, page_views, units_ordered)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (entity_id, report_date) DO UPDATE SET
                sessions      = excluded.sessions,
                page_views    = excluded.page_views,
                units_ordered = excluded.units_ordered;
            """,
            [
                (r.entity_id, r.report_date.isoformat(), r.sessions, r.page_views, r.units_ordered)
                for r in rows
            ],
        )
        return len(rows)
