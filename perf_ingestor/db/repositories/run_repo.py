"""
Repository for batch run metadata.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from perf_ingestor.db.repositories.base import BaseRepository
from perf_ingestor.models.meta import RunMetadata

logger = logging.getLogger(__name__)


class RunMetadataRepository(BaseRepository):
    """Read/write access to ``run_metadata``."""

    def insert_run(self, run: RunMetadata) -> int:
        """Insert a new run record and return its ``run_id``."""
        self.execute(
            """
            INSERT INTO run_metadata (
                run_slug, pipeline_stage, status, config_snapshot,
                rows_processed, error_message, started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                run.run_slug,
                run.pipeline_stage,
                run.status,
                json.dumps(run.config_snapshot, default=str),
                run.rows_processed,
                run.error_message,
                run.started_at.isoformat(),
                run.finished_at.isoformat() if run.finished_at else None,
            ),
        )
        return self.last_insert_rowid()

    def update_run(self, run: RunMetadata) -> None:
        """Update the mutable fields of an existing run record.

        Raises:
            ValueError: If ``run.run_id`` is ``None``.
        """
        if run.run_id is None:
            raise ValueError("Cannot update RunMetadata without a run_id.")
        self.execute(
            """
            UPDATE run_metadata SET
                status         = ?,
                rows_processed = ?,
                error_message  = ?,
                finished_at    = ?
            WHERE run_id = ?;
            """,
            (
                run.status,
                run.rows_processed,
                run.error_message,
                run.finished_at.isoformat() if run.finished_at else None,
                run.run_id,
            ),
        )

    def get_run_by_slug(self, run_slug: str) -> Optional[RunMetadata]:
        row = self.fetchone("SELECT * FROM run_metadata WHERE run_slug = ?;", (run_slug,))
        return _row_to_run(row) if row else None

    def get_recent_runs(
        self, pipeline_stage: Optional[str] = None, limit: int = 20
    ) -> list[RunMetadata]:
        """Fetch recent runs, most recent first, optionally filtered by stage."""
        if pipeline_stage:
            rows = self.fetchall(
                """
                SELECT * FROM run_metadata
                WHERE pipeline_stage = ?
                ORDER BY started_at DESC, run_id DESC LIMIT ?;
                """,
                (pipeline_stage, limit),
            )
        else:
            rows = self.fetchall(
                "SELECT * FROM run_metadata ORDER BY started_at DESC, run_id DESC LIMIT ?;",
                (limit,),
            )
        return [_row_to_run(r) for r in rows]


def _row_to_run(row: sqlite3.Row) -> RunMetadata:
    return RunMetadata(
        run_id=row["run_id"],
        run_slug=row["run_slug"],
        pipeline_stage=row["pipeline_stage"],
        status=row["status"],
        config_snapshot=json.loads(row["config_snapshot"]),
        rows_processed=row["rows_processed"],
        error_message=row["error_message"],
        started_at=datetime.fromisoformat(row["started_at"]),
        finished_at=(
            datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None
        ),
    )
