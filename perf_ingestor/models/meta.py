"""
Run metadata — the audit trail for batch runs.

``RunMetadata`` records every orchestrator invocation: what it was asked to
do (``config_snapshot``), how it ended, and how many rows it wrote.  Any run
can be replayed by restoring that snapshot and re-running; ingestion is
idempotent so a replay only fills gaps.

``RunMetadata`` is NOT frozen — its ``status``, ``rows_processed``,
``error_message``, and ``finished_at`` fields are updated as the run executes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

VALID_PIPELINE_STAGES = frozenset({"query_performance"})
VALID_RUN_STATUSES = frozenset({"started", "success", "partial", "failed"})


class RunMetadata(BaseModel):
    """Pipeline execution audit record.

    Attributes:
        run_id: Auto-assigned DB PK; ``None`` before insertion.
        run_slug: UUID4 string uniquely identifying this run.
        pipeline_stage: Which stage produced this run record.
        status: Current execution status.
        config_snapshot: Run parameters and relevant config at start time.
        rows_processed: Rows newly persisted by the run.
        error_message: Error description(s) if the run was not clean.
        started_at: UTC datetime when the run began.
        finished_at: UTC datetime when the run completed or failed.
    """

    model_config = ConfigDict(frozen=False)

    run_id: Optional[int] = None
    run_slug: str
    pipeline_stage: str
    status: str = "started"
    config_snapshot: dict[str, Any]
    rows_processed: int = 0
    error_message: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @field_validator("pipeline_stage")
    @classmethod
    def validate_pipeline_stage(cls, v: str) -> str:
        if v not in VALID_PIPELINE_STAGES:
            raise ValueError(
                f"Unknown pipeline_stage '{v}'. Must be one of {sorted(VALID_PIPELINE_STAGES)}."
            )
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in VALID_RUN_STATUSES:
            raise ValueError(
                f"Unknown status '{v}'. Must be one of {sorted(VALID_RUN_STATUSES)}."
            )
        return v
