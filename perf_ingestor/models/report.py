"""
Report domain models — periods, job requests, job state, and ingested rows.

Lifecycle of one chunk:
  1. ``ReportSpec``      — what to ask for: entity ids + one ``Period``.
  2. ``ReportJob``       — the service's view of the job while it runs.
  3. ``IngestionRecord`` — one parsed row, keyed by
                           ``(entity_id, period_start, record_key)``.

All models except ``ReportJob`` are frozen.
"""

from __future__ import annotations

import json
from datetime import date
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from perf_ingestor.exceptions import ReportParseError
from perf_ingestor.utils.time_utils import MAX_WEEK, MIN_WEEK, week_date_range, week_label


class ReportStatus(StrEnum):
    """Processing status reported by the report service."""

    SUBMITTED = "SUBMITTED"
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    FATAL = "FATAL"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in (ReportStatus.CANCELLED, ReportStatus.FATAL)


_TERMINAL_STATUSES = frozenset({ReportStatus.DONE, ReportStatus.CANCELLED, ReportStatus.FATAL})


class Period(BaseModel):
    """An inclusive reporting window, normally one Sunday-start week."""

    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def validate_order(self) -> "Period":
        if self.end < self.start:
            raise ValueError(f"Period end ({self.end}) must be >= start ({self.start}).")
        return self

    @classmethod
    def for_week(cls, year: int, week: int) -> "Period":
        start, end = week_date_range(year, week)
        return cls(start=start, end=end)

    def is_in_future(self, today: date) -> bool:
        """True while the period's last day is still ahead of ``today``."""
        return self.end > today

    @property
    def label(self) -> str:
        return week_label(self.start)


class PeriodRange(BaseModel):
    """The weeks a batch run should cover: ``year``, weeks ``start..end``."""

    model_config = ConfigDict(frozen=True)

    year: int
    start_week: int
    end_week: int

    @field_validator("year")
    @classmethod
    def validate_year(cls, v: int) -> int:
        # week 1 may start in the previous December and week 53 end in January
        if not date.min.year < v < date.max.year:
            raise ValueError(
                f"Year must be in [{date.min.year + 1}, {date.max.year - 1}], got {v}."
            )
        return v

    @field_validator("start_week", "end_week")
    @classmethod
    def validate_week(cls, v: int) -> int:
        if not MIN_WEEK <= v <= MAX_WEEK:
            raise ValueError(f"Week must be in [{MIN_WEEK}, {MAX_WEEK}], got {v}.")
        return v

    @model_validator(mode="after")
    def validate_order(self) -> "PeriodRange":
        if self.end_week < self.start_week:
            raise ValueError(
                f"end_week ({self.end_week}) must be >= start_week ({self.start_week})."
            )
        return self

    def periods(self) -> list[tuple[int, Period]]:
        """Return ``(week, Period)`` pairs in ascending week order."""
        return [
            (week, Period.for_week(self.year, week))
            for week in range(self.start_week, self.end_week + 1)
        ]


class ReportSpec(BaseModel):
    """A report request scoped to one chunk of entities and one period."""

    model_config = ConfigDict(frozen=True)

    entity_ids: tuple[str, ...]
    period: Period

    @field_validator("entity_ids")
    @classmethod
    def validate_entities(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("A report spec needs at least one entity id.")
        return v


class ReportJob(BaseModel):
    """Live state of a submitted report job."""

    report_id: str
    status: ReportStatus
    document_id: Optional[str] = None


class IngestionRecord(BaseModel):
    """One persisted report row.

    Attributes:
        entity_id: The tracked entity (ASIN) the row belongs to.
        period_start: First day of the reporting period.
        period_end: Last day of the reporting period.
        record_key: Per-entity discriminator within the period (search query).
        payload: The full record exactly as returned by the report service.
    """

    model_config = ConfigDict(frozen=True)

    entity_id: str
    period_start: date
    period_end: date
    record_key: str
    payload: dict[str, Any]

    @classmethod
    def from_report_item(cls, item: Any, period: Period) -> "IngestionRecord":
        """Build a record from one element of the report's record list.

        Raises:
            ReportParseError: If the item lacks an ``asin`` or a
                ``searchQueryData.searchQuery``.
        """
        if not isinstance(item, dict):
            raise ReportParseError(f"Report record is not an object: {item!r:.80}")
        entity_id = item.get("asin")
        query_data = item.get("searchQueryData")
        record_key = query_data.get("searchQuery") if isinstance(query_data, dict) else None
        if not entity_id or record_key is None:
            raise ReportParseError(
                f"Report record missing asin/searchQueryData.searchQuery: "
                f"{json.dumps(item, default=str)[:200]}"
            )
        return cls(
            entity_id=str(entity_id),
            period_start=period.start,
            period_end=period.end,
            record_key=str(record_key),
            payload=item,
        )
