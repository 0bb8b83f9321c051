# ruff: noqa: TC001, TC003
from __future__ import annotations

import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from toil_ledger.schemas.ledger import AccrualRecord, Summary, UsageRecord
from toil_ledger.schemas.timesheet import Holiday, TimeEntry, WorkSchedule


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecalculateRequest(ApiModel):
    """Payload for POST /users/{user_id}/toil/recalculate."""

    date: datetime.date
    entries: list[TimeEntry] = Field(default_factory=list)
    schedule: WorkSchedule | None = None
    holidays: list[Holiday] = Field(default_factory=list)


class RecalculateResponse(ApiModel):
    """New monthly summary, or null when the recalculation failed and should be retried."""

    summary: Summary | None


class UsageRecordedResponse(ApiModel):
    recorded: bool


class RecordListResponse(ApiModel):
    """Ledger rows for one user."""

    user_id: str
    month_year: str | None = None
    accruals: list[AccrualRecord]
    usages: list[UsageRecord]


class DeletionResponse(ApiModel):
    """Response from the entry-deleted hook."""

    entry_id: str
    accrual_removed: int
    usage_removed: int
    ok: bool


class DataDeletedResponse(ApiModel):
    user_id: str | None = None
    accrual_removed: int
    usage_removed: int


class MaintenanceResponse(ApiModel):
    """Response from the maintenance trigger endpoint."""

    run_date: datetime.date
    expiry_cutoff: datetime.date
    expired: int
    duplicates_removed: int
    tombstones_reconciled: int
    errors: int
