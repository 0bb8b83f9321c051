# ruff: noqa: TC003
from __future__ import annotations

import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from toil_ledger.models.enums import WeekDay

TOIL_JOB_CODE = "TOIL"


class TimesheetModel(BaseModel):
    """Base for shapes received from the timesheet collaborator."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TimeEntry(TimesheetModel):
    """A timesheet entry as delivered by the entry store."""

    id: str
    user_id: str
    date: datetime.date
    hours: float
    job_code: str | None = None
    synthetic: bool = False


class BreakConfig(TimesheetModel):
    """Break deductions taken on a scheduled day."""

    lunch: bool = False
    smoko: bool = False


class DaySchedule(TimesheetModel):
    """Scheduled start and end time for one weekday."""

    start_time: datetime.time
    end_time: datetime.time
    breaks: BreakConfig = Field(default_factory=BreakConfig)


class WorkSchedule(TimesheetModel):
    """Two-week rotating schedule keyed by fortnight week (1 or 2) and weekday."""

    id: str = "default"
    name: str = "Default"
    weeks: dict[int, dict[WeekDay, DaySchedule | None]] = Field(default_factory=dict)
    rdo_days: dict[int, list[WeekDay]] = Field(default_factory=dict)


class Holiday(TimesheetModel):
    """A public or company holiday."""

    date: datetime.date
    name: str = ""


class EntryDeleted(TimesheetModel):
    """Notification that a timesheet entry was deleted upstream."""

    entry_id: str = Field(min_length=1)
    user_id: str | None = None
