# ruff: noqa: TC003
from __future__ import annotations

import datetime
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from toil_ledger.models.enums import AccrualStatus

MONTH_YEAR_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
MAX_DAILY_HOURS = 24.0


def month_year_for(day: datetime.date) -> str:
    """Return the ``YYYY-MM`` bucket key for a calendar day."""
    return day.strftime("%Y-%m")


def _new_id() -> str:
    return str(uuid.uuid4())


class LedgerModel(BaseModel):
    """Base for persisted ledger rows: camelCase keys, ISO-8601 dates."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_row(self) -> dict[str, object]:
        """Serialize to the flat JSON object stored in a collection."""
        return self.model_dump(mode="json", by_alias=True)


class AccrualRecord(LedgerModel):
    """TOIL hours earned on one calendar day for one user."""

    id: str = Field(default_factory=_new_id)
    user_id: str = Field(min_length=1)
    date: datetime.date
    hours: float = Field(ge=0, le=MAX_DAILY_HOURS)
    month_year: str = Field(pattern=MONTH_YEAR_PATTERN)
    source_entry_id: str | None = None
    status: AccrualStatus = AccrualStatus.ACTIVE

    @classmethod
    def for_day(
        cls,
        user_id: str,
        day: datetime.date,
        hours: float,
        source_entry_id: str | None = None,
    ) -> AccrualRecord:
        """Build an active record, deriving ``month_year`` from the day."""
        return cls(
            user_id=user_id,
            date=day,
            hours=hours,
            month_year=month_year_for(day),
            source_entry_id=source_entry_id,
        )


class UsageRecord(LedgerModel):
    """TOIL hours consumed by one leave entry."""

    id: str = Field(default_factory=_new_id)
    user_id: str = Field(min_length=1)
    date: datetime.date
    hours: float = Field(ge=0, le=MAX_DAILY_HOURS)
    entry_id: str = Field(min_length=1)
    month_year: str = Field(pattern=MONTH_YEAR_PATTERN)


class Summary(LedgerModel):
    """Derived monthly balance; a cache of the ledger, never ground truth."""

    user_id: str
    month_year: str
    accrued: float = 0.0
    used: float = 0.0
    remaining: float = 0.0

    @classmethod
    def from_totals(cls, user_id: str, month_year: str, accrued: float, used: float) -> Summary:
        """Build a summary, clamping ``remaining`` at zero."""
        return cls(
            user_id=user_id,
            month_year=month_year,
            accrued=accrued,
            used=used,
            remaining=max(0.0, accrued - used),
        )
