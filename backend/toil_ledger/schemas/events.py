# ruff: noqa: TC001, TC003
from __future__ import annotations

import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from toil_ledger.models.enums import CalculationStatus
from toil_ledger.schemas.ledger import Summary


class EventModel(BaseModel):
    """Base for payloads published by the event notifier."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SummaryChangedEvent(EventModel):
    """Published whenever a monthly summary changes."""

    user_id: str
    month_year: str
    summary: Summary


class ErrorEvent(EventModel):
    """Published when an operation fails at the queue or coordinator boundary."""

    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None


class CalculationEvent(EventModel):
    """Progress of one queued day recalculation."""

    user_id: str
    date: datetime.date
    status: CalculationStatus
    summary: Summary | None = None
    error: str | None = None
