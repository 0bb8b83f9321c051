from __future__ import annotations

import enum


class AccrualStatus(enum.StrEnum):
    """Lifecycle of an accrual record. Expiry is time-based, never a deletion."""

    ACTIVE = "active"
    EXPIRED = "expired"


class LedgerCollection(enum.StrEnum):
    """Named collections held in the persistent store."""

    ACCRUAL = "toil-records"
    USAGE = "toil-usage"
    DELETED_ACCRUAL = "toil-records-deleted"
    DELETED_USAGE = "toil-usage-deleted"


class StoreOutcome(enum.StrEnum):
    """Result of a merge-or-append write."""

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"
    SKIPPED = "SKIPPED"


class EventTopic(enum.StrEnum):
    """Topics published by the event notifier."""

    SUMMARY_CHANGED = "toil:summary-changed"
    ERROR = "toil:error"
    CALCULATION = "toil:calculation"


class CalculationStatus(enum.StrEnum):
    """Progress of a queued day recalculation."""

    QUEUED = "queued"
    COMPLETED = "completed"
    ERROR = "error"


class QueueState(enum.StrEnum):
    """Calculation queue state machine."""

    IDLE = "IDLE"
    SCHEDULED = "SCHEDULED"
    DRAINING = "DRAINING"


class WeekDay(enum.StrEnum):
    """Weekday keys used by work schedules, indexed like ``date.weekday()``."""

    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def from_index(cls, index: int) -> WeekDay:
        """Map ``date.weekday()`` (Monday == 0) to a weekday key."""
        return list(cls)[index]
