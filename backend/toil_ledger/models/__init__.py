from sqlmodel import SQLModel

from toil_ledger.models.enums import (
    AccrualStatus,
    CalculationStatus,
    EventTopic,
    LedgerCollection,
    QueueState,
    StoreOutcome,
    WeekDay,
)
from toil_ledger.models.store import LedgerCollectionRow

__all__ = [
    "AccrualStatus",
    "CalculationStatus",
    "EventTopic",
    "LedgerCollection",
    "LedgerCollectionRow",
    "QueueState",
    "SQLModel",
    "StoreOutcome",
    "WeekDay",
]
