"""Periodic ledger maintenance: expiry, duplicate removal and tombstone repair."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING

from toil_ledger.exceptions import StorageError

if TYPE_CHECKING:
    from toil_ledger.services.toil import TOILService

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceResult:
    """Result of one maintenance run."""

    run_date: date
    expiry_cutoff: date
    expired: int = 0
    duplicates_removed: int = 0
    tombstones_reconciled: int = 0
    errors: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.expired or self.duplicates_removed or self.tombstones_reconciled)


def subtract_months(day: date, months: int) -> date:
    """Same day ``months`` earlier, clamped to the end of shorter months."""
    total = day.year * 12 + (day.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


async def run_maintenance(service: TOILService, today: date | None = None) -> MaintenanceResult:
    """Expire old accruals, drop duplicates and finish interrupted purges.

    Each step runs independently; a storage failure in one is counted and
    logged without skipping the others.
    """
    if today is None:
        today = date.today()

    repository = service.repository
    result = MaintenanceResult(
        run_date=today,
        expiry_cutoff=subtract_months(today, service.settings.accrual_expiry_months),
    )

    try:
        result.expired = await repository.expire_accruals(result.expiry_cutoff)
    except StorageError:
        logger.exception("Accrual expiry failed for cutoff %s", result.expiry_cutoff)
        result.errors += 1

    try:
        result.duplicates_removed = await repository.cleanup_duplicates()
    except StorageError:
        logger.exception("Duplicate cleanup failed")
        result.errors += 1

    try:
        result.tombstones_reconciled = await repository.reconcile_tombstones()
    except StorageError:
        logger.exception("Tombstone reconciliation failed")
        result.errors += 1

    if result.changed:
        service.cache.invalidate()

    logger.info(
        "Maintenance run for %s: expired=%d duplicates=%d reconciled=%d errors=%d",
        today,
        result.expired,
        result.duplicates_removed,
        result.tombstones_reconciled,
        result.errors,
    )
    return result
