"""Deletion coordinator: cascade a timesheet entry deletion through the ledger.

Two phases under the write lock. Tracking writes tombstones so reads stop
counting the rows immediately; purging removes them physically. A failed
purge leaves the tombstones in place for ``reconcile_tombstones`` to finish.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from toil_ledger.exceptions import StorageError
from toil_ledger.models.enums import EventTopic
from toil_ledger.schemas.events import ErrorEvent, SummaryChangedEvent

if TYPE_CHECKING:
    from datetime import date

    from toil_ledger.services.events import EventNotifier
    from toil_ledger.services.repository import LedgerRepository
    from toil_ledger.services.summary import SummaryCache

logger = logging.getLogger(__name__)


@dataclass
class DeletionResult:
    """Outcome of cascading one entry deletion."""

    entry_id: str
    accrual_removed: int = 0
    usage_removed: int = 0
    ok: bool = True
    days: set[tuple[str, date]] = field(default_factory=set)

    @property
    def removed(self) -> int:
        return self.accrual_removed + self.usage_removed


class DeletionCoordinator:
    def __init__(self, repository: LedgerRepository, cache: SummaryCache, notifier: EventNotifier) -> None:
        self._repository = repository
        self._cache = cache
        self._notifier = notifier

    async def delete_by_entry(self, entry_id: str, user_id: str | None = None) -> DeletionResult:
        """Remove every accrual and usage row that references ``entry_id``."""
        result = DeletionResult(entry_id=entry_id)

        async with self._repository.lock.held():
            self._repository.mark_entry_deleted(entry_id)

            try:
                accruals, usages = await self._repository.find_by_entry_id(entry_id)
            except StorageError as exc:
                return await self._fail(result, "track", exc, user_id)

            if not accruals and not usages:
                logger.debug("No ledger rows reference deleted entry %s", entry_id)
                return result

            affected = {(r.user_id, r.month_year) for r in accruals} | {(u.user_id, u.month_year) for u in usages}

            try:
                await self._repository.add_tombstones([r.id for r in accruals], [u.id for u in usages])
            except StorageError as exc:
                return await self._fail(result, "track", exc, user_id)
            for affected_user, month_year in affected:
                self._cache.invalidate(affected_user, month_year)
            result.days = {(r.user_id, r.date) for r in accruals}

            try:
                result.accrual_removed, result.usage_removed = await self._repository.delete_by_entry_id(entry_id)
                duplicates = await self._repository.cleanup_duplicates(user_id)
            except StorageError as exc:
                # Tombstones stay behind so reads keep excluding the rows.
                return await self._fail(result, "purge", exc, user_id)

        if duplicates:
            logger.info("Removed %d duplicate rows while purging entry %s", duplicates, entry_id)

        for affected_user, month_year in sorted(affected):
            self._cache.invalidate(affected_user, month_year)
            summary = await self._cache.get(affected_user, month_year)
            await self._notifier.publish(
                EventTopic.SUMMARY_CHANGED,
                SummaryChangedEvent(user_id=affected_user, month_year=month_year, summary=summary),
            )

        logger.info(
            "Deleted entry %s: removed %d accrual and %d usage rows",
            entry_id,
            result.accrual_removed,
            result.usage_removed,
        )
        return result

    async def _fail(self, result: DeletionResult, phase: str, exc: Exception, user_id: str | None) -> DeletionResult:
        logger.error("Deletion of entry %s failed during %s: %s", result.entry_id, phase, exc)
        result.ok = False
        await self._notifier.publish(
            EventTopic.ERROR,
            ErrorEvent(
                message=f"Failed to delete TOIL data for entry {result.entry_id}: {exc}",
                context={"operation": "delete", "phase": phase, "entryId": result.entry_id},
                user_id=user_id,
            ),
        )
        return result
