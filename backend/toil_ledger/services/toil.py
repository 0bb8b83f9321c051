"""TOIL service: composition root wiring store, lock, ledger, cache, queue and notifier.

One instance per process. The FastAPI lifespan builds it, calls ``start()``
and hangs it on ``app.state``.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

from toil_ledger.config import Settings, get_settings
from toil_ledger.exceptions import StorageError
from toil_ledger.models.enums import EventTopic, StoreOutcome
from toil_ledger.schemas.events import ErrorEvent, SummaryChangedEvent
from toil_ledger.schemas.ledger import MAX_DAILY_HOURS, UsageRecord, month_year_for
from toil_ledger.schemas.timesheet import TOIL_JOB_CODE
from toil_ledger.services.deletion import DeletionCoordinator, DeletionResult
from toil_ledger.services.events import EventNotifier
from toil_ledger.services.lock import WriteLock
from toil_ledger.services.queue import CalculationQueue
from toil_ledger.services.repository import LedgerRepository
from toil_ledger.services.store import InMemoryStore, PersistentStore, SqlStore, with_retries
from toil_ledger.services.summary import SummaryCache

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from datetime import date

    from toil_ledger.schemas.ledger import AccrualRecord, Summary
    from toil_ledger.schemas.timesheet import EntryDeleted, Holiday, TimeEntry, WorkSchedule

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> PersistentStore:
    """Create the persistent store selected by ``store_backend``."""
    if settings.store_backend == "memory":
        return InMemoryStore()

    from toil_ledger.db import get_engine, get_session_factory

    return SqlStore(get_engine(), get_session_factory())


class TOILService:
    """Public entry point for timesheet-driven TOIL accrual, usage and deletion."""

    def __init__(self, settings: Settings | None = None, store: PersistentStore | None = None) -> None:
        self.settings = settings or get_settings()
        self._owns_engine = store is None and self.settings.store_backend == "sql"
        self.store = store if store is not None else build_store(self.settings)
        self.lock = WriteLock(self.settings.lock_timeout_seconds)
        self.repository = LedgerRepository(self.store, self.lock, self.settings)
        self.cache = SummaryCache(self.repository)
        self.notifier = EventNotifier()
        self.queue = CalculationQueue(self.repository, self.cache, self.notifier, self.settings)
        self.deletions = DeletionCoordinator(self.repository, self.cache, self.notifier)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Initialize the store, then open the queue's readiness gate."""
        if self._started:
            return
        await with_retries(
            self.store.init,
            description="init store",
            max_retries=self.settings.storage_max_retries,
            delay=self.settings.storage_retry_delay_seconds,
        )
        self.queue.mark_ready()
        self._started = True
        logger.info("TOIL service started with %s store", type(self.store).__name__)

    async def stop(self) -> None:
        await self.queue.close()
        if self._owns_engine:
            from toil_ledger.db import dispose_engine

            await dispose_engine()
        self._started = False
        logger.info("TOIL service stopped")

    # ------------------------------------------------------------------
    # Accrual
    # ------------------------------------------------------------------

    async def request_accrual_recalculation(
        self,
        user_id: str,
        day: date,
        entries: Sequence[TimeEntry],
        schedule: WorkSchedule | None = None,
        holidays: Sequence[Holiday] = (),
    ) -> Summary | None:
        """Queue a recalculation of one day; resolves to the new monthly summary or ``None``."""
        return await self.queue.enqueue(user_id, day, entries, schedule, holidays)

    async def get_summary(self, user_id: str, month_year: str) -> Summary:
        return await self.cache.get(user_id, month_year)

    async def list_records(
        self, user_id: str, month_year: str | None = None
    ) -> tuple[list[AccrualRecord], list[UsageRecord]]:
        """Accrual and usage rows for a user, optionally narrowed to one month."""
        accruals = await self.repository.load_accrual(user_id)
        usages = await self.repository.load_usage(user_id)
        if month_year is not None:
            accruals = [r for r in accruals if r.month_year == month_year]
            usages = [u for u in usages if u.month_year == month_year]
        return accruals, usages

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def record_usage(self, entry: TimeEntry) -> bool:
        """Record a TOIL leave entry as usage. Returns False when the entry is not recordable."""
        if entry.job_code != TOIL_JOB_CODE:
            logger.debug("Entry %s is not a TOIL entry (job code %r)", entry.id, entry.job_code)
            return False
        if not entry.user_id or entry.date is None:
            logger.warning("TOIL usage entry %s is missing a user or date", entry.id)
            return False
        if not math.isfinite(entry.hours) or entry.hours <= 0 or entry.hours > MAX_DAILY_HOURS:
            logger.warning("TOIL usage entry %s has invalid hours %r", entry.id, entry.hours)
            return False

        month_year = month_year_for(entry.date)
        usage = UsageRecord(
            user_id=entry.user_id,
            date=entry.date,
            hours=entry.hours,
            entry_id=entry.id,
            month_year=month_year,
        )
        try:
            outcome = await self.repository.store_usage(usage)
        except StorageError as exc:
            logger.error("Failed to record TOIL usage for entry %s: %s", entry.id, exc)
            await self.notifier.publish(
                EventTopic.ERROR,
                ErrorEvent(
                    message=f"Failed to record TOIL usage: {exc}",
                    context={"operation": "record_usage", "entryId": entry.id},
                    user_id=entry.user_id,
                ),
            )
            return False

        if outcome == StoreOutcome.SKIPPED:
            return False
        if outcome != StoreOutcome.UNCHANGED:
            summary = await self.cache.get(entry.user_id, month_year)
            await self.notifier.publish(
                EventTopic.SUMMARY_CHANGED,
                SummaryChangedEvent(user_id=entry.user_id, month_year=month_year, summary=summary),
            )
        return True

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def handle_entry_deleted(self, event: EntryDeleted) -> DeletionResult:
        result = await self.deletions.delete_by_entry(event.entry_id, event.user_id)
        for user_id, day in result.days:
            self.queue.forget(user_id, day)
        return result

    async def delete_all_toil_data(self, user_id: str | None = None) -> tuple[int, int]:
        """Wipe ledger rows for one user, or every user when ``user_id`` is None."""
        accruals, usages = await self.repository.delete_user_data(user_id)
        self.cache.invalidate(user_id)
        self.queue.clear_recent()
        logger.info(
            "Deleted all TOIL data for %s: %d accrual and %d usage rows",
            user_id or "all users",
            accruals,
            usages,
        )
        return accruals, usages

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, topic: EventTopic, handler: Callable[[Any], Any]) -> Callable[[], None]:
        return self.notifier.subscribe(topic, handler)
