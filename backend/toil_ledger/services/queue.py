"""Calculation queue: debounced, single-worker recalculation of (user, day) accruals.

``IDLE -> SCHEDULED -> DRAINING -> IDLE``. Requests for the same (user, day)
are coalesced while pending and short-circuited to the cached summary for a
short window after they complete.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING

from toil_ledger.config import Settings, get_settings
from toil_ledger.exceptions import InputError
from toil_ledger.models.enums import CalculationStatus, EventTopic, QueueState
from toil_ledger.schemas.events import CalculationEvent, ErrorEvent, SummaryChangedEvent
from toil_ledger.schemas.ledger import AccrualRecord, Summary, month_year_for
from toil_ledger.services.calculation import compute_daily_accrual, qualifying_entries

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from toil_ledger.schemas.timesheet import Holiday, TimeEntry, WorkSchedule
    from toil_ledger.services.events import EventNotifier
    from toil_ledger.services.repository import LedgerRepository
    from toil_ledger.services.summary import SummaryCache

logger = logging.getLogger(__name__)

JobKey = tuple[str, date]


@dataclass
class _Job:
    """One pending recalculation and the future its callers await."""

    user_id: str
    day: date
    entries: list[TimeEntry]
    schedule: WorkSchedule | None
    holidays: list[Holiday]
    future: asyncio.Future[Summary | None]
    waiters: int = field(default=1)

    @property
    def key(self) -> JobKey:
        return self.user_id, self.day


class CalculationQueue:
    """Single-flight scheduler feeding the calculation engine into the ledger."""

    def __init__(
        self,
        repository: LedgerRepository,
        cache: SummaryCache,
        notifier: EventNotifier,
        settings: Settings | None = None,
        *,
        engine: Callable[..., float] = compute_daily_accrual,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._engine = engine
        self._clock = clock
        self._jobs: list[_Job] = []
        self._batch: list[_Job] = []
        self._pending: dict[JobKey, _Job] = {}
        self._recent: dict[JobKey, float] = {}
        self._state = QueueState.IDLE
        self._ready = asyncio.Event()
        self._drain_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._jobs)

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def mark_ready(self) -> None:
        """Open the readiness gate; drains wait on it so nothing runs before the store is loaded."""
        self._ready.set()

    # ------------------------------------------------------------------
    # Recency map
    # ------------------------------------------------------------------

    def recently_processed(self, user_id: str, day: date) -> bool:
        finished_at = self._recent.get((user_id, day))
        if finished_at is None:
            return False
        return self._clock() - finished_at < self._settings.recency_window_seconds

    def clear_recent(self) -> None:
        self._recent.clear()

    def forget(self, user_id: str, day: date) -> None:
        """Let the next request for (user, day) recompute instead of reusing the cached summary."""
        self._recent.pop((user_id, day), None)

    def _remember(self, key: JobKey) -> None:
        self._recent[key] = self._clock()
        if len(self._recent) > self._settings.recency_max_entries:
            oldest = sorted(self._recent.items(), key=lambda item: item[1])
            for stale_key, _ in oldest[: len(oldest) // 2]:
                del self._recent[stale_key]

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        user_id: str,
        day: date,
        entries: Sequence[TimeEntry],
        schedule: WorkSchedule | None = None,
        holidays: Sequence[Holiday] = (),
    ) -> Summary | None:
        """Request a recalculation of ``day`` and wait for the resulting summary.

        Resolves to ``None`` if the job fails or the queue is closed; callers
        should treat that as "recompute later", not as a zero balance.
        """
        if not user_id:
            raise InputError("A user id is required to recalculate TOIL")
        if not isinstance(day, date):
            raise InputError(f"A calendar date is required to recalculate TOIL, got {day!r}")
        if self._closed:
            logger.warning("Calculation queue closed; dropping request for user=%s date=%s", user_id, day)
            return None

        if self.recently_processed(user_id, day):
            logger.debug("Skipping recalculation for user=%s date=%s: processed recently", user_id, day)
            return await self._cache.get(user_id, month_year_for(day))

        job = self._pending.get((user_id, day))
        if job is not None:
            job.entries = list(entries)
            job.schedule = schedule
            job.holidays = list(holidays)
            job.waiters += 1
            logger.debug("Coalesced recalculation for user=%s date=%s (%d waiters)", user_id, day, job.waiters)
        else:
            job = _Job(
                user_id=user_id,
                day=day,
                entries=list(entries),
                schedule=schedule,
                holidays=list(holidays),
                future=asyncio.get_running_loop().create_future(),
            )
            self._pending[job.key] = job
            self._jobs.append(job)
            logger.debug("Queued recalculation for user=%s date=%s, queue length: %d", user_id, day, len(self._jobs))
            await self._notifier.publish(
                EventTopic.CALCULATION,
                CalculationEvent(user_id=user_id, date=day, status=CalculationStatus.QUEUED),
            )
            self._schedule_drain()

        return await asyncio.shield(job.future)

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    def _schedule_drain(self) -> None:
        if self._state != QueueState.IDLE or self._closed:
            return
        self._state = QueueState.SCHEDULED
        self._drain_task = asyncio.create_task(self._drain_after_delay())

    async def _drain_after_delay(self) -> None:
        await asyncio.sleep(self._settings.queue_delay_seconds)
        if not self._ready.is_set():
            logger.debug("Calculation queue waiting for readiness gate")
        await self._ready.wait()
        await self._drain()

    async def _drain(self) -> None:
        self._state = QueueState.DRAINING
        batch, self._jobs = self._jobs, []
        self._batch = batch
        logger.debug("Draining %d recalculation jobs", len(batch))
        try:
            for job in batch:
                self._pending.pop(job.key, None)
                result = await self._process(job)
                if not job.future.done():
                    job.future.set_result(result)
                await asyncio.sleep(0)
        finally:
            # Jobs left unprocessed by a cancelled drain resolve to None.
            for job in batch:
                if self._pending.get(job.key) is job:
                    del self._pending[job.key]
                if not job.future.done():
                    job.future.set_result(None)
            self._batch = []
            self._state = QueueState.IDLE
            self._drain_task = None

        if self._jobs:
            self._schedule_drain()

    async def _process(self, job: _Job) -> Summary | None:
        month_year = month_year_for(job.day)
        try:
            async with self._repository.lock.held():
                live = [e for e in job.entries if not self._repository.is_entry_deleted(e.id)]
                hours = self._engine(live, job.day, job.user_id, job.schedule, job.holidays, self._settings)
                if hours > 0:
                    daily = qualifying_entries(live, job.day, job.user_id)
                    source_entry_id = daily[0].id if daily else None
                    await self._repository.store_accrual(
                        AccrualRecord.for_day(job.user_id, job.day, hours, source_entry_id)
                    )
                else:
                    await self._repository.remove_day_accrual(job.user_id, job.day)

            summary = await self._cache.get(job.user_id, month_year)
        except Exception as exc:
            logger.exception("TOIL recalculation failed for user=%s date=%s", job.user_id, job.day)
            await self._notifier.publish(
                EventTopic.ERROR,
                ErrorEvent(
                    message=f"TOIL recalculation failed: {exc}",
                    context={"operation": "recalculate", "date": job.day.isoformat()},
                    user_id=job.user_id,
                ),
            )
            await self._notifier.publish(
                EventTopic.CALCULATION,
                CalculationEvent(user_id=job.user_id, date=job.day, status=CalculationStatus.ERROR, error=str(exc)),
            )
            return None

        self._remember(job.key)
        await self._notifier.publish(
            EventTopic.SUMMARY_CHANGED,
            SummaryChangedEvent(user_id=job.user_id, month_year=month_year, summary=summary),
        )
        await self._notifier.publish(
            EventTopic.CALCULATION,
            CalculationEvent(user_id=job.user_id, date=job.day, status=CalculationStatus.COMPLETED, summary=summary),
        )
        return summary

    async def close(self) -> None:
        """Stop draining and resolve every outstanding request with ``None``."""
        self._closed = True
        if self._drain_task is not None:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None
        for job in [*self._batch, *self._jobs]:
            if not job.future.done():
                job.future.set_result(None)
        self._batch = []
        self._jobs = []
        self._pending.clear()
        self._state = QueueState.IDLE
