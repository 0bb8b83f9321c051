"""Ledger repository: the only component that reads or writes the persistent store.

Every mutation runs under the write lock, rewrites whole collections in a
single store call (so a failed write leaves the previous state intact) and
invalidates the affected summaries before the lock is released.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import TYPE_CHECKING

from pydantic import ValidationError

from toil_ledger.config import Settings, get_settings
from toil_ledger.exceptions import InputError
from toil_ledger.models.enums import AccrualStatus, LedgerCollection, StoreOutcome
from toil_ledger.schemas.ledger import MAX_DAILY_HOURS, AccrualRecord, UsageRecord, month_year_for
from toil_ledger.services.store import with_retries

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping
    from datetime import date

    from toil_ledger.services.lock import WriteLock
    from toil_ledger.services.store import PersistentStore, Rows

logger = logging.getLogger(__name__)

# Differences below this are not worth a write.
MATERIAL_CHANGE_HOURS = 0.01


def _validate_hours(hours: float) -> None:
    if not isinstance(hours, (int, float)) or not math.isfinite(hours):
        raise InputError(f"Hours must be a finite number, got {hours!r}")
    if hours < 0 or hours > MAX_DAILY_HOURS:
        raise InputError(f"Hours must be between 0 and {MAX_DAILY_HOURS:g}, got {hours}")


def _validate_accrual(record: AccrualRecord) -> None:
    if not record.user_id:
        raise InputError("Accrual record is missing a user id")
    if record.date is None:
        raise InputError("Accrual record is missing a date")
    _validate_hours(record.hours)


def _validate_usage(usage: UsageRecord) -> None:
    if not usage.user_id:
        raise InputError("Usage record is missing a user id")
    if not usage.entry_id:
        raise InputError("Usage record is missing an entry id")
    if usage.date is None:
        raise InputError("Usage record is missing a date")
    _validate_hours(usage.hours)


class LedgerRepository:
    """Load, merge, purge and sweep accrual and usage records."""

    def __init__(self, store: PersistentStore, lock: WriteLock, settings: Settings | None = None) -> None:
        self._store = store
        self._lock = lock
        self._settings = settings or get_settings()
        self._listeners: list[Callable[[str | None, str | None], None]] = []
        self._deleted_entries: OrderedDict[str, None] = OrderedDict()

    @property
    def lock(self) -> WriteLock:
        return self._lock

    # ------------------------------------------------------------------
    # Invalidation and deletion memory
    # ------------------------------------------------------------------

    def add_invalidation_listener(self, listener: Callable[[str | None, str | None], None]) -> None:
        """Register a callback run with ``(user_id, month_year)`` after every write."""
        self._listeners.append(listener)

    def _invalidate(self, keys: Iterable[tuple[str, str]]) -> None:
        for user_id, month_year in set(keys):
            for listener in self._listeners:
                listener(user_id, month_year)

    def _invalidate_all(self, user_id: str | None = None) -> None:
        for listener in self._listeners:
            listener(user_id, None)

    def mark_entry_deleted(self, entry_id: str) -> None:
        """Remember a deleted timesheet entry so in-flight recomputes cannot resurrect it."""
        self._deleted_entries[entry_id] = None
        self._deleted_entries.move_to_end(entry_id)
        while len(self._deleted_entries) > self._settings.deleted_entry_memory:
            self._deleted_entries.popitem(last=False)

    def is_entry_deleted(self, entry_id: str | None) -> bool:
        return entry_id is not None and entry_id in self._deleted_entries

    # ------------------------------------------------------------------
    # Raw store access
    # ------------------------------------------------------------------

    async def _read(self, collection: LedgerCollection) -> Rows:
        return await with_retries(
            lambda: self._store.read(collection.value),
            description=f"read {collection.value}",
            max_retries=self._settings.storage_max_retries,
            delay=self._settings.storage_retry_delay_seconds,
        )

    async def _write(self, items: Mapping[LedgerCollection, Rows]) -> None:
        payload = {collection.value: rows for collection, rows in items.items()}
        await with_retries(
            lambda: self._store.write(payload),
            description="write " + ", ".join(payload),
            max_retries=self._settings.storage_max_retries,
            delay=self._settings.storage_retry_delay_seconds,
        )

    async def _read_accruals(self) -> list[AccrualRecord]:
        records: list[AccrualRecord] = []
        for row in await self._read(LedgerCollection.ACCRUAL):
            try:
                records.append(AccrualRecord.model_validate(row))
            except ValidationError:
                logger.warning("Dropping unreadable accrual row: %r", row)
        return records

    async def _read_usages(self) -> list[UsageRecord]:
        usages: list[UsageRecord] = []
        for row in await self._read(LedgerCollection.USAGE):
            try:
                usages.append(UsageRecord.model_validate(row))
            except ValidationError:
                logger.warning("Dropping unreadable usage row: %r", row)
        return usages

    async def _read_tombstones(self) -> tuple[set[str], set[str]]:
        accrual_ids = {i for i in await self._read(LedgerCollection.DELETED_ACCRUAL) if isinstance(i, str)}
        usage_ids = {i for i in await self._read(LedgerCollection.DELETED_USAGE) if isinstance(i, str)}
        return accrual_ids, usage_ids

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def load_accrual(self, user_id: str | None = None) -> list[AccrualRecord]:
        """Tombstone-filtered accrual records, optionally for one user."""
        deleted, _ = await self._read_tombstones()
        return [
            r
            for r in await self._read_accruals()
            if r.id not in deleted and (user_id is None or r.user_id == user_id)
        ]

    async def load_usage(self, user_id: str | None = None) -> list[UsageRecord]:
        """Tombstone-filtered usage records, optionally for one user."""
        _, deleted = await self._read_tombstones()
        return [
            u
            for u in await self._read_usages()
            if u.id not in deleted and (user_id is None or u.user_id == user_id)
        ]

    async def find_by_entry_id(self, entry_id: str) -> tuple[list[AccrualRecord], list[UsageRecord]]:
        """Every row referencing ``entry_id``, tombstoned or not."""
        accruals = [r for r in await self._read_accruals() if r.source_entry_id == entry_id]
        usages = [u for u in await self._read_usages() if u.entry_id == entry_id]
        return accruals, usages

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def store_accrual(self, record: AccrualRecord) -> StoreOutcome:
        """Merge ``record`` into the active row for its (user, day), or append it."""
        _validate_accrual(record)
        async with self._lock.held():
            if self.is_entry_deleted(record.source_entry_id):
                logger.info(
                    "Skipping accrual for user=%s date=%s: source entry %s was deleted",
                    record.user_id,
                    record.date,
                    record.source_entry_id,
                )
                return StoreOutcome.SKIPPED

            records = await self._read_accruals()
            deleted, _ = await self._read_tombstones()
            existing = next(
                (
                    r
                    for r in records
                    if r.user_id == record.user_id
                    and r.date == record.date
                    and r.status == AccrualStatus.ACTIVE
                    and r.id not in deleted
                ),
                None,
            )

            if existing is not None:
                if abs(existing.hours - record.hours) < MATERIAL_CHANGE_HOURS:
                    return StoreOutcome.UNCHANGED
                existing.hours = record.hours
                existing.source_entry_id = record.source_entry_id or existing.source_entry_id
                outcome = StoreOutcome.UPDATED
            else:
                records.append(record)
                outcome = StoreOutcome.CREATED

            await self._write({LedgerCollection.ACCRUAL: [r.to_row() for r in records]})
            self._invalidate([(record.user_id, record.month_year)])

        logger.debug("Accrual %s for user=%s date=%s hours=%.2f", outcome, record.user_id, record.date, record.hours)
        return outcome

    async def remove_day_accrual(self, user_id: str, day: date) -> int:
        """Remove the active accrual for a day whose recomputation earns nothing."""
        async with self._lock.held():
            records = await self._read_accruals()
            kept = [
                r
                for r in records
                if not (r.user_id == user_id and r.date == day and r.status == AccrualStatus.ACTIVE)
            ]
            removed = len(records) - len(kept)
            if removed:
                await self._write({LedgerCollection.ACCRUAL: [r.to_row() for r in kept]})
                self._invalidate([(user_id, month_year_for(day))])
        return removed

    async def store_usage(self, usage: UsageRecord) -> StoreOutcome:
        """Record usage for an entry, updating in place if the entry already has a row."""
        _validate_usage(usage)
        async with self._lock.held():
            if self.is_entry_deleted(usage.entry_id):
                logger.info("Skipping usage for deleted entry %s", usage.entry_id)
                return StoreOutcome.SKIPPED

            usages = await self._read_usages()
            _, deleted = await self._read_tombstones()
            existing = next((u for u in usages if u.entry_id == usage.entry_id and u.id not in deleted), None)

            if existing is not None:
                if abs(existing.hours - usage.hours) < MATERIAL_CHANGE_HOURS and existing.date == usage.date:
                    return StoreOutcome.UNCHANGED
                stale_key = (existing.user_id, existing.month_year)
                existing.hours = usage.hours
                existing.date = usage.date
                existing.month_year = usage.month_year
                outcome = StoreOutcome.UPDATED
                keys = [stale_key, (usage.user_id, usage.month_year)]
            else:
                usages.append(usage)
                outcome = StoreOutcome.CREATED
                keys = [(usage.user_id, usage.month_year)]

            await self._write({LedgerCollection.USAGE: [u.to_row() for u in usages]})
            self._invalidate(keys)

        logger.debug("Usage %s for entry=%s hours=%.2f", outcome, usage.entry_id, usage.hours)
        return outcome

    async def add_tombstones(self, accrual_ids: Iterable[str], usage_ids: Iterable[str]) -> None:
        """Durably mark rows as logically deleted ahead of the physical purge."""
        async with self._lock.held():
            deleted_accruals, deleted_usages = await self._read_tombstones()
            deleted_accruals.update(accrual_ids)
            deleted_usages.update(usage_ids)
            await self._write(
                {
                    LedgerCollection.DELETED_ACCRUAL: sorted(deleted_accruals),
                    LedgerCollection.DELETED_USAGE: sorted(deleted_usages),
                }
            )

    async def delete_by_entry_id(self, entry_id: str) -> tuple[int, int]:
        """Physically remove every row referencing ``entry_id``; return (accrual, usage) counts."""
        async with self._lock.held():
            records = await self._read_accruals()
            usages = await self._read_usages()
            deleted_accruals, deleted_usages = await self._read_tombstones()

            doomed_accruals = [r for r in records if r.source_entry_id == entry_id]
            doomed_usages = [u for u in usages if u.entry_id == entry_id]
            if not doomed_accruals and not doomed_usages:
                return 0, 0

            doomed_accrual_ids = {r.id for r in doomed_accruals}
            doomed_usage_ids = {u.id for u in doomed_usages}
            await self._write(
                {
                    LedgerCollection.ACCRUAL: [r.to_row() for r in records if r.id not in doomed_accrual_ids],
                    LedgerCollection.USAGE: [u.to_row() for u in usages if u.id not in doomed_usage_ids],
                    LedgerCollection.DELETED_ACCRUAL: sorted(deleted_accruals - doomed_accrual_ids),
                    LedgerCollection.DELETED_USAGE: sorted(deleted_usages - doomed_usage_ids),
                }
            )
            self._invalidate(
                [(r.user_id, r.month_year) for r in doomed_accruals]
                + [(u.user_id, u.month_year) for u in doomed_usages]
            )

        logger.info(
            "Purged %d accrual and %d usage rows for entry %s",
            len(doomed_accruals),
            len(doomed_usages),
            entry_id,
        )
        return len(doomed_accruals), len(doomed_usages)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def cleanup_duplicates(self, user_id: str | None = None) -> int:
        """Drop active accruals sharing (user, day) and usages sharing an entry, keeping the first.

        Tombstoned rows never claim a key; they are left for ``reconcile_tombstones``.
        """
        async with self._lock.held():
            records = await self._read_accruals()
            usages = await self._read_usages()
            deleted_accruals, deleted_usages = await self._read_tombstones()

            seen_days: set[tuple[str, date]] = set()
            kept_records: list[AccrualRecord] = []
            dropped: list[tuple[str, str]] = []
            for record in records:
                in_scope = user_id is None or record.user_id == user_id
                if in_scope and record.status == AccrualStatus.ACTIVE and record.id not in deleted_accruals:
                    key = (record.user_id, record.date)
                    if key in seen_days:
                        dropped.append((record.user_id, record.month_year))
                        continue
                    seen_days.add(key)
                kept_records.append(record)

            seen_entries: set[str] = set()
            kept_usages: list[UsageRecord] = []
            for usage in usages:
                in_scope = user_id is None or usage.user_id == user_id
                if in_scope and usage.id not in deleted_usages:
                    if usage.entry_id in seen_entries:
                        dropped.append((usage.user_id, usage.month_year))
                        continue
                    seen_entries.add(usage.entry_id)
                kept_usages.append(usage)

            if not dropped:
                return 0

            logger.warning("Removed %d duplicate ledger rows", len(dropped))
            await self._write(
                {
                    LedgerCollection.ACCRUAL: [r.to_row() for r in kept_records],
                    LedgerCollection.USAGE: [u.to_row() for u in kept_usages],
                }
            )
            self._invalidate(dropped)
        return len(dropped)

    async def reconcile_tombstones(self) -> int:
        """Purge rows still listed as tombstoned (left behind by a failed purge) and empty the sets."""
        async with self._lock.held():
            deleted_accruals, deleted_usages = await self._read_tombstones()
            if not deleted_accruals and not deleted_usages:
                return 0

            records = await self._read_accruals()
            usages = await self._read_usages()
            orphaned = [r for r in records if r.id in deleted_accruals]
            orphaned_usages = [u for u in usages if u.id in deleted_usages]

            await self._write(
                {
                    LedgerCollection.ACCRUAL: [r.to_row() for r in records if r.id not in deleted_accruals],
                    LedgerCollection.USAGE: [u.to_row() for u in usages if u.id not in deleted_usages],
                    LedgerCollection.DELETED_ACCRUAL: [],
                    LedgerCollection.DELETED_USAGE: [],
                }
            )
            self._invalidate(
                [(r.user_id, r.month_year) for r in orphaned] + [(u.user_id, u.month_year) for u in orphaned_usages]
            )

        purged = len(orphaned) + len(orphaned_usages)
        if purged:
            logger.warning("Reconciled %d tombstoned rows still in the store", purged)
        return purged

    async def expire_accruals(self, before: date) -> int:
        """Mark active accruals dated before ``before`` as expired."""
        async with self._lock.held():
            records = await self._read_accruals()
            expired = [r for r in records if r.status == AccrualStatus.ACTIVE and r.date < before]
            if not expired:
                return 0
            for record in expired:
                record.status = AccrualStatus.EXPIRED
            await self._write({LedgerCollection.ACCRUAL: [r.to_row() for r in records]})
            self._invalidate([(r.user_id, r.month_year) for r in expired])
        return len(expired)

    async def delete_user_data(self, user_id: str | None = None) -> tuple[int, int]:
        """Remove all ledger rows for one user, or for everyone when ``user_id`` is None."""
        async with self._lock.held():
            records = await self._read_accruals()
            usages = await self._read_usages()

            if user_id is None:
                await self._write(
                    {
                        LedgerCollection.ACCRUAL: [],
                        LedgerCollection.USAGE: [],
                        LedgerCollection.DELETED_ACCRUAL: [],
                        LedgerCollection.DELETED_USAGE: [],
                    }
                )
                self._invalidate_all()
                return len(records), len(usages)

            deleted_accruals, deleted_usages = await self._read_tombstones()
            removed_ids = {r.id for r in records if r.user_id == user_id}
            removed_usage_ids = {u.id for u in usages if u.user_id == user_id}
            await self._write(
                {
                    LedgerCollection.ACCRUAL: [r.to_row() for r in records if r.id not in removed_ids],
                    LedgerCollection.USAGE: [u.to_row() for u in usages if u.id not in removed_usage_ids],
                    LedgerCollection.DELETED_ACCRUAL: sorted(deleted_accruals - removed_ids),
                    LedgerCollection.DELETED_USAGE: sorted(deleted_usages - removed_usage_ids),
                }
            )
            self._invalidate_all(user_id)
        return len(removed_ids), len(removed_usage_ids)
