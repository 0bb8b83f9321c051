"""Tests for the summary cache: totals, coherence with ledger writes, invalidation."""

from __future__ import annotations

import math
from datetime import date

import pytest

from toil_ledger.exceptions import InputError
from toil_ledger.schemas.ledger import AccrualRecord, Summary, UsageRecord
from toil_ledger.services.repository import LedgerRepository
from toil_ledger.services.summary import SummaryCache

USER = "user-1"
MONTH = "2025-03"


def _usage(entry_id: str, hours: float, day: date = date(2025, 3, 10)) -> UsageRecord:
    return UsageRecord(user_id=USER, date=day, hours=hours, entry_id=entry_id, month_year=day.strftime("%Y-%m"))


async def test_summary_totals_accrual_and_usage(repository: LedgerRepository, cache: SummaryCache) -> None:
    await repository.store_accrual(AccrualRecord.for_day(USER, date(2025, 3, 3), 1.25))
    await repository.store_accrual(AccrualRecord.for_day(USER, date(2025, 3, 4), 2.0))
    await repository.store_accrual(AccrualRecord.for_day(USER, date(2025, 4, 1), 5.0))
    await repository.store_usage(_usage("leave-1", 1.5))

    summary = await cache.get(USER, MONTH)

    assert summary == Summary(user_id=USER, month_year=MONTH, accrued=3.25, used=1.5, remaining=1.75)


async def test_remaining_never_negative(repository: LedgerRepository, cache: SummaryCache) -> None:
    await repository.store_accrual(AccrualRecord.for_day(USER, date(2025, 3, 3), 1.0))
    await repository.store_usage(_usage("leave-1", 3.0))

    summary = await cache.get(USER, MONTH)
    assert summary.used == 3.0
    assert summary.remaining == 0.0


async def test_empty_month_is_zero(cache: SummaryCache) -> None:
    summary = await cache.get(USER, MONTH)
    assert (summary.accrued, summary.used, summary.remaining) == (0.0, 0.0, 0.0)


async def test_hit_returns_cached_summary(cache: SummaryCache) -> None:
    first = await cache.get(USER, MONTH)
    assert cache.size == 1
    assert cache.peek(USER, MONTH) is first
    assert await cache.get(USER, MONTH) is first


async def test_ledger_write_invalidates_summary(repository: LedgerRepository, cache: SummaryCache) -> None:
    assert (await cache.get(USER, MONTH)).accrued == 0.0

    await repository.store_accrual(AccrualRecord.for_day(USER, date(2025, 3, 3), 2.0))

    assert cache.peek(USER, MONTH) is None
    assert (await cache.get(USER, MONTH)).accrued == 2.0


async def test_tombstoned_rows_are_not_counted(repository: LedgerRepository, cache: SummaryCache) -> None:
    record = AccrualRecord.for_day(USER, date(2025, 3, 3), 2.0, "e1")
    await repository.store_accrual(record)
    await repository.add_tombstones([record.id], [])
    cache.invalidate(USER, MONTH)

    assert (await cache.get(USER, MONTH)).accrued == 0.0


async def test_invalidate_scopes(cache: SummaryCache) -> None:
    await cache.get(USER, "2025-03")
    await cache.get(USER, "2025-04")
    await cache.get("user-2", "2025-03")

    cache.invalidate(USER, "2025-03")
    assert cache.size == 2

    cache.invalidate(USER)
    assert cache.size == 1
    assert cache.peek("user-2", "2025-03") is not None

    cache.invalidate()
    assert cache.size == 0


async def test_non_finite_cached_value_is_recomputed(cache: SummaryCache) -> None:
    cache._entries[(USER, MONTH)] = Summary.model_construct(
        user_id=USER, month_year=MONTH, accrued=math.nan, used=0.0, remaining=math.nan
    )

    summary = await cache.get(USER, MONTH)
    assert summary.accrued == 0.0
    assert cache.peek(USER, MONTH) == summary


async def test_recompute_racing_invalidation_is_not_cached(
    repository: LedgerRepository, cache: SummaryCache, monkeypatch: pytest.MonkeyPatch
) -> None:
    original = repository.load_accrual

    async def load_then_invalidate(user_id: str | None = None) -> list[AccrualRecord]:
        records = await original(user_id)
        cache.invalidate(USER, MONTH)
        return records

    monkeypatch.setattr(repository, "load_accrual", load_then_invalidate)

    await cache.get(USER, MONTH)
    assert cache.peek(USER, MONTH) is None


@pytest.mark.parametrize(("user_id", "month_year"), [("", MONTH), (USER, "2025-13"), (USER, "March")])
async def test_bad_keys_are_rejected(cache: SummaryCache, user_id: str, month_year: str) -> None:
    with pytest.raises(InputError):
        await cache.get(user_id, month_year)
