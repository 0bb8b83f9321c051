from __future__ import annotations

import logging
import math
import re
from typing import TYPE_CHECKING

from toil_ledger.exceptions import InputError
from toil_ledger.schemas.ledger import MONTH_YEAR_PATTERN, Summary

if TYPE_CHECKING:
    from toil_ledger.services.repository import LedgerRepository

logger = logging.getLogger(__name__)

_MONTH_YEAR_RE = re.compile(MONTH_YEAR_PATTERN)


def _is_finite(summary: Summary) -> bool:
    return all(math.isfinite(v) for v in (summary.accrued, summary.used, summary.remaining))


class SummaryCache:
    """Per (user, month) memo of ledger totals with explicit invalidation and no TTL."""

    def __init__(self, repository: LedgerRepository) -> None:
        self._repository = repository
        self._entries: dict[tuple[str, str], Summary] = {}
        self._generation = 0
        repository.add_invalidation_listener(self.invalidate)

    @property
    def size(self) -> int:
        return len(self._entries)

    def peek(self, user_id: str, month_year: str) -> Summary | None:
        """Return the cached summary without recomputing."""
        return self._entries.get((user_id, month_year))

    async def get(self, user_id: str, month_year: str) -> Summary:
        """Return the summary for (user, month), recomputing from the ledger on a miss."""
        if not user_id:
            raise InputError("A user id is required")
        if not _MONTH_YEAR_RE.match(month_year or ""):
            raise InputError(f"Month must be formatted YYYY-MM, got {month_year!r}")

        cached = self._entries.get((user_id, month_year))
        if cached is not None:
            if _is_finite(cached):
                return cached
            logger.warning("Discarding non-finite cached summary for user=%s month=%s", user_id, month_year)
            del self._entries[(user_id, month_year)]

        generation = self._generation
        summary = await self._compute(user_id, month_year)
        if generation == self._generation:
            self._entries[(user_id, month_year)] = summary
        return summary

    async def _compute(self, user_id: str, month_year: str) -> Summary:
        accrued = sum(r.hours for r in await self._repository.load_accrual(user_id) if r.month_year == month_year)
        used = sum(u.hours for u in await self._repository.load_usage(user_id) if u.month_year == month_year)
        return Summary.from_totals(user_id, month_year, round(accrued, 2), round(used, 2))

    def invalidate(self, user_id: str | None = None, month_year: str | None = None) -> None:
        """Drop one entry, every month of one user, or the whole cache."""
        self._generation += 1
        if user_id is None:
            self._entries.clear()
            return
        if month_year is None:
            for key in [k for k in self._entries if k[0] == user_id]:
                del self._entries[key]
            return
        self._entries.pop((user_id, month_year), None)
