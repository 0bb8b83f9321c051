"""Calculation engine: turns one day's timesheet entries into accrued TOIL hours.

Everything here is pure (no I/O, no caching) so the calculation queue can
re-run it for the same day as often as it likes.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import TYPE_CHECKING

from toil_ledger.config import Settings, get_settings
from toil_ledger.models.enums import WeekDay
from toil_ledger.schemas.ledger import MAX_DAILY_HOURS
from toil_ledger.schemas.timesheet import TOIL_JOB_CODE

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from toil_ledger.schemas.timesheet import Holiday, TimeEntry, WorkSchedule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpecialDay:
    """Why a day counts every worked hour as accrual."""

    is_holiday: bool = False
    is_weekend: bool = False
    is_rdo: bool = False

    @property
    def any(self) -> bool:
        return self.is_holiday or self.is_weekend or self.is_rdo


# ---------------------------------------------------------------------------
# Entry filtering
# ---------------------------------------------------------------------------


def is_synthetic_toil(entry: TimeEntry) -> bool:
    """System-generated TOIL leave entries must never feed back into accrual."""
    return entry.job_code == TOIL_JOB_CODE and entry.synthetic


def qualifying_entries(entries: Iterable[TimeEntry], day: date, user_id: str) -> list[TimeEntry]:
    """Entries for ``user_id`` on ``day``, excluding synthetic TOIL usage."""
    return [e for e in entries if e.user_id == user_id and e.date == day and not is_synthetic_toil(e)]


# ---------------------------------------------------------------------------
# Schedule lookups
# ---------------------------------------------------------------------------


def fortnight_week(day: date) -> int:
    """Return 1 or 2: whole weeks elapsed since Jan 1 of the day's year, mod 2."""
    weeks_since_year_start = (day - date(day.year, 1, 1)).days // 7
    return weeks_since_year_start % 2 + 1


def _span_hours(start: time, end: time) -> float:
    anchor = date(2000, 1, 1)
    delta = datetime.combine(anchor, end) - datetime.combine(anchor, start)
    return delta.total_seconds() / 3600


def scheduled_hours_for_day(day: date, schedule: WorkSchedule | None, settings: Settings | None = None) -> float:
    """Scheduled hours for ``day`` net of break deductions.

    Falls back to ``fallback_scheduled_hours`` when there is no schedule, no
    configuration for the day, or the configured span is not positive.
    """
    settings = settings or get_settings()
    fallback = settings.fallback_scheduled_hours
    if schedule is None:
        return fallback

    try:
        week = schedule.weeks.get(fortnight_week(day)) or {}
        config = week.get(WeekDay.from_index(day.weekday()))
        if config is None:
            return fallback

        hours = _span_hours(config.start_time, config.end_time)
        if config.breaks.lunch:
            hours -= settings.lunch_break_hours
        if config.breaks.smoko:
            hours -= settings.smoko_break_hours
    except Exception:
        logger.exception("Schedule lookup failed for %s; using fallback of %.2fh", day, fallback)
        return fallback

    if hours <= 0:
        return fallback
    return hours


def is_rdo(day: date, schedule: WorkSchedule | None) -> bool:
    """Whether ``day`` is a rostered day off in the schedule's fortnight rotation."""
    if schedule is None:
        return False
    rdo_days = schedule.rdo_days.get(fortnight_week(day)) or []
    return WeekDay.from_index(day.weekday()) in rdo_days


def is_special_day(day: date, schedule: WorkSchedule | None, holidays: Sequence[Holiday]) -> SpecialDay:
    """Classify ``day`` as holiday, weekend and/or rostered day off."""
    return SpecialDay(
        is_holiday=any(h.date == day for h in holidays),
        is_weekend=day.weekday() >= 5,
        is_rdo=is_rdo(day, schedule),
    )


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------


def round_to_quarter_hour(hours: float, settings: Settings | None = None) -> float:
    """Round half-up to the nearest 0.25h; drop out-of-range or insignificant values."""
    settings = settings or get_settings()
    if not math.isfinite(hours):
        return 0.0
    rounded = math.floor(hours * 4 + 0.5) / 4
    if rounded < 0 or rounded > MAX_DAILY_HOURS or rounded <= settings.min_accrual_hours:
        return 0.0
    return rounded


# ---------------------------------------------------------------------------
# Daily accrual
# ---------------------------------------------------------------------------


def compute_daily_accrual(
    entries: Sequence[TimeEntry],
    day: date,
    user_id: str,
    schedule: WorkSchedule | None,
    holidays: Sequence[Holiday] = (),
    settings: Settings | None = None,
) -> float:
    """Compute TOIL hours earned by ``user_id`` on ``day``.

    Weekends, holidays and rostered days off accrue every worked hour. Other
    days accrue only the hours worked beyond the schedule. Never raises:
    invalid input yields 0.
    """
    settings = settings or get_settings()
    try:
        if not user_id or day is None:
            return 0.0

        daily = qualifying_entries(entries, day, user_id)
        if not daily:
            logger.debug("[%s] No qualifying entries for user=%s", day, user_id)
            return 0.0

        worked = sum(e.hours for e in daily)
        if not math.isfinite(worked) or worked <= 0:
            logger.debug("[%s] Invalid total hours %r for user=%s", day, worked, user_id)
            return 0.0

        special = is_special_day(day, schedule, holidays)
        if special.any:
            raw = worked
        else:
            raw = max(0.0, worked - scheduled_hours_for_day(day, schedule, settings))

        hours = round_to_quarter_hour(raw, settings)
        logger.debug(
            "[%s] user=%s worked=%.2f special=%s raw=%.4f accrued=%.2f",
            day,
            user_id,
            worked,
            special,
            raw,
            hours,
        )
        return hours
    except Exception:
        logger.exception("TOIL calculation failed for user=%s day=%s", user_id, day)
        return 0.0
