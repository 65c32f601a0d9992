"""Billing period windows and cadence arithmetic."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from billing.core.exceptions import ConfigurationError
from billing.models.enums import Cadence

CALENDAR_MONTHS = {
    Cadence.MONTHLY: 1,
    Cadence.QUARTERLY: 3,
    Cadence.YEARLY: 12,
}

FIXED_DAY_LENGTHS = {
    Cadence.WEEKLY: 7,
    Cadence.BIWEEKLY: 14,
}


@dataclass(frozen=True, order=True)
class PeriodWindow:
    """Half-open date range ``[start, end)`` covered by one invoice."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Empty period window: {self.start} .. {self.end}")

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, time.min)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end, time.min)

    def contains(self, moment: date | datetime) -> bool:
        if isinstance(moment, datetime):
            return self.start_at <= moment < self.end_at
        return self.start <= moment < self.end

    def label(self) -> str:
        return f"{self.start:%Y-%m-%d} to {self.last_day:%Y-%m-%d}"


def _add_months(day: date, months: int) -> date:
    years, month_index = divmod(day.month - 1 + months, 12)
    return date(day.year + years, month_index + 1, 1)


def cadence_length_days(cadence: Cadence, interval_days: int | None = None) -> int:
    if cadence in FIXED_DAY_LENGTHS:
        return FIXED_DAY_LENGTHS[cadence]
    if cadence == Cadence.CUSTOM_DAYS:
        if not interval_days or interval_days < 1:
            raise ConfigurationError("custom_days cadence requires recurrence_interval_days >= 1.")
        return interval_days
    raise ConfigurationError(f"Cadence {cadence.value} is not day based.")


def window_containing(
    cadence: Cadence,
    day: date,
    anchor: date,
    interval_days: int | None = None,
) -> PeriodWindow:
    """Return the cadence window that contains ``day``.

    Calendar cadences align to month, quarter and year boundaries. Day based
    cadences align to ``anchor`` (usually the contract start date), so a
    weekly contract starting on a Wednesday bills Wednesday to Tuesday.
    """
    cadence = Cadence(cadence)
    if cadence == Cadence.NONE:
        raise ConfigurationError("Contract has no recurrence cadence.")

    if cadence in CALENDAR_MONTHS:
        months = CALENDAR_MONTHS[cadence]
        first_month = (day.month - 1) // months * months
        start = date(day.year, first_month + 1, 1)
        return PeriodWindow(start=start, end=_add_months(start, months))

    length = cadence_length_days(cadence, interval_days)
    offset = (day - anchor).days // length
    start = anchor + timedelta(days=offset * length)
    return PeriodWindow(start=start, end=start + timedelta(days=length))


def following_window(
    window: PeriodWindow,
    cadence: Cadence,
    anchor: date,
    interval_days: int | None = None,
) -> PeriodWindow:
    return window_containing(cadence, window.end, anchor, interval_days)
