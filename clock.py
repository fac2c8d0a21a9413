"""Time source and budget period boundaries.

All datetimes handled by the engine are naive UTC.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Protocol

from domain import MONTHLY, WEEKLY, YEARLY, Budget

ONE_DAY = timedelta(days=1)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, moment: datetime):
        self._moment = moment

    def now(self) -> datetime:
        return self._moment

    def advance(self, **delta) -> datetime:
        self._moment = self._moment + timedelta(**delta)
        return self._moment

    def set(self, moment: datetime):
        self._moment = moment


@dataclass(frozen=True)
class Period:
    """Half-open ``[start, end)`` range a budget applies to."""

    start: datetime
    end: datetime
    key: str

    @property
    def length_days(self) -> float:
        return (self.end - self.start) / ONE_DAY

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def contains_date(self, day: date) -> bool:
        return self.contains(midnight(day))


def midnight(day: date) -> datetime:
    return datetime.combine(day, datetime.min.time())


def _month_start(year: int, month: int) -> datetime:
    while month < 1:
        month += 12
        year -= 1
    while month > 12:
        month -= 12
        year += 1
    return datetime(year, month, 1)


def _recurring_period(kind: str, start: datetime) -> Period:
    if kind == WEEKLY:
        end = start + timedelta(days=7)
    elif kind == YEARLY:
        end = datetime(start.year + 1, 1, 1)
    else:
        end = _month_start(start.year, start.month + 1)
    return Period(start, end, f"{kind}:{start.date().isoformat()}")


def _bounded_period(start: datetime, end: datetime) -> Period:
    end = max(start, end)
    return Period(start, end, f"bounded:{start.date().isoformat()}:{end.date().isoformat()}")


def _week_start(moment: datetime) -> datetime:
    today = midnight(moment.date())
    return today - timedelta(days=today.weekday())


def _from_start_date(budget: Budget, period: Period) -> Period:
    """Drop the part of ``period`` before the budget starts; the key is kept."""
    start = min(max(period.start, midnight(budget.start_date)), period.end)
    return Period(start, period.end, period.key)


def current_period(budget: Budget, now: datetime) -> Period:
    """Return the period of ``budget`` that ``now`` falls in.

    Budgets with an end date cover ``[start_date, end_date]`` inclusive.
    Recurring budgets follow the calendar: ISO weeks starting on Monday,
    calendar months and calendar years, never reaching back before
    ``start_date``. Unknown period names fall back to monthly.
    """
    if budget.is_bounded:
        return _bounded_period(midnight(budget.start_date), midnight(budget.end_date) + ONE_DAY)

    if budget.period == WEEKLY:
        period = _recurring_period(WEEKLY, _week_start(now))
    elif budget.period == YEARLY:
        period = _recurring_period(YEARLY, datetime(now.year, 1, 1))
    else:
        period = _recurring_period(MONTHLY, datetime(now.year, now.month, 1))
    return _from_start_date(budget, period)


def previous_period(budget: Budget, period: Period) -> Period:
    """The period immediately before ``period``.

    Recurring budgets step back one calendar unit (empty when the budget
    had not started yet); bounded budgets use the window of identical
    length ending where ``period`` starts.
    """
    if budget.is_bounded:
        return _bounded_period(period.start - (period.end - period.start), period.start)
    if budget.period == WEEKLY:
        prior = _recurring_period(WEEKLY, _week_start(period.start) - timedelta(days=7))
    elif budget.period == YEARLY:
        prior = _recurring_period(YEARLY, datetime(period.start.year - 1, 1, 1))
    else:
        prior = _recurring_period(MONTHLY, _month_start(period.start.year, period.start.month - 1))
    return _from_start_date(budget, prior)


def iso_week_key(moment: datetime) -> str:
    year, week, _ = moment.isocalendar()
    return f"{year}-W{week:02d}"
