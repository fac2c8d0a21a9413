from datetime import date, datetime

from clock import FixedClock, current_period, iso_week_key, previous_period
from domain import Budget


def _budget(period="monthly", start=date(2026, 1, 1), end=None):
    return Budget(id="b1", owner="u1", name="Test", amount=100.0, period=period, start_date=start, end_date=end)


def test_monthly_period_is_the_calendar_month():
    period = current_period(_budget(), datetime(2026, 2, 14, 9, 30))

    assert period.start == datetime(2026, 2, 1)
    assert period.end == datetime(2026, 3, 1)
    assert period.key == "monthly:2026-02-01"
    assert previous_period(_budget(), period).start == datetime(2026, 1, 1)


def test_monthly_period_wraps_the_year():
    budget = _budget()
    period = current_period(budget, datetime(2026, 12, 31, 23, 59))

    assert period.end == datetime(2027, 1, 1)
    assert previous_period(budget, current_period(budget, datetime(2027, 1, 3))).key == "monthly:2026-12-01"


def test_weekly_period_starts_on_monday():
    period = current_period(_budget("weekly"), datetime(2026, 10, 15, 12))  # a Thursday

    assert period.start == datetime(2026, 10, 12)
    assert period.length_days == 7
    assert previous_period(_budget("weekly"), period).start == datetime(2026, 10, 5)


def test_yearly_period():
    period = current_period(_budget("yearly"), datetime(2026, 6, 1))

    assert (period.start, period.end) == (datetime(2026, 1, 1), datetime(2027, 1, 1))


def test_bounded_budget_includes_its_end_date():
    budget = _budget(start=date(2026, 3, 10), end=date(2026, 3, 19))
    period = current_period(budget, datetime(2026, 3, 12))

    assert period.contains_date(date(2026, 3, 19))
    assert not period.contains_date(date(2026, 3, 20))
    assert period.length_days == 10

    prior = previous_period(budget, period)
    assert (prior.start, prior.end) == (datetime(2026, 2, 28), datetime(2026, 3, 10))


def test_fixed_clock_only_moves_when_told():
    clock = FixedClock(datetime(2026, 1, 1))

    assert clock.now() == clock.now()
    assert clock.advance(hours=1) == datetime(2026, 1, 1, 1)
    assert iso_week_key(clock.now()) == "2026-W01"


def test_recurring_period_starts_no_earlier_than_the_budget():
    budget = _budget(start=date(2026, 9, 20))

    period = current_period(budget, datetime(2026, 9, 21))

    assert period.start == datetime(2026, 9, 20)
    assert period.end == datetime(2026, 10, 1)
    assert period.key == "monthly:2026-09-01"
    assert previous_period(budget, period).length_days == 0


def test_weekly_previous_period_from_a_mid_week_start():
    budget = _budget("weekly", start=date(2026, 10, 7))  # a Wednesday

    period = current_period(budget, datetime(2026, 10, 15))
    prior = previous_period(budget, period)

    assert period.start == datetime(2026, 10, 12)
    assert (prior.start, prior.end) == (datetime(2026, 10, 7), datetime(2026, 10, 12))
