"""Predictive progress metrics for a single budget.

Projection policy: linear. Spend velocity is the average spend per elapsed
day and the overspend date assumes that pace holds for the rest of the
period.
"""

import math
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import pandas as pd

from clock import ONE_DAY, Period, current_period, previous_period
from domain import EXPENSE, Budget, BudgetProgress, Transaction
from errors import ConfigurationError

EPSILON = 0.01

FRAME_COLUMNS = ["Id", "Date", "Amount", "Type", "CategoryId"]


def transactions_to_frame(transactions: Iterable[Transaction]) -> pd.DataFrame:
    rows = [
        {
            "Id": t.id,
            "Date": t.date,
            "Amount": t.amount,
            "Type": t.type,
            "CategoryId": t.category_id,
        }
        for t in transactions
    ]
    if not rows:
        return pd.DataFrame(columns=FRAME_COLUMNS)

    df = pd.DataFrame(rows, columns=FRAME_COLUMNS)
    df["Date"] = pd.to_datetime(df["Date"])
    df["Amount"] = pd.to_numeric(df["Amount"], errors="coerce").fillna(0.0)
    return df


def _period_expenses(df: pd.DataFrame, period: Period, category_id: Optional[str]) -> pd.DataFrame:
    """Expense rows of ``df`` inside ``period``, optionally for one category."""
    if df.empty:
        return df.assign(AbsAmount=pd.Series(dtype=float))

    mask = (df["Type"] == EXPENSE) & (df["Date"] >= period.start) & (df["Date"] < period.end)
    if category_id is not None:
        mask &= df["CategoryId"] == category_id
    expenses = df[mask].copy()
    expenses["AbsAmount"] = expenses["Amount"].abs()
    return expenses


def _period_comparison(
    spent: float, prior: pd.DataFrame, prior_period: Period, elapsed_fraction: float
) -> Optional[float]:
    if prior.empty:
        return None

    # Same elapsed fraction, scaled onto the prior period's own length.
    cutoff = prior_period.start + (prior_period.end - prior_period.start) * elapsed_fraction
    prior_spent = float(prior.loc[prior["Date"] < cutoff, "AbsAmount"].sum())
    return round((spent - prior_spent) / max(prior_spent, EPSILON) * 100, 2)


def calculate_budget_progress(
    budget: Budget,
    transactions: Iterable[Transaction],
    prior_transactions: Iterable[Transaction],
    now: datetime,
    period: Optional[Period] = None,
    prior_period: Optional[Period] = None,
) -> BudgetProgress:
    """Turn a budget and its transactions into a ``BudgetProgress``.

    Args:
        budget: The budget being measured.
        transactions: Transactions of the current period. Rows outside the
            period, non-expense rows and rows of other categories are ignored.
        prior_transactions: Transactions of the immediately preceding period.
        now: The evaluation instant.
        period / prior_period: Resolved from the budget when omitted.

    Raises:
        ConfigurationError: the budget amount is negative.
    """
    if budget.amount < 0:
        raise ConfigurationError(f"Budget {budget.id} has a negative amount ({budget.amount})")

    period = period or current_period(budget, now)
    prior_period = prior_period or previous_period(budget, period)

    current = _period_expenses(transactions_to_frame(transactions), period, budget.category_id)
    prior = _period_expenses(transactions_to_frame(prior_transactions), prior_period, budget.category_id)

    spent = float(current["AbsAmount"].sum()) if not current.empty else 0.0
    remaining = budget.amount - spent
    misconfigured = budget.amount == 0
    percentage = 0.0 if misconfigured else round(spent / budget.amount * 100, 2)

    elapsed_days = max(1.0, (min(now, period.end) - period.start) / ONE_DAY)
    spending_velocity = spent / elapsed_days

    if period.length_days == 0:
        remaining_days = 0.0
    else:
        remaining_days = max(0.0, (period.end - now) / ONE_DAY)

    projected_overspend_date = None
    if spending_velocity > 0 and spent < budget.amount:
        days_to_overspend = (budget.amount - spent) / spending_velocity
        if days_to_overspend <= remaining_days:
            projected_overspend_date = now + timedelta(days=days_to_overspend)

    if period.length_days > 0:
        elapsed_fraction = min(1.0, elapsed_days / period.length_days)
    else:
        elapsed_fraction = 1.0

    return BudgetProgress(
        budget_id=budget.id,
        name=budget.name,
        category_name=budget.category_name or "Uncategorized",
        spent=spent,
        remaining=remaining,
        percentage=percentage,
        is_over_budget=spent > budget.amount,
        spending_velocity=round(spending_velocity, 2),
        projected_overspend_date=projected_overspend_date,
        days_remaining=math.ceil(remaining_days),
        period_comparison=_period_comparison(spent, prior, prior_period, elapsed_fraction),
        period_start=period.start,
        period_end=period.end,
        misconfigured=misconfigured,
    )


def _direct(fn, *args):
    return fn(*args)


def load_budget_progress(
    repository,
    budget: Budget,
    now: datetime,
    read: Callable = _direct,
) -> BudgetProgress:
    """Read both periods' transactions for ``budget`` and compute its progress.

    ``read`` wraps each repository call; the job passes a retrying reader.
    """
    period = current_period(budget, now)
    prior_period = previous_period(budget, period)
    transactions = read(
        repository.get_transactions,
        budget.owner,
        (prior_period.start.date(), period.end.date()),
        budget.category_id,
    )
    current = [t for t in transactions if period.contains_date(t.date)]
    prior = [t for t in transactions if prior_period.contains_date(t.date)]
    return calculate_budget_progress(budget, current, prior, now, period, prior_period)
