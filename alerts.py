"""Alerting rules.

Every rule is a pure function of its inputs and the injected ``now``: the
same inputs always give the same ordered list of intents. A rule whose
preference flag is off returns no intents at all.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Mapping, Optional

import pandas as pd

from clock import ONE_DAY, Period, iso_week_key, midnight
from domain import (
    BUDGET_ALERT,
    GOAL_REMINDER,
    TRANSACTION_ALERT,
    AlertIntent,
    Budget,
    BudgetProgress,
    Goal,
    NotificationPreferences,
    Transaction,
)

REMINDER_COOLDOWN = timedelta(hours=24)
PROGRESS_REMINDER_COOLDOWN = timedelta(days=7)
TRANSACTION_ALERT_TTL = timedelta(hours=24)

LARGE_AMOUNT = "large_amount"
UNUSUAL_SPENDING = "unusual_spending"
DEADLINE_APPROACHING = "deadline_approaching"
WEEKLY_PROGRESS = "weekly_progress"


@dataclass(frozen=True)
class AnomalyPolicy:
    multiplier: float = 3.0
    min_history: int = 3


@dataclass(frozen=True)
class BudgetSnapshot:
    """A budget with its computed progress and what was last alerted for it."""

    budget: Budget
    period: Period
    progress: BudgetProgress
    last_notified_threshold: float = 0.0


def _money(amount: float) -> str:
    return f"{amount:,.2f}"


def progress_subject(goal_id: str) -> str:
    return f"{goal_id}:progress"


def threshold_period_key(period: Period, threshold: float) -> str:
    return f"{period.key}@{threshold:g}"


# --- Budget thresholds ---

def budget_threshold_intents(
    snapshot: BudgetSnapshot, preferences: NotificationPreferences
) -> List[AlertIntent]:
    """One intent per threshold above the last notified one that spending has reached."""
    if not preferences.budget_alerts:
        return []

    progress = snapshot.progress
    if progress.misconfigured:
        return []

    budget = snapshot.budget
    intents = []
    for threshold in preferences.budget_thresholds:
        if not snapshot.last_notified_threshold < threshold <= progress.percentage:
            continue
        intents.append(
            AlertIntent(
                type=BUDGET_ALERT,
                subject_id=budget.id,
                period_key=threshold_period_key(snapshot.period, threshold),
                title=f"Budget Alert: {budget.name}",
                message=(
                    f"You've spent {progress.percentage:.1f}% of your {budget.name} budget "
                    f"({_money(progress.spent)} / {_money(budget.amount)})"
                ),
                payload={
                    "budget_id": budget.id,
                    "threshold": threshold,
                    "spent": progress.spent,
                    "amount": budget.amount,
                    "percentage": progress.percentage,
                    "period": snapshot.period.key,
                },
                expires_at=snapshot.period.end,
                action_url=f"/budgets/{budget.id}",
            )
        )
    return intents


# --- Goals ---

def _in_deadline_window(goal: Goal, preferences: NotificationPreferences, now: datetime) -> bool:
    if goal.target_date is None:
        return False
    today = now.date()
    return today <= goal.target_date <= today + timedelta(days=preferences.goal_reminder_days)


def goal_reminder_intents(
    goals: Iterable[Goal],
    preferences: NotificationPreferences,
    now: datetime,
    last_reminded: Optional[Mapping[str, datetime]] = None,
    last_progress_reminded: Optional[Mapping[str, datetime]] = None,
) -> List[AlertIntent]:
    """Deadline reminders, plus weekly progress nudges for goals not yet near their deadline.

    ``last_reminded`` maps goal ids to the creation time of their latest
    unexpired deadline reminder, ``last_progress_reminded`` the same for
    progress reminders.
    """
    if not preferences.goal_reminders:
        return []

    last_reminded = last_reminded or {}
    last_progress_reminded = last_progress_reminded or {}
    intents = []
    for goal in sorted(goals, key=lambda g: g.id):
        if goal.current_amount >= goal.target_amount:
            continue

        if _in_deadline_window(goal, preferences, now):
            previous = last_reminded.get(goal.id)
            if previous is not None and now - previous < REMINDER_COOLDOWN:
                continue
            days_left = (goal.target_date - now.date()).days
            intents.append(
                AlertIntent(
                    type=GOAL_REMINDER,
                    subject_id=goal.id,
                    period_key=f"deadline:{now.date().isoformat()}",
                    title=f"Goal Reminder: {goal.name}",
                    message=(
                        f'Your savings goal "{goal.name}" is due in {days_left} days. '
                        f"You're {goal.progress:.1f}% there."
                    ),
                    payload={
                        "goal_id": goal.id,
                        "type": DEADLINE_APPROACHING,
                        "target_date": goal.target_date.isoformat(),
                        "current_amount": goal.current_amount,
                        "target_amount": goal.target_amount,
                        "progress": round(goal.progress, 2),
                    },
                    expires_at=midnight(goal.target_date) + ONE_DAY,
                    action_url=f"/savings/{goal.id}",
                )
            )
            continue

        if preferences.goal_reminder_frequency != "weekly":
            continue
        previous = last_progress_reminded.get(goal.id)
        if previous is not None and now - previous < PROGRESS_REMINDER_COOLDOWN:
            continue
        intents.append(
            AlertIntent(
                type=GOAL_REMINDER,
                subject_id=progress_subject(goal.id),
                period_key=f"progress:{iso_week_key(now)}",
                title=f"Weekly Goal Update: {goal.name}",
                message=f"You're {goal.progress:.1f}% towards your \"{goal.name}\" goal. Keep saving!",
                payload={
                    "goal_id": goal.id,
                    "type": WEEKLY_PROGRESS,
                    "current_amount": goal.current_amount,
                    "target_amount": goal.target_amount,
                    "progress": round(goal.progress, 2),
                },
                expires_at=now + PROGRESS_REMINDER_COOLDOWN,
                action_url=f"/savings/{goal.id}",
            )
        )
    return intents


# --- Transactions ---

def _trailing_median(history: List[Transaction], exclude_id: str, policy: AnomalyPolicy) -> Optional[float]:
    amounts = pd.Series(
        [abs(t.amount) for t in history if t.is_expense and t.id != exclude_id], dtype=float
    )
    if len(amounts) < policy.min_history:
        return None
    return float(amounts.median())


def transaction_intents(
    recent: Iterable[Transaction],
    history: Iterable[Transaction],
    preferences: NotificationPreferences,
    now: datetime,
    policy: AnomalyPolicy = AnomalyPolicy(),
) -> List[AlertIntent]:
    """Large-amount and unusual-spending alerts for newly observed expenses.

    A transaction is unusual when its absolute amount exceeds
    ``policy.multiplier`` times the median of the trailing expense history
    (the transaction itself excluded).
    """
    if not preferences.transaction_alerts:
        return []

    history = list(history)
    seen = set()
    intents = []
    for txn in sorted(recent, key=lambda t: (t.observed_at, t.id)):
        if not txn.is_expense or txn.id in seen:
            continue
        seen.add(txn.id)
        amount = abs(txn.amount)
        payload = {
            "transaction_id": txn.id,
            "amount": amount,
            "description": txn.description,
            "category": txn.category_name,
        }

        if amount >= preferences.transaction_min_amount:
            intents.append(
                AlertIntent(
                    type=TRANSACTION_ALERT,
                    subject_id=txn.id,
                    period_key=LARGE_AMOUNT,
                    title="Large Transaction Alert",
                    message=f'You made a {_money(amount)} expense: "{txn.description}"',
                    payload={**payload, "type": LARGE_AMOUNT},
                    expires_at=now + TRANSACTION_ALERT_TTL,
                    action_url=f"/transactions/{txn.id}",
                )
            )

        if not preferences.unusual_spending:
            continue
        median = _trailing_median(history, txn.id, policy)
        if median is None or amount <= policy.multiplier * median:
            continue
        intents.append(
            AlertIntent(
                type=TRANSACTION_ALERT,
                subject_id=txn.id,
                period_key=UNUSUAL_SPENDING,
                title="Unusual Spending Detected",
                message=(
                    f'Unusual expense of {_money(amount)} for "{txn.description}" '
                    f"in {txn.category_name or 'Uncategorized'}"
                ),
                payload={**payload, "type": UNUSUAL_SPENDING, "median": median},
                expires_at=now + TRANSACTION_ALERT_TTL,
                action_url=f"/transactions/{txn.id}",
            )
        )
    return intents


def evaluate(
    snapshots: Iterable[BudgetSnapshot],
    goals: Iterable[Goal],
    recent: Iterable[Transaction],
    history: Iterable[Transaction],
    preferences: NotificationPreferences,
    now: datetime,
    last_reminded: Optional[Mapping[str, datetime]] = None,
    last_progress_reminded: Optional[Mapping[str, datetime]] = None,
    policy: AnomalyPolicy = AnomalyPolicy(),
) -> List[AlertIntent]:
    """All rules for one user: budget intents, then goal, then transaction intents."""
    intents: List[AlertIntent] = []
    for snapshot in sorted(snapshots, key=lambda s: s.budget.id):
        intents.extend(budget_threshold_intents(snapshot, preferences))
    intents.extend(goal_reminder_intents(goals, preferences, now, last_reminded, last_progress_reminded))
    intents.extend(transaction_intents(recent, history, preferences, now, policy))
    return intents

