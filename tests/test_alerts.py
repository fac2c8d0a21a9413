from datetime import date, datetime, timedelta

import alerts
from budget_metrics import calculate_budget_progress
from clock import current_period
from domain import BUDGET_ALERT, GOAL_REMINDER, TRANSACTION_ALERT, Budget, Goal, NotificationPreferences, Transaction

NOW = datetime(2026, 9, 16, 10)


def _prefs(**kwargs):
    return NotificationPreferences(owner="u1", **kwargs)


def _snapshot(spent, last_notified=0.0, amount=100.0):
    budget = Budget(id="b1", owner="u1", name="Dining", amount=amount, period="monthly", start_date=date(2026, 1, 1))
    txns = [Transaction(id="t1", owner="u1", account_id="a1", amount=-spent, type="expense", date=date(2026, 9, 2))]
    progress = calculate_budget_progress(budget, txns, [], NOW)
    return alerts.BudgetSnapshot(budget, current_period(budget, NOW), progress, last_notified)


def _txn(txn_id, amount, created_at, description="Shop"):
    return Transaction(id=txn_id, owner="u1", account_id="a1", amount=-amount, type="expense",
                       date=created_at.date(), description=description, created_at=created_at)


# --- Budget thresholds ---

def test_thresholds_fire_once_as_spending_rises():
    prefs = _prefs(budget_thresholds=[80, 100])

    first = alerts.budget_threshold_intents(_snapshot(50), prefs)
    second = alerts.budget_threshold_intents(_snapshot(85), prefs)
    third = alerts.budget_threshold_intents(_snapshot(105, last_notified=80), prefs)

    assert first == []
    assert [i.payload["threshold"] for i in second] == [80]
    assert [i.payload["threshold"] for i in third] == [100]


def test_jumping_past_several_thresholds_fires_each_of_them():
    intents = alerts.budget_threshold_intents(_snapshot(120), _prefs())

    assert [i.period_key for i in intents] == [
        "monthly:2026-09-01@80",
        "monthly:2026-09-01@90",
        "monthly:2026-09-01@100",
    ]
    assert all(i.type == BUDGET_ALERT and i.subject_id == "b1" for i in intents)
    assert intents[0].expires_at == datetime(2026, 10, 1)


def test_threshold_equal_to_percentage_fires():
    intents = alerts.budget_threshold_intents(_snapshot(80), _prefs(budget_thresholds=[80]))

    assert len(intents) == 1
    assert intents[0].payload["percentage"] == 80


def test_disabled_budget_alerts_produce_nothing():
    assert alerts.budget_threshold_intents(_snapshot(150), _prefs(budget_alerts=False)) == []


def test_misconfigured_budget_produces_nothing():
    assert alerts.budget_threshold_intents(_snapshot(10, amount=0), _prefs()) == []


# --- Goals ---

def _goal(target_date, current=400.0, target=1000.0, goal_id="g1"):
    return Goal(id=goal_id, owner="u1", name="Bike", target_amount=target, current_amount=current,
                target_date=target_date)


def test_goal_three_days_away_yields_one_reminder_then_cools_down():
    goal = _goal(NOW.date() + timedelta(days=3))

    intents = alerts.goal_reminder_intents([goal], _prefs(goal_reminder_days=7), NOW)

    assert len(intents) == 1
    assert intents[0].type == GOAL_REMINDER
    assert intents[0].subject_id == "g1"
    assert intents[0].payload["type"] == alerts.DEADLINE_APPROACHING
    assert "3 days" in intents[0].message

    later = NOW + timedelta(hours=1)
    again = alerts.goal_reminder_intents([goal], _prefs(goal_reminder_days=7), later, last_reminded={"g1": NOW})
    assert again == []


def test_goal_reminder_returns_after_cooldown():
    goal = _goal(NOW.date() + timedelta(days=3))
    later = NOW + timedelta(hours=25)

    intents = alerts.goal_reminder_intents([goal], _prefs(), later, last_reminded={"g1": NOW})

    assert len(intents) == 1
    assert intents[0].period_key == f"deadline:{later.date().isoformat()}"


def test_completed_and_past_goals_get_no_deadline_reminder():
    done = _goal(NOW.date() + timedelta(days=2), current=1000.0, goal_id="g1")
    overdue = _goal(NOW.date() - timedelta(days=1), goal_id="g2")

    intents = alerts.goal_reminder_intents([done, overdue], _prefs(goal_reminder_frequency="never"), NOW)

    assert intents == []


def test_distant_goal_gets_weekly_progress_reminder():
    goal = _goal(NOW.date() + timedelta(days=60))

    intents = alerts.goal_reminder_intents([goal], _prefs(), NOW)

    assert len(intents) == 1
    assert intents[0].subject_id == alerts.progress_subject("g1")
    assert intents[0].period_key == "progress:2026-W38"
    assert alerts.goal_reminder_intents([goal], _prefs(), NOW, last_progress_reminded={"g1": NOW}) == []
    assert alerts.goal_reminder_intents([goal], _prefs(goal_reminder_frequency="never"), NOW) == []


# --- Transactions ---

def test_large_transaction_alert():
    recent = [_txn("t1", 150, NOW - timedelta(minutes=10))]

    intents = alerts.transaction_intents(recent, recent, _prefs(transaction_min_amount=100), NOW)

    assert [(i.type, i.period_key) for i in intents] == [(TRANSACTION_ALERT, alerts.LARGE_AMOUNT)]
    assert intents[0].expires_at == NOW + timedelta(hours=24)


def test_unusual_spending_against_trailing_median():
    history = [_txn(f"h{n}", amount, NOW - timedelta(days=n + 1)) for n, amount in enumerate([20, 25, 30, 35])]
    spike = _txn("t1", 95, NOW - timedelta(minutes=5))

    intents = alerts.transaction_intents([spike], history + [spike], _prefs(transaction_min_amount=500), NOW)

    assert [i.period_key for i in intents] == [alerts.UNUSUAL_SPENDING]
    assert intents[0].payload["median"] == 27.5


def test_spending_at_three_times_median_is_not_unusual():
    history = [_txn(f"h{n}", 20, NOW - timedelta(days=n + 1)) for n in range(3)]
    recent = [_txn("t1", 60, NOW)]

    assert alerts.transaction_intents(recent, history + recent, _prefs(), NOW) == []


def test_short_history_never_flags_unusual_spending():
    history = [_txn("h1", 5, NOW - timedelta(days=1))]
    recent = [_txn("t1", 90, NOW)]

    assert alerts.transaction_intents(recent, history + recent, _prefs(), NOW) == []


def test_transaction_alerts_respect_preferences():
    history = [_txn(f"h{n}", 10, NOW - timedelta(days=n + 1)) for n in range(5)]
    recent = [_txn("t1", 500, NOW)]

    assert alerts.transaction_intents(recent, history, _prefs(transaction_alerts=False), NOW) == []
    intents = alerts.transaction_intents(recent, history, _prefs(unusual_spending=False), NOW)
    assert [i.period_key for i in intents] == [alerts.LARGE_AMOUNT]


# --- Combined ---

def test_evaluate_is_deterministic_and_ordered():
    goal = _goal(NOW.date() + timedelta(days=3))
    recent = [_txn("t1", 250, NOW)]
    args = ([_snapshot(95)], [goal], recent, recent, _prefs(), NOW)

    first = alerts.evaluate(*args)
    second = alerts.evaluate(*args)

    assert first == second
    assert [i.type for i in first] == [BUDGET_ALERT, BUDGET_ALERT, GOAL_REMINDER, TRANSACTION_ALERT]
