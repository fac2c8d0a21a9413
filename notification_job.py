"""
notification_job.py
-------------------
Evaluate alerting rules for every active user and store the resulting
notifications. Meant to be triggered hourly by a scheduler, or through the
trigger endpoint in ``server.py``.

The job keeps no state between runs: notification dedup keys are its only
memory, so it can be re-run at any point, including after a crash mid-run.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import alerts
from budget_metrics import load_budget_progress
from clock import SystemClock, current_period
from config import Settings, configure_logging, load_settings
from dispatcher import NotificationDispatcher
from domain import BUDGET_ALERT, GOAL_REMINDER, Notification, NotificationPreferences
from errors import ConfigurationError, DataUnavailableError, ValidationError
from repository import Found, Repository, StoreError

logger = logging.getLogger(__name__)

FETCHING = "fetching"
EVALUATING = "evaluating"
AGGREGATING = "aggregating"
DONE = "done"
FAILED = "failed"


@dataclass
class UserOutcome:
    user_id: str
    ok: bool
    created: int = 0
    skipped: int = 0
    suppressed: int = 0
    dispatch_failures: int = 0
    skipped_budgets: int = 0
    error: Optional[str] = None


@dataclass
class RunReport:
    run_id: str
    started_at: datetime
    state: str = FETCHING
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    users_total: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: Dict[str, str] = field(default_factory=dict)
    notifications_created: int = 0
    notifications_skipped: int = 0
    notifications_suppressed: int = 0
    dispatch_failures: int = 0

    @property
    def ok(self) -> bool:
        """Whether the user population could be fetched; per-user failures don't count."""
        return self.state != FAILED

    def record(self, outcome: UserOutcome):
        if outcome.ok:
            self.succeeded += 1
        else:
            self.failed += 1
            self.failures[outcome.user_id] = outcome.error or "dispatch failures"
        self.notifications_created += outcome.created
        self.notifications_skipped += outcome.skipped
        self.notifications_suppressed += outcome.suppressed
        self.dispatch_failures += outcome.dispatch_failures

    def as_dict(self) -> dict:
        data = asdict(self)
        data["ok"] = self.ok
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


def supervise(user_id: str, task: Callable[[str], UserOutcome]) -> UserOutcome:
    """Run ``task`` for one user; any exception becomes a failed outcome.

    This is the per-user isolation boundary: nothing raised here reaches the
    other users of the run.
    """
    try:
        return task(user_id)
    except Exception as exc:
        logger.exception("Notification checks failed for user %s", user_id)
        return UserOutcome(user_id=user_id, ok=False, error=f"{type(exc).__name__}: {exc}")


class NotificationJob:
    def __init__(self, repository: Repository, clock=None, settings: Optional[Settings] = None):
        self.repository = repository
        self.clock = clock or SystemClock()
        self.settings = settings or Settings()
        self.dispatcher = NotificationDispatcher(repository, self.clock, read=self._read)
        self.policy = alerts.AnomalyPolicy(
            multiplier=self.settings.anomaly_multiplier,
            min_history=self.settings.anomaly_min_history,
        )

    # --- Reads ---

    def _read(self, fn, *args):
        """Call an idempotent repository read, retrying on store failures."""
        attempts = max(1, self.settings.read_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args)
            except DataUnavailableError as exc:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Read %s failed (attempt %d/%d): %s", getattr(fn, "__name__", fn), attempt, attempts, exc
                )

    def _latest(self, owner: str, type: str, subject_id: str, now: datetime) -> Optional[Notification]:
        def find_latest_notification():
            result = self.repository.find_latest_notification(owner, type, subject_id, now)
            if isinstance(result, StoreError):
                raise DataUnavailableError(result.reason)
            return result

        result = self._read(find_latest_notification)
        if isinstance(result, Found):
            return result.notification
        return None

    def _notified(self, owner: str, type: str, subject_id: str, period_key: str, now: datetime) -> bool:
        def find_notification():
            result = self.repository.find_notification(owner, type, subject_id, period_key, now)
            if isinstance(result, StoreError):
                raise DataUnavailableError(result.reason)
            return result

        return isinstance(self._read(find_notification), Found)

    def _last_notified_threshold(
        self, owner: str, budget_id: str, period, thresholds: List[float], now: datetime
    ) -> float:
        """Highest threshold of ``period`` below which every alert is stored.

        The scan stops at the first threshold with no stored alert, so an
        alert whose write failed in an earlier run is proposed again.
        """
        last = 0.0
        for threshold in thresholds:
            period_key = alerts.threshold_period_key(period, threshold)
            if not self._notified(owner, BUDGET_ALERT, budget_id, period_key, now):
                break
            last = threshold
        return last

    def _budget_snapshots(self, user_id: str, preferences: NotificationPreferences, now: datetime) -> tuple:
        snapshots = []
        skipped = 0
        for budget in self._read(self.repository.get_budgets_with_category, user_id):
            if not budget.has_started(now):
                logger.debug("Budget %s for user %s starts on %s", budget.id, user_id, budget.start_date)
                continue
            try:
                progress = load_budget_progress(self.repository, budget, now, read=self._read)
            except (ConfigurationError, ValidationError) as exc:
                logger.warning("Skipping budget %s for user %s: %s", budget.id, user_id, exc)
                skipped += 1
                continue
            if progress.misconfigured:
                logger.warning("Budget %s for user %s has a zero amount", budget.id, user_id)
                skipped += 1
                continue
            period = current_period(budget, now)
            last_notified = self._last_notified_threshold(
                user_id, budget.id, period, preferences.budget_thresholds, now
            )
            snapshots.append(alerts.BudgetSnapshot(budget, period, progress, last_notified))
        return snapshots, skipped

    def _reminder_state(self, user_id: str, goals, now: datetime) -> tuple:
        last_reminded = {}
        last_progress = {}
        for goal in goals:
            if goal.current_amount >= goal.target_amount:
                continue
            latest = self._latest(user_id, GOAL_REMINDER, goal.id, now)
            if latest is not None:
                last_reminded[goal.id] = latest.created_at
            latest = self._latest(user_id, GOAL_REMINDER, alerts.progress_subject(goal.id), now)
            if latest is not None:
                last_progress[goal.id] = latest.created_at
        return last_reminded, last_progress

    def _transactions(self, user_id: str, now: datetime) -> tuple:
        start = (now - timedelta(days=self.settings.anomaly_history_days)).date()
        end = now.date() + timedelta(days=1)
        history = self._read(self.repository.get_transactions, user_id, (start, end), None)
        observed_since = now - timedelta(hours=self.settings.transaction_lookback_hours)
        recent = [t for t in history if t.observed_at >= observed_since]
        return recent, history

    # --- Per user ---

    def evaluate_user(self, user_id: str) -> UserOutcome:
        """read -> calculate -> evaluate -> dispatch, sequentially, for one user."""
        now = self.clock.now()
        preferences: NotificationPreferences = self._read(self.repository.get_notification_preferences, user_id)

        snapshots, skipped_budgets = [], 0
        if preferences.budget_alerts:
            snapshots, skipped_budgets = self._budget_snapshots(user_id, preferences, now)

        goals, last_reminded, last_progress = [], {}, {}
        if preferences.goal_reminders:
            goals = self._read(self.repository.get_goals, user_id)
            last_reminded, last_progress = self._reminder_state(user_id, goals, now)

        recent, history = [], []
        if preferences.transaction_alerts:
            recent, history = self._transactions(user_id, now)

        intents = alerts.evaluate(
            snapshots,
            goals,
            recent,
            history,
            preferences,
            now,
            last_reminded=last_reminded,
            last_progress_reminded=last_progress,
            policy=self.policy,
        )
        result = self.dispatcher.dispatch(user_id, intents, preferences)
        logger.info(
            "User %s: %d intents, %d created, %d duplicates, %d failed",
            user_id, len(intents), len(result.created), result.skipped, len(result.failures),
        )
        return UserOutcome(
            user_id=user_id,
            ok=result.ok,
            created=len(result.created),
            skipped=result.skipped,
            suppressed=result.suppressed,
            dispatch_failures=len(result.failures),
            skipped_budgets=skipped_budgets,
            error=None if result.ok else f"{len(result.failures)} notification(s) could not be stored",
        )

    # --- Run ---

    async def run(self) -> RunReport:
        """Run the job for the whole active population.

        Users are evaluated in worker threads, at most ``max_workers`` at a
        time. If the run is cancelled, users already in a worker finish
        their (single-record, atomic) writes and the rest are never started.
        """
        report = RunReport(run_id=str(uuid.uuid4()), started_at=self.clock.now())
        try:
            users: List[str] = await asyncio.to_thread(self._read, self.repository.list_active_users)
        except DataUnavailableError as exc:
            logger.error("Could not fetch active users: %s", exc)
            report.state = FAILED
            report.error = str(exc)
            report.finished_at = self.clock.now()
            return report

        report.state = EVALUATING
        report.users_total = len(users)
        logger.info("Processing notifications for %d users (run %s)", len(users), report.run_id)

        semaphore = asyncio.Semaphore(max(1, self.settings.max_workers))

        async def bounded(user_id: str) -> UserOutcome:
            async with semaphore:
                return await asyncio.to_thread(supervise, user_id, self.evaluate_user)

        outcomes = await asyncio.gather(*(bounded(user_id) for user_id in users))

        report.state = AGGREGATING
        for outcome in outcomes:
            report.record(outcome)
        report.state = DONE
        report.finished_at = self.clock.now()
        logger.info(
            "Notification job %s finished: %d succeeded, %d failed, %d notifications created",
            report.run_id, report.succeeded, report.failed, report.notifications_created,
        )
        return report


async def run_notification_job(
    repository: Repository, clock=None, settings: Optional[Settings] = None
) -> RunReport:
    return await NotificationJob(repository, clock, settings).run()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create budget, goal and transaction notifications for all users")
    parser.add_argument("--max-workers", type=int, help="Users evaluated concurrently")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)
    if args.max_workers:
        settings = Settings(**{**asdict(settings), "max_workers": args.max_workers})

    from database import init_db, make_engine, make_session_factory
    from repository import SqlAlchemyRepository

    engine = make_engine(args.database_url or settings.database_url)
    init_db(engine)
    repository = SqlAlchemyRepository(make_session_factory(engine))
    report = asyncio.run(run_notification_job(repository, settings=settings))
    print(json.dumps(report.as_dict(), indent=2))
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
