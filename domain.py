"""Domain records read and written by the alerting engine.

Records coming out of the store are plain frozen dataclasses. Notification
preferences are a pydantic model so the loosely-typed settings bag kept in
the store is validated once, at the repository boundary.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Transaction types
INCOME = "income"
EXPENSE = "expense"
TRANSFER = "transfer"
TRANSACTION_TYPES = (INCOME, EXPENSE, TRANSFER)

# Budget periods
WEEKLY = "weekly"
MONTHLY = "monthly"
YEARLY = "yearly"
BUDGET_PERIODS = (WEEKLY, MONTHLY, YEARLY)

ACCOUNT_TYPES = ("checking", "savings", "credit", "investment")

# Notification types
BUDGET_ALERT = "budget_alert"
GOAL_REMINDER = "goal_reminder"
TRANSACTION_ALERT = "transaction_alert"
OTHER = "other"
NOTIFICATION_TYPES = (BUDGET_ALERT, GOAL_REMINDER, TRANSACTION_ALERT, OTHER)


@dataclass(frozen=True)
class Account:
    id: str
    owner: str
    name: str
    currency: str
    type: str
    opening_balance: float = 0.0


@dataclass(frozen=True)
class Transaction:
    id: str
    owner: str
    account_id: str
    amount: float
    type: str
    date: date
    description: str = ""
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_expense(self) -> bool:
        return self.type == EXPENSE

    @property
    def observed_at(self) -> datetime:
        """When the transaction entered the store, falling back to its date."""
        if self.created_at is not None:
            return self.created_at
        return datetime.combine(self.date, datetime.min.time())


@dataclass(frozen=True)
class Budget:
    id: str
    owner: str
    name: str
    amount: float
    period: str
    start_date: date
    end_date: Optional[date] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None

    @property
    def is_bounded(self) -> bool:
        return self.end_date is not None

    def has_started(self, now: datetime) -> bool:
        return self.start_date <= now.date()


@dataclass(frozen=True)
class Goal:
    id: str
    owner: str
    name: str
    target_amount: float
    current_amount: float = 0.0
    target_date: Optional[date] = None

    @property
    def progress(self) -> float:
        if self.target_amount <= 0:
            return 0.0
        return self.current_amount / self.target_amount * 100


@dataclass(frozen=True)
class BudgetProgress:
    budget_id: str
    name: str
    category_name: str
    spent: float
    remaining: float
    percentage: float
    is_over_budget: bool
    spending_velocity: float
    projected_overspend_date: Optional[datetime]
    days_remaining: int
    period_comparison: Optional[float]
    period_start: datetime
    period_end: datetime
    misconfigured: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "budgetId": self.budget_id,
            "name": self.name,
            "categoryName": self.category_name,
            "spent": self.spent,
            "remaining": self.remaining,
            "percentage": self.percentage,
            "isOverBudget": self.is_over_budget,
            "spendingVelocity": self.spending_velocity,
            "projectedOverspendDate": (
                self.projected_overspend_date.isoformat() if self.projected_overspend_date else None
            ),
            "daysRemaining": self.days_remaining,
            "periodComparison": self.period_comparison,
            "periodStart": self.period_start.isoformat(),
            "periodEnd": self.period_end.isoformat(),
            "misconfigured": self.misconfigured,
        }


@dataclass(frozen=True)
class Notification:
    id: Optional[str]
    owner: str
    type: str
    title: str
    message: str
    subject_id: str
    period_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    action_url: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "subject_id": self.subject_id,
            "period_key": self.period_key,
            "data": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "action_url": self.action_url,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class AlertIntent:
    """A proposal to notify, prior to dedup and preference gating."""

    type: str
    subject_id: str
    period_key: str
    title: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    action_url: Optional[str] = None

    def dedup_key(self, owner: str) -> Tuple[str, str, str, str]:
        return (owner, self.type, self.subject_id, self.period_key)


class NotificationPreferences(BaseModel):
    """Typed notification settings for one user."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    owner: str = ""
    budget_alerts: bool = True
    goal_reminders: bool = True
    transaction_alerts: bool = True
    email_notifications: bool = False
    budget_thresholds: List[float] = Field(default_factory=lambda: [80.0, 90.0, 100.0])
    goal_reminder_days: int = Field(7, ge=0, le=365)
    goal_reminder_frequency: str = "weekly"
    transaction_min_amount: float = Field(100.0, gt=0)
    unusual_spending: bool = True

    @field_validator("budget_thresholds")
    @classmethod
    def _check_thresholds(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("at least one budget threshold is required")
        for threshold in value:
            if threshold <= 0 or threshold > 1000:
                raise ValueError(f"budget threshold {threshold} must be in (0, 1000]")
        return sorted(set(value))

    @field_validator("goal_reminder_frequency")
    @classmethod
    def _check_frequency(cls, value: str) -> str:
        value = value.lower()
        if value not in ("weekly", "never"):
            raise ValueError(f"unknown goal reminder frequency {value!r}")
        return value

    def allows(self, notification_type: str) -> bool:
        if notification_type == BUDGET_ALERT:
            return self.budget_alerts
        if notification_type == GOAL_REMINDER:
            return self.goal_reminders
        if notification_type == TRANSACTION_ALERT:
            return self.transaction_alerts
        return True
