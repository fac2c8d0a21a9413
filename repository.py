"""Repository contract over the backing store and its SQLAlchemy implementation.

Lookups that may legitimately find nothing return a tagged result
(``Found``, ``NotFound`` or ``StoreError``) instead of raising, so callers
branch on the result type rather than sniffing error codes.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import database
import domain
from errors import DataUnavailableError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Found:
    notification: domain.Notification


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class StoreError:
    reason: str


LookupResult = Union[Found, NotFound, StoreError]
DateRange = Tuple[date, date]


class Repository(ABC):
    """Capability interface the engine uses to reach the data store.

    ``DateRange`` values are half-open: ``(start, end)`` covers
    ``start <= date < end``.
    """

    @abstractmethod
    def list_active_users(self) -> List[str]:
        ...

    @abstractmethod
    def get_budgets_with_category(self, user_id: str) -> List[domain.Budget]:
        ...

    @abstractmethod
    def get_transactions(
        self, user_id: str, date_range: DateRange, category_id: Optional[str] = None
    ) -> List[domain.Transaction]:
        ...

    @abstractmethod
    def get_goals(self, user_id: str) -> List[domain.Goal]:
        ...

    @abstractmethod
    def get_notification_preferences(self, user_id: str) -> domain.NotificationPreferences:
        ...

    @abstractmethod
    def find_notification(
        self, owner: str, type: str, subject_id: str, period_key: str, now: datetime
    ) -> LookupResult:
        ...

    @abstractmethod
    def find_latest_notification(
        self, owner: str, type: str, subject_id: str, now: datetime
    ) -> LookupResult:
        ...

    @abstractmethod
    def create_notification(self, notification: domain.Notification) -> Tuple[domain.Notification, bool]:
        """Store ``notification``; returns the stored record and whether it is new.

        When the dedup key is already taken the existing record comes back
        with ``False``.
        """


# --- Row conversion ---

def _require(row, *names):
    missing = [name for name in names if getattr(row, name, None) is None]
    if missing:
        raise ValidationError(f"{type(row).__name__} {row.id} is missing {', '.join(missing)}")


def to_transaction(row: database.Transaction) -> domain.Transaction:
    _require(row, "id", "user_id", "amount", "type", "date")
    if row.type not in domain.TRANSACTION_TYPES:
        raise ValidationError(f"Transaction {row.id} has unknown type {row.type!r}")
    return domain.Transaction(
        id=row.id,
        owner=row.user_id,
        account_id=row.account_id,
        amount=float(row.amount),
        type=row.type,
        date=row.date,
        description=row.description or "",
        category_id=row.category_id,
        category_name=row.category.name if row.category is not None else None,
        created_at=row.created_at,
    )


def to_budget(row: database.Budget) -> domain.Budget:
    _require(row, "id", "user_id", "amount", "start_date")
    if row.period not in domain.BUDGET_PERIODS and row.end_date is None:
        raise ValidationError(f"Budget {row.id} has unknown period {row.period!r}")
    return domain.Budget(
        id=row.id,
        owner=row.user_id,
        name=row.name or "Budget",
        amount=float(row.amount),
        period=row.period,
        start_date=row.start_date,
        end_date=row.end_date,
        category_id=row.category_id,
        category_name=row.category.name if row.category is not None else None,
    )


def to_goal(row: database.Goal) -> domain.Goal:
    _require(row, "id", "user_id", "target_amount")
    if row.target_amount <= 0:
        raise ValidationError(f"Goal {row.id} has non-positive target amount")
    return domain.Goal(
        id=row.id,
        owner=row.user_id,
        name=row.name or "Goal",
        target_amount=float(row.target_amount),
        current_amount=float(row.current_amount or 0.0),
        target_date=row.target_date,
    )


def to_notification(row: database.Notification) -> domain.Notification:
    return domain.Notification(
        id=row.id,
        owner=row.user_id,
        type=row.type,
        title=row.title,
        message=row.message or "",
        subject_id=row.subject_id,
        period_key=row.period_key,
        payload=dict(row.data or {}),
        created_at=row.created_at,
        read_at=row.read_at,
        action_url=row.action_url,
        expires_at=row.expires_at,
    )


def _convert_all(rows, convert):
    records = []
    for row in rows:
        try:
            records.append(convert(row))
        except ValidationError as exc:
            logger.warning("Skipping malformed record: %s", exc)
    return records


class SqlAlchemyRepository(Repository):
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or database.SessionLocal

    @contextmanager
    def _session(self, action: str):
        db: Session = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            db.rollback()
            raise DataUnavailableError(f"Failed to {action}: {exc}") from exc
        finally:
            db.close()

    @staticmethod
    def _unexpired(query, now: datetime):
        return query.filter(
            or_(database.Notification.expires_at.is_(None), database.Notification.expires_at > now)
        )

    # --- Engine reads ---

    def list_active_users(self) -> List[str]:
        with self._session("list active users") as db:
            rows = (
                db.query(database.User.id)
                .filter(database.User.onboarding_completed.is_(True))
                .order_by(database.User.id)
                .all()
            )
            return [row.id for row in rows]

    def get_budgets_with_category(self, user_id: str) -> List[domain.Budget]:
        with self._session(f"load budgets for {user_id}") as db:
            rows = (
                db.query(database.Budget)
                .filter(database.Budget.user_id == user_id)
                .order_by(database.Budget.id)
                .all()
            )
            return _convert_all(rows, to_budget)

    def get_budget(self, user_id: str, budget_id: str) -> Optional[domain.Budget]:
        with self._session(f"load budget {budget_id}") as db:
            row = (
                db.query(database.Budget)
                .filter(database.Budget.user_id == user_id, database.Budget.id == budget_id)
                .first()
            )
            return to_budget(row) if row is not None else None

    def get_transactions(
        self, user_id: str, date_range: DateRange, category_id: Optional[str] = None
    ) -> List[domain.Transaction]:
        start, end = date_range
        with self._session(f"load transactions for {user_id}") as db:
            query = db.query(database.Transaction).filter(
                database.Transaction.user_id == user_id,
                database.Transaction.date >= start,
                database.Transaction.date < end,
            )
            if category_id is not None:
                query = query.filter(database.Transaction.category_id == category_id)
            rows = query.order_by(database.Transaction.date, database.Transaction.id).all()
            return _convert_all(rows, to_transaction)

    def get_goals(self, user_id: str) -> List[domain.Goal]:
        with self._session(f"load goals for {user_id}") as db:
            rows = (
                db.query(database.Goal)
                .filter(database.Goal.user_id == user_id)
                .order_by(database.Goal.id)
                .all()
            )
            return _convert_all(rows, to_goal)

    def get_notification_preferences(self, user_id: str) -> domain.NotificationPreferences:
        with self._session(f"load notification preferences for {user_id}") as db:
            row = db.get(database.NotificationPreference, user_id)
            settings = dict(row.settings or {}) if row is not None else {}
        settings.pop("owner", None)
        try:
            return domain.NotificationPreferences(**settings, owner=user_id)
        except PydanticValidationError as exc:
            logger.warning("Invalid notification preferences for %s, using defaults: %s", user_id, exc)
            return domain.NotificationPreferences(owner=user_id)

    # --- Notification lookups ---

    def find_notification(
        self, owner: str, type: str, subject_id: str, period_key: str, now: datetime
    ) -> LookupResult:
        try:
            with self._session("look up notification") as db:
                query = db.query(database.Notification).filter(
                    database.Notification.user_id == owner,
                    database.Notification.type == type,
                    database.Notification.subject_id == subject_id,
                    database.Notification.period_key == period_key,
                )
                row = self._unexpired(query, now).first()
                return Found(to_notification(row)) if row is not None else NotFound()
        except DataUnavailableError as exc:
            return StoreError(str(exc))

    def find_latest_notification(
        self, owner: str, type: str, subject_id: str, now: datetime
    ) -> LookupResult:
        try:
            with self._session("look up latest notification") as db:
                query = db.query(database.Notification).filter(
                    database.Notification.user_id == owner,
                    database.Notification.type == type,
                    database.Notification.subject_id == subject_id,
                )
                row = (
                    self._unexpired(query, now)
                    .order_by(database.Notification.created_at.desc())
                    .first()
                )
                return Found(to_notification(row)) if row is not None else NotFound()
        except DataUnavailableError as exc:
            return StoreError(str(exc))

    def create_notification(self, notification: domain.Notification) -> Tuple[domain.Notification, bool]:
        with self._session("create notification") as db:
            row = database.Notification(
                user_id=notification.owner,
                type=notification.type,
                title=notification.title,
                message=notification.message,
                subject_id=notification.subject_id,
                period_key=notification.period_key,
                data=notification.payload,
                action_url=notification.action_url,
                created_at=notification.created_at,
                read_at=notification.read_at,
                expires_at=notification.expires_at,
            )
            if notification.id:
                row.id = notification.id
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # The dedup key is taken, by a concurrent run or an expired notification.
                db.rollback()
                existing = (
                    db.query(database.Notification)
                    .filter(
                        database.Notification.user_id == notification.owner,
                        database.Notification.type == notification.type,
                        database.Notification.subject_id == notification.subject_id,
                        database.Notification.period_key == notification.period_key,
                    )
                    .first()
                )
                if existing is None:
                    raise
                logger.info("Dedup key of notification %s is already taken", existing.id)
                return to_notification(existing), False
            db.refresh(row)
            return to_notification(row), True

    # --- Notification management (owner scoped) ---

    def list_notifications(
        self,
        owner: str,
        limit: int = 50,
        offset: int = 0,
        read: Optional[bool] = None,
        type: Optional[str] = None,
    ) -> Tuple[List[domain.Notification], int]:
        with self._session(f"list notifications for {owner}") as db:
            query = db.query(database.Notification).filter(database.Notification.user_id == owner)
            if read is True:
                query = query.filter(database.Notification.read_at.isnot(None))
            elif read is False:
                query = query.filter(database.Notification.read_at.is_(None))
            if type is not None:
                query = query.filter(database.Notification.type == type)
            total = query.count()
            rows = (
                query.order_by(database.Notification.created_at.desc(), database.Notification.id)
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [to_notification(row) for row in rows], total

    def update_notification(
        self, owner: str, notification_id: str, changes: Dict[str, Any], now: datetime
    ) -> Optional[domain.Notification]:
        with self._session(f"update notification {notification_id}") as db:
            row = (
                db.query(database.Notification)
                .filter(database.Notification.user_id == owner, database.Notification.id == notification_id)
                .first()
            )
            if row is None:
                return None
            if "read" in changes:
                if not changes["read"]:
                    row.read_at = None
                elif row.read_at is None:
                    row.read_at = now
            for field in ("title", "message", "action_url", "expires_at"):
                if field in changes:
                    setattr(row, field, changes[field])
            if "data" in changes:
                row.data = changes["data"] or {}
            db.commit()
            db.refresh(row)
            return to_notification(row)

    def delete_notification(self, owner: str, notification_id: str) -> bool:
        with self._session(f"delete notification {notification_id}") as db:
            deleted = (
                db.query(database.Notification)
                .filter(database.Notification.user_id == owner, database.Notification.id == notification_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted > 0

    def delete_all_notifications(self, owner: str) -> int:
        with self._session(f"clear notifications for {owner}") as db:
            deleted = (
                db.query(database.Notification)
                .filter(database.Notification.user_id == owner)
                .delete(synchronize_session=False)
            )
            db.commit()
            return deleted

    def mark_all_read(self, owner: str, now: datetime) -> int:
        with self._session(f"mark notifications read for {owner}") as db:
            marked = (
                db.query(database.Notification)
                .filter(database.Notification.user_id == owner, database.Notification.read_at.is_(None))
                .update({database.Notification.read_at: now}, synchronize_session=False)
            )
            db.commit()
            return marked

    def update_notification_preferences(
        self, owner: str, changes: Dict[str, Any]
    ) -> domain.NotificationPreferences:
        """Merge ``changes`` into the stored settings after validating the result."""
        with self._session(f"update notification preferences for {owner}") as db:
            row = db.get(database.NotificationPreference, owner)
            current = dict(row.settings or {}) if row is not None else {}
            merged = {**current, **changes}
            merged.pop("owner", None)
            try:
                preferences = domain.NotificationPreferences(**merged, owner=owner)
            except PydanticValidationError as exc:
                raise ValidationError(str(exc)) from exc
            stored = preferences.model_dump(exclude={"owner"})
            if row is None:
                db.add(database.NotificationPreference(user_id=owner, settings=stored))
            else:
                row.settings = stored
            db.commit()
            return preferences
