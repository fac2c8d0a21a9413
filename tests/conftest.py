from datetime import date, datetime

import pytest

import database
from repository import SqlAlchemyRepository


class Seeder:
    """Insert store rows for tests without going through the engine."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _add(self, row):
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
            db.refresh(row)
            return row.id if hasattr(row, "id") else row.user_id
        finally:
            db.close()

    def user(self, username, active=True, preferences=None):
        user_id = self._add(database.User(username=username, onboarding_completed=active))
        if preferences is not None:
            self._add(database.NotificationPreference(user_id=user_id, settings=preferences))
        return user_id

    def category(self, user_id, name="Groceries"):
        return self._add(database.Category(user_id=user_id, name=name))

    def budget(self, user_id, amount=500.0, period="monthly", start=date(2026, 9, 1), end=None,
               category_id=None, name="Groceries"):
        return self._add(database.Budget(
            user_id=user_id,
            name=name,
            amount=amount,
            period=period,
            start_date=start,
            end_date=end,
            category_id=category_id,
        ))

    def expense(self, user_id, amount, day, category_id=None, created_at=None, description="Store",
                type="expense"):
        return self._add(database.Transaction(
            user_id=user_id,
            amount=-abs(amount),
            type=type,
            date=day,
            category_id=category_id,
            description=description,
            created_at=created_at or datetime(2000, 1, 1),
        ))

    def goal(self, user_id, target=1000.0, current=100.0, target_date=None, name="Holiday"):
        return self._add(database.Goal(
            user_id=user_id,
            name=name,
            target_amount=target,
            current_amount=current,
            target_date=target_date,
        ))

    def notifications(self, user_id=None):
        db = self.session_factory()
        try:
            query = db.query(database.Notification)
            if user_id is not None:
                query = query.filter(database.Notification.user_id == user_id)
            return query.order_by(database.Notification.created_at, database.Notification.id).all()
        finally:
            db.close()


@pytest.fixture
def session_factory(tmp_path):
    engine = database.make_engine(f"sqlite:///{tmp_path / 'alerts.db'}")
    database.init_db(engine)
    yield database.make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return SqlAlchemyRepository(session_factory)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
