import os
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Database Setup
# Default to local SQLite, but allow override for AWS RDS (Postgres)
DB_URL = os.getenv("DATABASE_URL", "sqlite:///finance_tracker.db")

Base = declarative_base()


def _new_id():
    return str(uuid.uuid4())


def make_engine(url: str):
    return create_engine(url, connect_args={"check_same_thread": False} if "sqlite" in url else {})


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine(DB_URL)
SessionLocal = make_session_factory(engine)

# --- Models ---

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    username = Column(String, unique=True, index=True)
    currency = Column(String, default="USD")
    onboarding_completed = Column(Boolean, default=False)  # only onboarded users are "active"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String)
    currency = Column(String, default="USD")
    type = Column(String)  # checking, savings, credit, investment
    opening_balance = Column(Float, default=0.0)


class Category(Base):
    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    account_id = Column(String, ForeignKey("accounts.id"))
    category_id = Column(String, ForeignKey("categories.id"), nullable=True)
    amount = Column(Float)
    type = Column(String)  # income, expense, transfer
    date = Column(Date, index=True)
    description = Column(String, default="")
    created_at = Column(DateTime, default=datetime.utcnow)

    category = relationship("Category")


class Budget(Base):
    __tablename__ = "budgets"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    category_id = Column(String, ForeignKey("categories.id"), nullable=True)  # null = all categories
    name = Column(String)
    amount = Column(Float)
    period = Column(String)  # weekly, monthly, yearly
    start_date = Column(Date)
    end_date = Column(Date, nullable=True)

    category = relationship("Category")


class Goal(Base):
    __tablename__ = "goals"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String)
    target_amount = Column(Float)
    current_amount = Column(Float, default=0.0)
    target_date = Column(Date, nullable=True)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    settings = Column(JSON, default=dict)  # validated into domain.NotificationPreferences on read


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("user_id", "type", "subject_id", "period_key", name="uq_notification_dedup"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    type = Column(String, index=True)  # budget_alert, goal_reminder, transaction_alert, other
    title = Column(String)
    message = Column(String)
    subject_id = Column(String)
    period_key = Column(String)
    data = Column(JSON, default=dict)
    action_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    read_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

# --- Init DB ---
def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
