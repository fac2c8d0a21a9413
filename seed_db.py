from datetime import date, datetime, timedelta

from database import Account, Budget, Category, Goal, NotificationPreference, SessionLocal, Transaction, User, init_db


def seed_users(db=None):
    """Create a small demo population so the notification job has something to chew on."""
    owns_session = db is None
    db = db or SessionLocal()
    init_db(db.get_bind())

    # Check if users exist
    if db.query(User).first():
        print("Users already exist. Skipping seed.")
        if owns_session:
            db.close()
        return

    today = date.today()
    now = datetime.utcnow()

    admin = User(username="admin", onboarding_completed=True)
    family = User(username="brother", onboarding_completed=True)
    pending = User(username="new-signup", onboarding_completed=False)
    db.add_all([admin, family, pending])
    db.flush()

    for user in (admin, family):
        checking = Account(user_id=user.id, name="Checking", type="checking", currency="USD", opening_balance=2500)
        groceries = Category(user_id=user.id, name="Groceries")
        db.add_all([checking, groceries])
        db.flush()

        db.add(Budget(
            user_id=user.id,
            category_id=groceries.id,
            name="Groceries",
            amount=500,
            period="monthly",
            start_date=today.replace(day=1),
        ))
        db.add(Budget(user_id=user.id, name="Everything", amount=2000, period="monthly", start_date=today.replace(day=1)))
        db.add(Goal(
            user_id=user.id,
            name="Emergency fund",
            target_amount=3000,
            current_amount=1200,
            target_date=today + timedelta(days=5),
        ))
        for offset, amount in enumerate([42.5, 18.0, 63.2, 25.0, 31.9]):
            db.add(Transaction(
                user_id=user.id,
                account_id=checking.id,
                category_id=groceries.id,
                amount=-amount,
                type="expense",
                date=today - timedelta(days=offset),
                description="Grocery store",
                created_at=now - timedelta(days=offset),
            ))
        db.add(Transaction(
            user_id=user.id,
            account_id=checking.id,
            category_id=groceries.id,
            amount=-420.0,
            type="expense",
            date=today,
            description="Bulk warehouse run",
            created_at=now,
        ))
        db.add(NotificationPreference(user_id=user.id, settings={"budget_thresholds": [80, 90, 100]}))

    db.commit()
    print("Database initialized with demo users, budgets and goals.")
    if owns_session:
        db.close()

if __name__ == "__main__":
    seed_users()
