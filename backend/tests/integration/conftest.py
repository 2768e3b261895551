"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - Tests run against the database in TEST_DATABASE_URL, or in-memory SQLite
    when it is unset (TestingConfig).
  - The app is created once per session using create_app("testing").
  - All tables are created once via db.create_all() at session start.
  - Every test runs inside one pushed application context. A test client
    request reuses that context, so the helpers below, the request handlers
    and the assertions all see the same db.session.
  - Between tests, all rows are deleted in FK-safe order so tests are isolated.

SQLite note:
  pysqlite's own transaction handling breaks SAVEPOINT, which the services
  rely on (begin_nested). The listeners in _enable_sqlite_savepoints hand
  BEGIN back to SQLAlchemy, as the SQLAlchemy SQLite dialect docs describe.

Identity is issued elsewhere; tests mint their own tokens with the testing
JWT_SECRET_KEY.

Helper functions (not fixtures) are provided for common operations:
  - make_user(...)            → user id
  - make_household(...)       → household id (owner added as first member)
  - add_member(...)           → membership id
  - make_account(...)         → account id
  - make_transaction(...)     → transaction id
  - auth_headers(user_id)     → {"Authorization": "Bearer <token>"}
  - make_rule(client, ...)    → HTTP response

These are plain functions (not pytest fixtures) so they can be called with
arbitrary arguments in any test without fixture parameterization overhead.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
from sqlalchemy import event, text

from backend.app import create_app
from backend.app.extensions import db as _db
from backend.app.models.account import FinancialAccount
from backend.app.models.household import Household
from backend.app.models.household_member import HouseholdMember
from backend.app.models.transaction import Transaction
from backend.app.models.user import User

TEST_JWT_SECRET = "testing-secret-key-with-enough-length"

_DELETE_ORDER = (
    "rule_feedback",
    "transaction_overrides",
    "transactions",
    "splitting_rules",
    "financial_accounts",
    "household_members",
    "households",
    "users",
)


def _enable_sqlite_savepoints(engine) -> None:
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        # Disable pysqlite's implicit BEGIN; SQLAlchemy emits it below.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire test session.

    Steps:
      1. Create app with TestingConfig.
      2. On SQLite, install the SAVEPOINT listeners before the first connection.
      3. Run db.create_all() to create all tables.
      4. Yield the app for the test session.
      5. Drop all tables at teardown.
    """
    flask_app = create_app("testing")

    with flask_app.app_context():
        if _db.engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(_db.engine)
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def app_context(app):
    """
    Pushes an application context for the whole test, then deletes all rows.

    autouse=True means this runs around EVERY test in the integration suite
    without needing to be declared in each test function.
    """
    with app.app_context():
        yield

        _db.session.rollback()  # discard any uncommitted state from a failed test
        for table in _DELETE_ORDER:
            _db.session.execute(text(f"DELETE FROM {table}"))
        _db.session.commit()
        _db.session.remove()


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def auth_headers(user_id: int, expires_in: timedelta = timedelta(minutes=15)) -> dict:
    """Returns the Authorization header dict carrying a token for `user_id`."""
    token = jwt.encode(
        {"sub": str(user_id), "exp": datetime.now(timezone.utc) + expires_in},
        TEST_JWT_SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def make_user(name: str = "alice") -> int:
    user = User(display_name=name.title(), email=f"{name}@test.com")
    _db.session.add(user)
    _db.session.commit()
    return user.id


def make_household(owner_id: int, name: str = "Flat 1") -> int:
    """Creates a household with `owner_id` as its first member."""
    household = Household(name=name, created_by_user_id=owner_id)
    _db.session.add(household)
    _db.session.flush()
    _db.session.add(HouseholdMember(household_id=household.id, user_id=owner_id, role="owner"))
    _db.session.commit()
    return household.id


def add_member(household_id: int, user_id: int) -> int:
    membership = HouseholdMember(household_id=household_id, user_id=user_id)
    _db.session.add(membership)
    _db.session.commit()
    return membership.id


def make_account(user_id: int, household_id: int | None = None, name: str = "Current") -> int:
    account = FinancialAccount(user_id=user_id, household_id=household_id, account_name=name)
    _db.session.add(account)
    _db.session.commit()
    return account.id


def make_transaction(
    account_id: int,
    amount: str = "-25.00",
    merchant_name: str | None = "Tesco",
    category: str | None = "groceries",
    on: date | None = None,
    **fields,
) -> int:
    """
    Stores a transaction and returns its id. Extra keyword arguments set
    categorization state directly (confidence_score, manual_override, ...).
    """
    transaction = Transaction(
        account_id=account_id,
        amount=Decimal(amount),
        merchant_name=merchant_name,
        category=category,
        date=on or date.today() - timedelta(days=1),
        **fields,
    )
    _db.session.add(transaction)
    _db.session.commit()
    return transaction.id


def get_transaction(transaction_id: int) -> Transaction:
    """Fresh read of a transaction, bypassing the identity map."""
    _db.session.expire_all()
    return _db.session.get(Transaction, transaction_id)


def setup_household(member_names=("alice", "bob")) -> dict:
    """
    Users, a household containing all of them, and one household account
    owned by the first user.

    Returns: {"users": [ids], "household_id": int, "account_id": int}
    """
    user_ids = [make_user(name) for name in member_names]
    household_id = make_household(user_ids[0])
    for user_id in user_ids[1:]:
        add_member(household_id, user_id)
    account_id = make_account(user_ids[0], household_id)
    return {"users": user_ids, "household_id": household_id, "account_id": account_id}


def make_rule(client, user_id: int, household_id: int, **payload):
    """POSTs a rule and returns the HTTP response."""
    return client.post(
        f"/api/v1/households/{household_id}/rules",
        json=payload,
        headers=auth_headers(user_id),
    )
