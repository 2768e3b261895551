"""
services/ledger_store.py — The engine's read/write port onto stored transactions.

The categorization engine only talks to a LedgerStore. SqlLedgerStore is
the SQLAlchemy implementation used by the API; unit tests use small
in-memory fakes.

Concurrency (SqlLedgerStore):
  - A SQLAlchemy Session is not thread-safe, so every call holds one lock
    while it touches the session. Matching and scoring stay concurrent; only
    the session calls are serialized.
  - Each categorization write runs inside its own SAVEPOINT. A failing item
    rolls back only itself and leaves the outer transaction usable for its
    chunk-mates.
  - Transaction.version is an optimistic lock. A row changed by someone else
    since it was loaded raises StaleDataError on flush, reported as
    CONCURRENT_MODIFICATION (409) for that item.

Layer rules:
  - No Flask request imports. The optional `app` is only pushed as an
    application context in worker threads, which Flask-SQLAlchemy needs to
    resolve its engine.
  - Commits are the route's responsibility — only flush here.
"""

from __future__ import annotations

import contextlib
import threading
from datetime import datetime, timezone
from typing import Protocol

from flask import has_app_context
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, scoped_session
from sqlalchemy.orm.exc import StaleDataError

from backend.app.errors import AppError, ErrorCode
from backend.app.models.account import FinancialAccount
from backend.app.models.transaction import Transaction


class LedgerStore(Protocol):

    def record_categorization(
            self,
            transaction_id: int,
            *,
            splitting_rule_id: int,
            is_shared_expense: bool,
            shared_with_household_id: int | None,
            confidence_score: int,
            split_percentage: dict | None,
    ) -> None:
        ...

    def list_uncategorized(
            self,
            household_id: int,
            min_confidence: int,
            max_confidence: int,
            limit: int,
            offset: int,
    ) -> tuple[list, int]:
        ...


class SqlLedgerStore:

    def __init__(self, session: Session | scoped_session, app=None) -> None:
        # Worker threads have no app context of their own, so bind to the
        # concrete Session behind Flask-SQLAlchemy's scoped proxy now.
        self._session = session() if isinstance(session, scoped_session) else session
        self._app = app
        self._lock = threading.Lock()

    @contextlib.contextmanager
    def _locked(self):
        with self._lock:
            if self._app is None or has_app_context():
                yield self._session
            else:
                with self._app.app_context():
                    yield self._session

    def record_categorization(
            self,
            transaction_id: int,
            *,
            splitting_rule_id: int,
            is_shared_expense: bool,
            shared_with_household_id: int | None,
            confidence_score: int,
            split_percentage: dict | None,
    ) -> None:
        """
        Writes an automatic rule application onto one transaction.

        Clears manual_override: callers decide which transactions are
        eligible, and an explicit re-application supersedes a stale flag.
        """
        with self._locked() as session:
            try:
                with session.begin_nested():
                    transaction = session.get(Transaction, transaction_id)
                    if transaction is None:
                        raise AppError(
                            ErrorCode.TRANSACTION_NOT_FOUND,
                            f"Transaction {transaction_id} does not exist.",
                            404,
                        )
                    transaction.splitting_rule_id = splitting_rule_id
                    transaction.is_shared_expense = is_shared_expense
                    transaction.shared_with_household_id = shared_with_household_id
                    transaction.confidence_score = confidence_score
                    transaction.split_percentage = split_percentage
                    transaction.manual_override = False
                    transaction.updated_at = datetime.now(timezone.utc)
            except StaleDataError:
                raise AppError(
                    ErrorCode.CONCURRENT_MODIFICATION,
                    f"Transaction {transaction_id} was modified concurrently. "
                    f"Reload and try again.",
                    409,
                )

    def list_uncategorized(
            self,
            household_id: int,
            min_confidence: int,
            max_confidence: int,
            limit: int,
            offset: int,
    ) -> tuple[list[Transaction], int]:
        """
        Household transactions awaiting review: not manually overridden, and
        either never scored or scored within [min_confidence, max_confidence].
        Most recent first. Returns (page, total matching rows).
        """
        criteria = (
            FinancialAccount.household_id == household_id,
            Transaction.manual_override.is_(False),
            or_(
                Transaction.confidence_score.is_(None),
                Transaction.confidence_score.between(min_confidence, max_confidence),
            ),
        )

        with self._locked() as session:
            total = session.execute(
                select(func.count(Transaction.id))
                .join(FinancialAccount, Transaction.account_id == FinancialAccount.id)
                .where(*criteria)
            ).scalar_one()

            rows = session.execute(
                select(Transaction)
                .join(FinancialAccount, Transaction.account_id == FinancialAccount.id)
                .where(*criteria)
                .order_by(Transaction.date.desc(), Transaction.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()

        return list(rows), total
