"""
services/override_service.py — Manual overrides of a transaction's categorization.

An override is a user decision that supersedes automatic classification:
  - manual_override = true and confidence_score = 100 afterwards, always
  - splitting_rule_id is left as it was (audit), and original_rule_id records
    the rule in force the first time the user took over
  - one TransactionOverride row captures the before/after state

The audit row and the transaction update are written together inside one
SAVEPOINT, so either both land or neither does. The transaction's version
column turns a concurrent automatic write into CONCURRENT_MODIFICATION (409)
instead of a lost update.

Access: the caller owns the transaction's account, or is a member of the
account's household. Anyone else gets FORBIDDEN (403).

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility — only flush here. Feedback is
    returned as a FeedbackEntry for the route to record after its commit.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from backend.app.errors import AppError, ErrorCode
from backend.app.models.account import FinancialAccount
from backend.app.models.household_member import HouseholdMember
from backend.app.models.rule_feedback import FeedbackAction
from backend.app.models.splitting_rule import SplittingRule
from backend.app.models.transaction import Transaction
from backend.app.models.transaction_override import TransactionOverride
from backend.app.services.confidence_scorer import OVERRIDE_SCORE
from backend.app.services.feedback_service import FeedbackEntry


# ── Private helpers ────────────────────────────────────────────────────────

def get_transaction_or_404(transaction_id: int, session: Session) -> Transaction:
    transaction = session.get(Transaction, transaction_id)
    if transaction is None:
        raise AppError(
            ErrorCode.TRANSACTION_NOT_FOUND,
            f"Transaction {transaction_id} does not exist.",
            404,
        )
    return transaction


def _is_household_member(household_id: int, user_id: int, session: Session) -> bool:
    membership = session.execute(
        select(HouseholdMember).where(
            HouseholdMember.household_id == household_id,
            HouseholdMember.user_id == user_id,
        )
    ).scalar_one_or_none()
    return membership is not None


def require_transaction_access(
        transaction: Transaction,
        caller_id: int,
        session: Session,
) -> FinancialAccount:
    """Returns the transaction's account if the caller may change it, else raises 403."""
    account = session.get(FinancialAccount, transaction.account_id)
    if account is not None:
        if account.user_id == caller_id:
            return account
        if account.household_id is not None and _is_household_member(
                account.household_id, caller_id, session,
        ):
            return account

    raise AppError(
        ErrorCode.FORBIDDEN,
        f"You do not have access to transaction {transaction.id}.",
        403,
    )


def require_split_members(
        household_id: int | None,
        split_percentage: dict | None,
        session: Session,
) -> None:
    """Every split_percentage key must be a member of the household. 422 otherwise."""
    if not split_percentage:
        return

    if household_id is None:
        raise AppError(
            ErrorCode.INVALID_SPLIT,
            "This transaction's account is not linked to a household, so it cannot be split.",
            422,
            field="split_percentage",
        )

    member_ids = {
        str(user_id)
        for user_id in session.execute(
            select(HouseholdMember.user_id).where(
                HouseholdMember.household_id == household_id,
            )
        ).scalars().all()
    }

    for key in split_percentage:
        if str(key) not in member_ids:
            raise AppError(
                ErrorCode.SPLIT_USER_NOT_MEMBER,
                f"User {key} is not a member of household {household_id}.",
                422,
                field="split_percentage",
            )


def _previous_split(transaction: Transaction, session: Session) -> dict | None:
    if transaction.split_percentage:
        return transaction.split_percentage
    if transaction.splitting_rule_id is not None:
        rule = session.get(SplittingRule, transaction.splitting_rule_id)
        if rule is not None and rule.split_percentage:
            return rule.split_percentage
    return None


def apply_override(
        transaction: Transaction,
        caller_id: int,
        household_id: int | None,
        is_shared_expense: bool,
        split_percentage: dict | None,
        reason: str | None,
        session: Session,
        split_details: dict | None = None,
) -> TransactionOverride:
    """
    Writes the audit row and the overridden state as one atomic unit.

    Shared by the override, mark-personal and manual-split operations.
    """
    new_split = split_percentage if is_shared_expense else None

    try:
        with session.begin_nested():
            audit = TransactionOverride(
                transaction_id=transaction.id,
                original_rule_id=transaction.splitting_rule_id,
                override_by=caller_id,
                old_is_shared_expense=transaction.is_shared_expense,
                new_is_shared_expense=is_shared_expense,
                old_split_percentage=_previous_split(transaction, session),
                new_split_percentage=new_split,
                override_reason=reason,
            )
            session.add(audit)

            if transaction.original_rule_id is None:
                transaction.original_rule_id = transaction.splitting_rule_id
            transaction.is_shared_expense = is_shared_expense
            transaction.split_percentage = new_split
            transaction.shared_with_household_id = household_id if is_shared_expense else None
            transaction.manual_override = True
            transaction.confidence_score = OVERRIDE_SCORE
            if split_details is not None:
                transaction.split_details = split_details
            transaction.updated_at = datetime.now(timezone.utc)
    except StaleDataError:
        raise AppError(
            ErrorCode.CONCURRENT_MODIFICATION,
            f"Transaction {transaction.id} was modified concurrently. Reload and try again.",
            409,
        )

    return audit


# ── Public service functions ───────────────────────────────────────────────

def override_transaction(
        transaction_id: int,
        caller_id: int,
        data: dict,
        session: Session,
) -> tuple[Transaction, FeedbackEntry | None]:
    """
    Applies a manual correction to one transaction.

    Args:
        data: Validated dict from OverrideTransactionSchema.
              Keys: is_shared_expense (bool), split_percentage (dict|None),
              reason (str|None).

    Returns:
        (Transaction, feedback) — feedback is an `overridden` FeedbackEntry to
        record after commit, or None when the account has no household.
    """
    transaction = get_transaction_or_404(transaction_id, session)
    account = require_transaction_access(transaction, caller_id, session)
    household_id = account.household_id

    is_shared = data["is_shared_expense"]
    if is_shared and household_id is None:
        raise AppError(
            ErrorCode.INVALID_SPLIT,
            "This transaction's account is not linked to a household, so it cannot be shared.",
            422,
            field="is_shared_expense",
        )

    split_percentage = data.get("split_percentage") or None
    if is_shared and split_percentage is None:
        split_percentage = _previous_split(transaction, session)
    if is_shared:
        require_split_members(household_id, split_percentage, session)

    original_confidence = transaction.confidence_score
    reason = data.get("reason")

    apply_override(
        transaction,
        caller_id=caller_id,
        household_id=household_id,
        is_shared_expense=is_shared,
        split_percentage=split_percentage,
        reason=reason,
        session=session,
    )

    feedback = None
    if household_id is not None:
        feedback = FeedbackEntry(
            transaction_id=transaction.id,
            household_id=household_id,
            action=FeedbackAction.OVERRIDDEN,
            rule_id=transaction.splitting_rule_id,
            original_confidence_score=original_confidence,
            override_details={
                "new_is_shared_expense": is_shared,
                "new_split_percentage": transaction.split_percentage,
                "reason": reason,
            },
        )

    return transaction, feedback


def list_transaction_overrides(
        transaction_id: int,
        caller_id: int,
        session: Session,
) -> list[TransactionOverride]:
    """Audit trail of a transaction's manual overrides, newest first."""
    transaction = get_transaction_or_404(transaction_id, session)
    require_transaction_access(transaction, caller_id, session)

    stmt = (
        select(TransactionOverride)
        .where(TransactionOverride.transaction_id == transaction_id)
        .order_by(TransactionOverride.id.desc())
    )
    return list(session.execute(stmt).scalars().all())
