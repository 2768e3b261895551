"""
services/categorization_service.py — Household-facing categorization operations.

  batch_categorize      mark_personal / apply_rule over a list of ids
  list_uncategorized    the review queue, with a suggested rule per item
  auto_categorize       run the household's active rules over transactions
  split_transaction     manual split of one transaction into personal/shared
  validate_split        same checks as split_transaction, nothing written
  review_transaction    accept or reject an automatic result (feedback only)

Batch results are reported per transaction id and never raised: one failed
item does not stop the others. success_count + failed_count always equals
the number of ids sent.

Feedback is not written here. Each operation returns the FeedbackEntry values
to record; the route records them after committing the primary change.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility — only flush here.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode
from backend.app.models.account import FinancialAccount
from backend.app.models.household_member import HouseholdMember
from backend.app.models.rule_feedback import FeedbackAction
from backend.app.models.splitting_rule import RuleType, SplittingRule
from backend.app.models.transaction import Transaction
from backend.app.services import categorization_engine
from backend.app.services.confidence_scorer import calculate_confidence_score
from backend.app.services.feedback_service import FeedbackEntry
from backend.app.services.ledger_store import LedgerStore
from backend.app.services.override_service import (
    apply_override,
    get_transaction_or_404,
    require_split_members,
    require_transaction_access,
)
from backend.app.services.rule_matcher import find_matching_rule
from backend.app.services.split_validation import (
    SplitValidationResult,
    validate_split_transaction,
)

logger = logging.getLogger(__name__)

REASON_NO_MATCH = "No matching rule"
REASON_DEFAULT_RULE = "Default rule applied"
REASON_LOW_CONFIDENCE = "Low confidence"


# ── Private helpers ────────────────────────────────────────────────────────

def _require_member(household_id: int, user_id: int, session: Session) -> None:
    """Raises FORBIDDEN (403) if user_id is not a member of household_id."""
    membership = session.execute(
        select(HouseholdMember).where(
            HouseholdMember.household_id == household_id,
            HouseholdMember.user_id == user_id,
        )
    ).scalar_one_or_none()

    if membership is None:
        raise AppError(
            ErrorCode.FORBIDDEN,
            f"You are not a member of household {household_id}.",
            403,
        )


def _household_transactions_by_id(
        household_id: int,
        transaction_ids: list[int],
        session: Session,
) -> dict[int, Transaction]:
    rows = session.execute(
        select(Transaction)
        .join(FinancialAccount, Transaction.account_id == FinancialAccount.id)
        .where(
            FinancialAccount.household_id == household_id,
            Transaction.id.in_(transaction_ids),
        )
    ).scalars().all()
    return {t.id: t for t in rows}


def _active_household_rules(household_id: int, session: Session) -> list[SplittingRule]:
    return list(session.execute(
        select(SplittingRule).where(
            SplittingRule.household_id == household_id,
            SplittingRule.is_active.is_(True),
        )
    ).scalars().all())


def _not_found_detail(transaction_id: int, household_id: int) -> dict:
    return {
        "transaction_id": transaction_id,
        "success": False,
        "error": f"Transaction {transaction_id} not found in household {household_id}.",
    }


# ── Batch actions ──────────────────────────────────────────────────────────

def _mark_personal(
        household_id: int,
        caller_id: int,
        transaction_ids: list[int],
        found: dict[int, Transaction],
        session: Session,
) -> tuple[list[dict], list[FeedbackEntry]]:
    details: list[dict] = []
    feedback: list[FeedbackEntry] = []

    for transaction_id in transaction_ids:
        transaction = found.get(transaction_id)
        if transaction is None:
            details.append(_not_found_detail(transaction_id, household_id))
            continue

        original_confidence = transaction.confidence_score
        try:
            apply_override(
                transaction,
                caller_id=caller_id,
                household_id=household_id,
                is_shared_expense=False,
                split_percentage=None,
                reason="Marked personal",
                session=session,
            )
        except (AppError, SQLAlchemyError) as exc:
            logger.warning("mark_personal failed for transaction %s: %s", transaction_id, exc)
            message = exc.message if isinstance(exc, AppError) else "Could not update transaction."
            details.append({"transaction_id": transaction_id, "success": False, "error": message})
            continue

        details.append({"transaction_id": transaction_id, "success": True, "error": None})
        feedback.append(FeedbackEntry(
            transaction_id=transaction_id,
            household_id=household_id,
            action=FeedbackAction.OVERRIDDEN,
            rule_id=transaction.splitting_rule_id,
            original_confidence_score=original_confidence,
            override_details={"marked_as_personal": True},
        ))

    return details, feedback


def _apply_rule(
        household_id: int,
        rule_id: int,
        transaction_ids: list[int],
        found: dict[int, Transaction],
        session: Session,
        store: LedgerStore,
        chunk_size: int,
        max_workers: int,
) -> tuple[list[dict], list[FeedbackEntry]]:
    rule = session.get(SplittingRule, rule_id)
    if rule is None or rule.household_id != household_id or not rule.is_active:
        raise AppError(
            ErrorCode.RULE_NOT_FOUND,
            f"Active rule {rule_id} does not exist in household {household_id}.",
            404,
            field="rule_id",
        )

    batch = categorization_engine.apply_rules_to_transactions(
        [found[i] for i in transaction_ids if i in found],
        [rule],
        household_id,
        store,
        chunk_size=chunk_size,
        max_workers=max_workers,
    )
    by_id = {r.transaction_id: r for r in batch.results}

    details: list[dict] = []
    feedback: list[FeedbackEntry] = []
    for transaction_id in transaction_ids:
        result = by_id.get(transaction_id)
        if result is None:
            details.append(_not_found_detail(transaction_id, household_id))
            continue

        if result.rule_applied:
            details.append({**result.to_dict(), "success": True})
            feedback.append(FeedbackEntry(
                transaction_id=transaction_id,
                household_id=household_id,
                action=FeedbackAction.ACCEPTED,
                rule_id=result.rule_id,
                original_confidence_score=result.confidence_score,
            ))
        else:
            detail = result.to_dict()
            detail["success"] = False
            if detail["error"] is None:
                detail["error"] = f'Rule "{rule.rule_name}" does not match this transaction.'
            details.append(detail)

    return details, feedback


def batch_categorize(
        household_id: int,
        caller_id: int,
        data: dict,
        session: Session,
        store: LedgerStore,
        chunk_size: int = categorization_engine.DEFAULT_CHUNK_SIZE,
        max_workers: int = categorization_engine.DEFAULT_MAX_WORKERS,
) -> tuple[dict, list[FeedbackEntry]]:
    """
    Applies one action to many transactions of the household.

    Args:
        data: Validated dict from BatchCategorizeSchema.
              Keys: transaction_ids (list[int]), action, rule_id (int|None).

    Returns:
        ({"action", "success_count", "failed_count", "details"}, feedback)

    Raises:
        AppError(FORBIDDEN, 403)       — caller is not a household member
        AppError(RULE_NOT_FOUND, 404)  — apply_rule with an unknown or inactive rule
    """
    _require_member(household_id, caller_id, session)

    # Duplicate ids are processed once.
    transaction_ids = list(dict.fromkeys(data["transaction_ids"]))
    found = _household_transactions_by_id(household_id, transaction_ids, session)
    action = data["action"]

    if action == "mark_personal":
        details, feedback = _mark_personal(
            household_id, caller_id, transaction_ids, found, session,
        )
    elif action == "apply_rule":
        details, feedback = _apply_rule(
            household_id, data["rule_id"], transaction_ids, found,
            session, store, chunk_size, max_workers,
        )
    else:
        raise AppError(
            ErrorCode.INVALID_BATCH_ACTION,
            f"Unknown batch action {action!r}.",
            400,
            field="action",
        )

    success_count = sum(1 for d in details if d["success"])
    logger.info(
        "Batch %s in household %s: %d succeeded, %d failed",
        action, household_id, success_count, len(details) - success_count,
    )
    return {
        "action": action,
        "success_count": success_count,
        "failed_count": len(details) - success_count,
        "details": details,
    }, feedback


# ── Review queue & automatic pass ──────────────────────────────────────────

def list_uncategorized(
        household_id: int,
        caller_id: int,
        data: dict,
        session: Session,
        store: LedgerStore,
) -> dict:
    """
    One page of the household's review queue.

    Args:
        data: Validated dict from UncategorizedQuerySchema.

    Returns:
        {"transactions", "queue_items", "total", "has_more"}; each queue item
        is {"transaction", "suggested_rule", "suggested_confidence",
        "requires_review_reason"}.
    """
    _require_member(household_id, caller_id, session)

    page, total = categorization_engine.get_uncategorized_transactions(
        household_id,
        store,
        min_confidence=data["min_confidence"],
        max_confidence=data["max_confidence"],
        limit=data["limit"],
        offset=data["offset"],
    )
    rules = _active_household_rules(household_id, session)

    queue_items = []
    for transaction in page:
        suggested_rule = None
        suggested_confidence = None
        reason = REASON_NO_MATCH

        rule = find_matching_rule(transaction, rules)
        if rule is not None:
            suggested_rule = {
                "id": rule.id,
                "rule_name": rule.rule_name,
                "split_percentage": rule.split_percentage,
            }
            suggested_confidence = calculate_confidence_score(transaction, rule)
            reason = REASON_DEFAULT_RULE if rule.rule_type == RuleType.DEFAULT else REASON_LOW_CONFIDENCE

        queue_items.append({
            "transaction": transaction,
            "suggested_rule": suggested_rule,
            "suggested_confidence": suggested_confidence,
            "requires_review_reason": reason,
        })

    return {
        "transactions": page,
        "queue_items": queue_items,
        "total": total,
        "has_more": total > data["offset"] + data["limit"],
    }


def auto_categorize(
        household_id: int,
        caller_id: int,
        data: dict,
        session: Session,
        store: LedgerStore,
        chunk_size: int = categorization_engine.DEFAULT_CHUNK_SIZE,
        max_workers: int = categorization_engine.DEFAULT_MAX_WORKERS,
) -> categorization_engine.BatchCategorizationResult:
    """
    Runs the household's active rules over its transactions.

    With data["transaction_ids"], only those ids (within the household) are
    evaluated; otherwise every transaction that has never been scored.
    Manually overridden transactions are always left alone.
    """
    _require_member(household_id, caller_id, session)

    stmt = (
        select(Transaction)
        .join(FinancialAccount, Transaction.account_id == FinancialAccount.id)
        .where(
            FinancialAccount.household_id == household_id,
            Transaction.manual_override.is_(False),
        )
    )
    transaction_ids = data.get("transaction_ids")
    if transaction_ids:
        stmt = stmt.where(Transaction.id.in_(transaction_ids))
    else:
        stmt = stmt.where(Transaction.confidence_score.is_(None))

    transactions = session.execute(stmt.order_by(Transaction.id)).scalars().all()

    return categorization_engine.apply_rules_to_transactions(
        transactions,
        _active_household_rules(household_id, session),
        household_id,
        store,
        chunk_size=chunk_size,
        max_workers=max_workers,
    )


# ── Single transaction ─────────────────────────────────────────────────────

def validate_split(transaction_id: int, caller_id: int, data: dict, session: Session) -> SplitValidationResult:
    transaction = get_transaction_or_404(transaction_id, session)
    require_transaction_access(transaction, caller_id, session)
    return validate_split_transaction(transaction, data)


def split_transaction(
        transaction_id: int,
        caller_id: int,
        data: dict,
        session: Session,
) -> tuple[Transaction, FeedbackEntry | None]:
    """
    Splits one transaction into a personal and a shared part.

    Args:
        data: Validated dict from SplitTransactionSchema.
              Keys: personal_amount, shared_amount, split_percentage.

    The split is stored in split_details and the transaction becomes a shared,
    manually overridden expense, audited like any other override.

    Raises:
        AppError(INVALID_SPLIT, 422)          — amounts or percentages do not add up,
                                                or the account has no household
        AppError(SPLIT_USER_NOT_MEMBER, 422)  — a split key is not a member
    """
    transaction = get_transaction_or_404(transaction_id, session)
    account = require_transaction_access(transaction, caller_id, session)
    household_id = account.household_id

    result = validate_split_transaction(transaction, data)
    if not result.is_valid:
        raise AppError(ErrorCode.INVALID_SPLIT, result.error, 422)

    split_percentage = {str(k): v for k, v in data["split_percentage"].items()}
    require_split_members(household_id, split_percentage, session)

    original_confidence = transaction.confidence_score
    split_details = {
        "personal_amount": str(data["personal_amount"]),
        "shared_amount": str(data["shared_amount"]),
        "split_percentage": split_percentage,
    }

    apply_override(
        transaction,
        caller_id=caller_id,
        household_id=household_id,
        is_shared_expense=True,
        split_percentage=split_percentage,
        reason="Manual split",
        session=session,
        split_details=split_details,
    )

    feedback = FeedbackEntry(
        transaction_id=transaction.id,
        household_id=household_id,
        action=FeedbackAction.OVERRIDDEN,
        rule_id=transaction.splitting_rule_id,
        original_confidence_score=original_confidence,
        override_details={"split_details": split_details},
    )
    return transaction, feedback


def review_transaction(
        transaction_id: int,
        caller_id: int,
        data: dict,
        session: Session,
) -> FeedbackEntry:
    """
    Records the caller's verdict on an automatic categorization. The
    transaction itself is not changed.

    Raises:
        AppError(TRANSACTION_NOT_SHARED, 422) — the account has no household,
                                                so there is nothing to review
    """
    transaction = get_transaction_or_404(transaction_id, session)
    account = require_transaction_access(transaction, caller_id, session)

    if account.household_id is None:
        raise AppError(
            ErrorCode.TRANSACTION_NOT_SHARED,
            f"Transaction {transaction_id} does not belong to a household.",
            422,
        )

    return FeedbackEntry(
        transaction_id=transaction.id,
        household_id=account.household_id,
        action=FeedbackAction(data["action"]),
        rule_id=transaction.splitting_rule_id,
        original_confidence_score=transaction.confidence_score,
    )
