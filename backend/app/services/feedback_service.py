"""
services/feedback_service.py — Best-effort analytics of rule decisions.

Every accept / reject / override of an automatic categorization appends one
RuleFeedback row. Recording runs after the primary change has committed and
must never fail it: database errors are logged and swallowed here, and the
caller gets None back instead of a row.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Each row is written inside its own SAVEPOINT so a failed insert cannot
    poison the caller's session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode
from backend.app.models.household_member import HouseholdMember
from backend.app.models.rule_feedback import FeedbackAction, RuleFeedback
from backend.app.models.splitting_rule import SplittingRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedbackEntry:
    """A feedback row to record once the primary change has committed."""
    transaction_id: int
    household_id: int
    action: FeedbackAction
    rule_id: int | None = None
    original_confidence_score: int | None = None
    override_details: dict | None = None


def record_rule_feedback(
        session: Session,
        transaction_id: int,
        rule_id: int | None,
        household_id: int,
        action: FeedbackAction,
        original_confidence_score: int | None = None,
        override_details: dict | None = None,
) -> RuleFeedback | None:
    """Appends one RuleFeedback row. Returns None (and logs) if it could not be written."""
    try:
        with session.begin_nested():
            feedback = RuleFeedback(
                transaction_id=transaction_id,
                rule_id=rule_id,
                household_id=household_id,
                user_action=FeedbackAction(action),
                original_confidence_score=original_confidence_score,
                override_details=override_details,
            )
            session.add(feedback)
        return feedback
    except SQLAlchemyError:
        logger.warning(
            "Failed to record %s feedback for transaction %s (rule %s)",
            action, transaction_id, rule_id,
            exc_info=True,
        )
        return None


def record_feedback_entries(entries: Iterable[FeedbackEntry], session: Session) -> int:
    """Records each pending entry best-effort. Returns how many were written."""
    written = 0
    for entry in entries:
        feedback = record_rule_feedback(
            session,
            transaction_id=entry.transaction_id,
            rule_id=entry.rule_id,
            household_id=entry.household_id,
            action=entry.action,
            original_confidence_score=entry.original_confidence_score,
            override_details=entry.override_details,
        )
        if feedback is not None:
            written += 1
    return written


def commit_feedback_entries(entries: Iterable[FeedbackEntry], session: Session) -> int:
    """
    Records the entries and commits them on their own.

    Call only after the primary change has been committed. This is the one
    place in the service layer that commits: a failing commit is rolled back
    and logged, and the caller learns only that nothing was written (0).
    """
    entries = list(entries)
    if not entries:
        return 0

    written = record_feedback_entries(entries, session)
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.warning(
            "Failed to commit %d feedback row(s) for transaction(s) %s",
            written, sorted({e.transaction_id for e in entries}),
            exc_info=True,
        )
        return 0
    return written


def get_rule_feedback_summary(
        household_id: int,
        caller_id: int,
        session: Session,
) -> list[dict]:
    """
    Per-rule counts of accepted / rejected / overridden decisions for the
    household's rules, with acceptance_rate = accepted / all decisions
    (None when the rule has no feedback yet).
    """
    is_member = session.execute(
        select(HouseholdMember).where(
            HouseholdMember.household_id == household_id,
            HouseholdMember.user_id == caller_id,
        )
    ).scalar_one_or_none()
    if is_member is None:
        raise AppError(
            ErrorCode.FORBIDDEN,
            f"You are not a member of household {household_id}.",
            403,
        )

    rules = session.execute(
        select(SplittingRule)
        .where(SplittingRule.household_id == household_id)
        .order_by(SplittingRule.priority, SplittingRule.id)
    ).scalars().all()

    counts = session.execute(
        select(RuleFeedback.rule_id, RuleFeedback.user_action, func.count(RuleFeedback.id))
        .where(
            RuleFeedback.household_id == household_id,
            RuleFeedback.rule_id.is_not(None),
        )
        .group_by(RuleFeedback.rule_id, RuleFeedback.user_action)
    ).all()

    by_rule: dict[int, dict[str, int]] = {}
    for rule_id, action, count in counts:
        by_rule.setdefault(rule_id, {})[FeedbackAction(action).value] = count

    summary = []
    for rule in rules:
        tally = by_rule.get(rule.id, {})
        accepted = tally.get(FeedbackAction.ACCEPTED.value, 0)
        rejected = tally.get(FeedbackAction.REJECTED.value, 0)
        overridden = tally.get(FeedbackAction.OVERRIDDEN.value, 0)
        decisions = accepted + rejected + overridden
        summary.append({
            "rule_id": rule.id,
            "rule_name": rule.rule_name,
            "is_active": rule.is_active,
            "accepted": accepted,
            "rejected": rejected,
            "overridden": overridden,
            "acceptance_rate": round(accepted / decisions, 4) if decisions else None,
        })
    return summary
