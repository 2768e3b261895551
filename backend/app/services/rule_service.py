"""
services/rule_service.py — Splitting rule business logic.

Rules are owned by a household. Every operation here requires the caller to
be a member of that household (FORBIDDEN, 403).

Creating a rule:
  - split_percentage keys must be household members (SPLIT_USER_NOT_MEMBER, 422)
  - criteria that do not belong to the rule_type are dropped before saving,
    so a default rule never carries pattern constraints
  - overlaps with active rules of the same type are returned as RULE_CONFLICT
    warnings; the rule is saved regardless
  - a rule placed after an active default rule (which can never be reached)
    gets a RULE_SHADOWED_BY_DEFAULT warning

Rules are never hard-deleted: deactivation sets is_active = false so the
transactions and feedback rows that reference them stay valid.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility — only flush here.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.errors import AppError, ErrorCode, WarningCode
from backend.app.models.account import FinancialAccount
from backend.app.models.household import Household
from backend.app.models.household_member import HouseholdMember
from backend.app.models.splitting_rule import RuleType, SplittingRule
from backend.app.models.transaction import Transaction
from backend.app.services import categorization_engine, rule_templates
from backend.app.services.confidence_scorer import calculate_confidence_score
from backend.app.services.conflict_detector import detect_rule_conflicts
from backend.app.services.ledger_store import LedgerStore
from backend.app.services.rule_matcher import DraftRule, preview_draft_rule

logger = logging.getLogger(__name__)

# Which criteria columns each rule type keeps.
_CRITERIA_BY_TYPE: dict[RuleType, tuple[str, ...]] = {
    RuleType.MERCHANT:         ("merchant_pattern",),
    RuleType.CATEGORY:         ("category_match",),
    RuleType.AMOUNT_THRESHOLD: ("min_amount", "max_amount"),
    RuleType.DEFAULT:          (),
}
_ALL_CRITERIA = ("merchant_pattern", "category_match", "min_amount", "max_amount")

if set(_CRITERIA_BY_TYPE) != set(RuleType):
    raise RuntimeError(
        f"rule_service has no criteria for: {set(RuleType) - set(_CRITERIA_BY_TYPE)}"
    )


# ── Private helpers ────────────────────────────────────────────────────────

def _get_household_or_404(household_id: int, session: Session) -> Household:
    household = session.get(Household, household_id)
    if household is None:
        raise AppError(
            ErrorCode.HOUSEHOLD_NOT_FOUND,
            f"Household {household_id} does not exist.",
            404,
        )
    return household


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


def _get_member_ids(household_id: int, session: Session) -> list[int]:
    """Member user ids in joining order."""
    return list(session.execute(
        select(HouseholdMember.user_id)
        .where(HouseholdMember.household_id == household_id)
        .order_by(HouseholdMember.joined_at, HouseholdMember.id)
    ).scalars().all())


def _require_split_members(
        household_id: int,
        split_percentage: dict | None,
        session: Session,
) -> None:
    if not split_percentage:
        return
    member_ids = {str(user_id) for user_id in _get_member_ids(household_id, session)}
    for key in split_percentage:
        if str(key) not in member_ids:
            raise AppError(
                ErrorCode.SPLIT_USER_NOT_MEMBER,
                f"User {key} is not a member of household {household_id}.",
                422,
                field="split_percentage",
            )


def _get_rule_or_404(household_id: int, rule_id: int, session: Session) -> SplittingRule:
    rule = session.get(SplittingRule, rule_id)
    if rule is None or rule.household_id != household_id:
        raise AppError(
            ErrorCode.RULE_NOT_FOUND,
            f"Rule {rule_id} does not exist in household {household_id}.",
            404,
        )
    return rule


def _active_rules(household_id: int, session: Session) -> list[SplittingRule]:
    return list(session.execute(
        select(SplittingRule).where(
            SplittingRule.household_id == household_id,
            SplittingRule.is_active.is_(True),
        )
    ).scalars().all())


def _normalise_split(split_percentage: dict | None) -> dict | None:
    if not split_percentage:
        return None
    return {str(key): value for key, value in split_percentage.items()}


def _conflict_warnings(candidate, existing: list) -> list[dict]:
    warnings: list[dict] = []
    for conflict in detect_rule_conflicts(candidate, existing):
        warnings.append({
            "code": WarningCode.RULE_CONFLICT,
            "message": conflict.reason,
            "rule_id": conflict.rule_id,
            "rule_name": conflict.rule_name,
        })

    rule_type = RuleType(candidate.rule_type)
    others = [r for r in existing if r.is_active and r.id != getattr(candidate, "id", None)]

    if rule_type is RuleType.DEFAULT:
        later = [r for r in others if r.rule_type != RuleType.DEFAULT and r.priority > candidate.priority]
        if later:
            warnings.append({
                "code": WarningCode.RULE_SHADOWED_BY_DEFAULT,
                "message": (
                    f"Default rule priority {candidate.priority} runs before "
                    f"{len(later)} other active rule(s), which will never match."
                ),
            })
    else:
        blocking = [r for r in others if r.rule_type == RuleType.DEFAULT and r.priority < candidate.priority]
        if blocking:
            warnings.append({
                "code": WarningCode.RULE_SHADOWED_BY_DEFAULT,
                "message": (
                    f'Default rule "{blocking[0].rule_name}" (priority {blocking[0].priority}) '
                    f"runs first and matches everything; this rule will never match."
                ),
                "rule_id": blocking[0].id,
                "rule_name": blocking[0].rule_name,
            })

    return warnings


# ── Public service functions ───────────────────────────────────────────────

def list_rules(
        household_id: int,
        caller_id: int,
        session: Session,
        active_only: bool = False,
        order_by: str = "priority",
) -> list[SplittingRule]:
    """
    Household rules. order_by="priority" gives evaluation order (priority,
    created_at, id ascending); order_by="created_at" gives newest first.
    """
    _get_household_or_404(household_id, session)
    _require_member(household_id, caller_id, session)

    stmt = select(SplittingRule).where(SplittingRule.household_id == household_id)
    if active_only:
        stmt = stmt.where(SplittingRule.is_active.is_(True))

    if order_by == "created_at":
        stmt = stmt.order_by(SplittingRule.created_at.desc(), SplittingRule.id.desc())
    else:
        stmt = stmt.order_by(
            SplittingRule.priority.asc(),
            SplittingRule.created_at.asc(),
            SplittingRule.id.asc(),
        )

    return list(session.execute(stmt).scalars().all())


def get_rule(household_id: int, rule_id: int, caller_id: int, session: Session) -> SplittingRule:
    _require_member(household_id, caller_id, session)
    return _get_rule_or_404(household_id, rule_id, session)


def create_rule(
        household_id: int,
        caller_id: int,
        data: dict,
        session: Session,
) -> tuple[SplittingRule, list[dict]]:
    """
    Creates a splitting rule.

    Args:
        data: Validated dict from CreateRuleSchema.

    Returns:
        (SplittingRule, warnings) — warnings never block creation.
    """
    _get_household_or_404(household_id, session)
    _require_member(household_id, caller_id, session)

    rule_type = RuleType(data["rule_type"])
    split_percentage = _normalise_split(data.get("split_percentage"))
    _require_split_members(household_id, split_percentage, session)

    kept = _CRITERIA_BY_TYPE[rule_type]
    criteria = {name: (data.get(name) if name in kept else None) for name in _ALL_CRITERIA}

    existing = _active_rules(household_id, session)

    rule = SplittingRule(
        household_id=household_id,
        rule_name=data["rule_name"].strip(),
        rule_type=rule_type,
        priority=data.get("priority", 100),
        split_percentage=split_percentage,
        is_active=True,
        apply_to_existing_transactions=data.get("apply_to_existing_transactions", False),
        created_by=caller_id,
        **criteria,
    )
    session.add(rule)
    session.flush()

    warnings = _conflict_warnings(rule, existing)
    if warnings:
        logger.info(
            "Rule %s created in household %s with %d warning(s)",
            rule.id, household_id, len(warnings),
        )
    return rule, warnings


def update_rule(
        household_id: int,
        rule_id: int,
        caller_id: int,
        data: dict,
        session: Session,
) -> tuple[SplittingRule, list[dict]]:
    """
    Updates rule_name, priority, split_percentage and/or is_active.

    Conflict warnings are re-evaluated when the rule is active afterwards.
    """
    _require_member(household_id, caller_id, session)
    rule = _get_rule_or_404(household_id, rule_id, session)

    if "split_percentage" in data:
        split_percentage = _normalise_split(data["split_percentage"])
        _require_split_members(household_id, split_percentage, session)
        rule.split_percentage = split_percentage

    if "rule_name" in data:
        rule.rule_name = data["rule_name"].strip()
    if "priority" in data:
        rule.priority = data["priority"]
    if "is_active" in data:
        rule.is_active = data["is_active"]

    rule.updated_at = datetime.now(timezone.utc)
    session.flush()

    warnings: list[dict] = []
    if rule.is_active:
        warnings = _conflict_warnings(rule, _active_rules(household_id, session))
    return rule, warnings


def deactivate_rule(
        household_id: int,
        rule_id: int,
        caller_id: int,
        session: Session,
) -> SplittingRule:
    """Soft-deletes a rule. RULE_ALREADY_INACTIVE (409) if it is already off."""
    _require_member(household_id, caller_id, session)
    rule = _get_rule_or_404(household_id, rule_id, session)

    if not rule.is_active:
        raise AppError(
            ErrorCode.RULE_ALREADY_INACTIVE,
            f"Rule {rule_id} is already inactive.",
            409,
        )

    rule.is_active = False
    rule.updated_at = datetime.now(timezone.utc)
    session.flush()
    return rule


def _household_transactions(household_id: int):
    return (
        select(Transaction)
        .join(FinancialAccount, Transaction.account_id == FinancialAccount.id)
        .where(FinancialAccount.household_id == household_id)
    )


def preview_rule(
        household_id: int,
        caller_id: int,
        data: dict,
        session: Session,
        lookback_days: int = 30,
        preview_limit: int = 20,
        today: date | None = None,
) -> dict:
    """
    Dry run of an unsaved rule against the household's recent transactions.
    Nothing is written.

    Returns:
        {"match_count", "total_amount", "date_range": {"start", "end"},
         "preview": [first `preview_limit` matches with their confidence]}
    """
    _get_household_or_404(household_id, session)
    _require_member(household_id, caller_id, session)

    rule_type = RuleType(data["rule_type"])
    kept = _CRITERIA_BY_TYPE[rule_type]
    draft = DraftRule(
        rule_type=rule_type,
        household_id=household_id,
        rule_name=data.get("rule_name", "Draft rule"),
        priority=data.get("priority", 100),
        split_percentage=_normalise_split(data.get("split_percentage")),
        **{name: (data.get(name) if name in kept else None) for name in _ALL_CRITERIA},
    )

    end = today or date.today()
    start = end - timedelta(days=lookback_days)
    transactions = session.execute(
        _household_transactions(household_id)
        .where(Transaction.date >= start, Transaction.date <= end)
        .order_by(Transaction.date.desc(), Transaction.id.desc())
    ).scalars().all()

    matches = preview_draft_rule(draft, transactions)
    total_amount = sum((abs(t.amount) for t in matches), Decimal("0.00"))

    return {
        "match_count": len(matches),
        "total_amount": total_amount,
        "date_range": {"start": start.isoformat(), "end": end.isoformat()},
        "preview": [
            {
                "transaction_id": t.id,
                "date": t.date.isoformat(),
                "merchant_name": t.merchant_name,
                "category": t.category,
                "amount": t.amount,
                "confidence_score": calculate_confidence_score(t, draft),
            }
            for t in matches[:preview_limit]
        ],
    }


def apply_rule_to_history(
        household_id: int,
        rule_id: int,
        caller_id: int,
        data: dict,
        session: Session,
        store: LedgerStore,
        chunk_size: int = categorization_engine.DEFAULT_CHUNK_SIZE,
        max_workers: int = categorization_engine.DEFAULT_MAX_WORKERS,
) -> dict:
    """
    Applies one active rule to past household transactions that no rule has
    categorized yet and that the user has not overridden, optionally limited
    to data["start_date"]..data["end_date"].

    Returns:
        {"rule_id", "affected_transaction_count", "total_amount_affected", "errors"}
    """
    _require_member(household_id, caller_id, session)
    rule = _get_rule_or_404(household_id, rule_id, session)
    if not rule.is_active:
        raise AppError(
            ErrorCode.RULE_NOT_FOUND,
            f"Rule {rule_id} is not active.",
            404,
        )

    stmt = _household_transactions(household_id).where(
        Transaction.splitting_rule_id.is_(None),
        Transaction.manual_override.is_(False),
    )
    if data.get("start_date") is not None:
        stmt = stmt.where(Transaction.date >= data["start_date"])
    if data.get("end_date") is not None:
        stmt = stmt.where(Transaction.date <= data["end_date"])

    candidates = list(session.execute(stmt.order_by(Transaction.id)).scalars().all())
    amounts = {t.id: abs(t.amount) for t in candidates}

    batch = categorization_engine.apply_rules_to_transactions(
        candidates,
        [rule],
        household_id,
        store,
        chunk_size=chunk_size,
        max_workers=max_workers,
    )

    applied = [r for r in batch.results if r.rule_applied]
    return {
        "rule_id": rule.id,
        "affected_transaction_count": len(applied),
        "total_amount_affected": sum((amounts[r.transaction_id] for r in applied), Decimal("0.00")),
        "errors": [
            {"transaction_id": r.transaction_id, "error": r.error}
            for r in batch.results if r.error is not None
        ],
    }


# ── Templates ──────────────────────────────────────────────────────────────

def list_templates(household_id: int, caller_id: int, session: Session) -> dict:
    _get_household_or_404(household_id, session)
    _require_member(household_id, caller_id, session)
    return {
        "templates": [t.to_dict() for t in rule_templates.RULE_TEMPLATES],
        "household_member_count": len(_get_member_ids(household_id, session)),
    }


def build_rule_from_template(
        household_id: int,
        caller_id: int,
        template_id: str,
        customizations: dict,
        session: Session,
) -> dict:
    """
    Unvalidated rule fields for `template_id`, split across the household's
    members. The route validates them with CreateRuleSchema and passes the
    result to create_rule, which also checks the split keys.
    """
    _get_household_or_404(household_id, session)
    _require_member(household_id, caller_id, session)

    template = rule_templates.get_template_by_id(template_id)
    if template is None:
        raise AppError(
            ErrorCode.TEMPLATE_NOT_FOUND,
            f"Template {template_id!r} does not exist.",
            404,
            field="template_id",
        )

    return rule_templates.build_rule_from_template(
        template,
        _get_member_ids(household_id, session),
        customizations,
    )
