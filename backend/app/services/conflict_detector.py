"""
services/conflict_detector.py — Overlap warnings between rules of the same type.

Runs when a rule is proposed (created, or updated while active). Conflicts
are warnings only: the rule is saved regardless and the author decides
whether priorities need adjusting.

A candidate is compared against existing rules that are active, belong to
the same household, have the same rule_type and are not the candidate itself.
Every overlap test below is symmetric: if A flags B, then B flags A.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Callable, Iterable

from backend.app.models.splitting_rule import RuleType
from backend.app.services.rule_matcher import coerce_rule_type, to_decimal

# Upper bound used for an open-ended amount range.
AMOUNT_SENTINEL = Decimal("999999999999")


@dataclass(frozen=True)
class RuleConflict:
    rule_id: int
    rule_name: str
    reason: str

    def to_dict(self) -> dict:
        return asdict(self)


def _priorities(candidate, existing) -> str:
    return f"Priority {candidate.priority} vs {existing.priority}."


def _merchant_conflict(candidate, existing) -> str | None:
    a = candidate.merchant_pattern or ""
    b = existing.merchant_pattern or ""
    if not a or not b:
        return None
    if a in b or b in a:
        return (
            f'Overlapping merchant pattern with "{existing.rule_name}". '
            f"{_priorities(candidate, existing)}"
        )
    return None


def _category_conflict(candidate, existing) -> str | None:
    if candidate.category_match is None or candidate.category_match != existing.category_match:
        return None
    return (
        f'Same category "{candidate.category_match}" as "{existing.rule_name}". '
        f"{_priorities(candidate, existing)}"
    )


def _amount_range(rule) -> tuple[Decimal, Decimal]:
    low = to_decimal(rule.min_amount)
    high = to_decimal(rule.max_amount)
    return (
        low if low is not None else Decimal("0"),
        high if high is not None else AMOUNT_SENTINEL,
    )


def _amount_conflict(candidate, existing) -> str | None:
    new_min, new_max = _amount_range(candidate)
    old_min, old_max = _amount_range(existing)
    if new_min <= old_max and old_min <= new_max:
        return (
            f'Overlapping amount range with "{existing.rule_name}". '
            f"{_priorities(candidate, existing)}"
        )
    return None


def _default_conflict(candidate, existing) -> str:
    # Two catch-alls: whichever sorts later is unreachable.
    return (
        f'Another default rule "{existing.rule_name}" already matches every '
        f"transaction. {_priorities(candidate, existing)}"
    )


_CONFLICT_CHECKS: dict[RuleType, Callable[[object, object], str | None]] = {
    RuleType.MERCHANT:         _merchant_conflict,
    RuleType.CATEGORY:         _category_conflict,
    RuleType.AMOUNT_THRESHOLD: _amount_conflict,
    RuleType.DEFAULT:          _default_conflict,
}

if set(_CONFLICT_CHECKS) != set(RuleType):
    raise RuntimeError(
        f"conflict_detector has no check for: {set(RuleType) - set(_CONFLICT_CHECKS)}"
    )


def detect_rule_conflicts(candidate, existing_rules: Iterable) -> list[RuleConflict]:
    """
    Returns one RuleConflict per existing rule that overlaps `candidate`.

    `existing_rules` may contain rules of any household, type or state;
    only comparable ones are checked.
    """
    rule_type = coerce_rule_type(candidate.rule_type)
    if rule_type is None:
        return []

    check = _CONFLICT_CHECKS[rule_type]
    candidate_id = getattr(candidate, "id", None)
    conflicts: list[RuleConflict] = []

    for existing in existing_rules:
        if not existing.is_active:
            continue
        if existing.household_id != candidate.household_id:
            continue
        if coerce_rule_type(existing.rule_type) is not rule_type:
            continue
        if candidate_id is not None and existing.id == candidate_id:
            continue

        reason = check(candidate, existing)
        if reason is not None:
            conflicts.append(RuleConflict(
                rule_id=existing.id,
                rule_name=existing.rule_name,
                reason=reason,
            ))

    return conflicts
