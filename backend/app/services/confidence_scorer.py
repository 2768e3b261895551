"""
services/confidence_scorer.py — Deterministic confidence for a rule match.

The score is written to the transaction when a rule is applied and never
re-derived at read time.

  merchant, exact equality   100
  merchant, wildcard pattern  85
  category                    95
  amount_threshold            80
  default                     60
  unrecognised rule type      50
"""

from __future__ import annotations

import enum
from typing import Callable

from backend.app.models.splitting_rule import RuleType
from backend.app.services.rule_matcher import coerce_rule_type, is_wildcard_pattern

UNKNOWN_RULE_TYPE_SCORE = 50
OVERRIDE_SCORE = 100


class ConfidenceLevel(str, enum.Enum):
    HIGH   = "high"
    MEDIUM = "medium"
    LOW    = "low"
    NONE   = "none"


def _score_merchant(transaction, rule) -> int:
    pattern = rule.merchant_pattern or ""
    merchant_name = transaction.merchant_name or ""
    if not is_wildcard_pattern(pattern) and merchant_name.casefold() == pattern.casefold():
        return 100
    return 85


_SCORERS: dict[RuleType, Callable[[object, object], int]] = {
    RuleType.MERCHANT:         _score_merchant,
    RuleType.CATEGORY:         lambda transaction, rule: 95,
    RuleType.AMOUNT_THRESHOLD: lambda transaction, rule: 80,
    RuleType.DEFAULT:          lambda transaction, rule: 60,
}

if set(_SCORERS) != set(RuleType):
    raise RuntimeError(
        f"confidence_scorer has no score for: {set(RuleType) - set(_SCORERS)}"
    )


def calculate_confidence_score(transaction, rule) -> int:
    """Returns the 0-100 confidence for `rule` having matched `transaction`."""
    rule_type = coerce_rule_type(rule.rule_type)
    if rule_type is None:
        return UNKNOWN_RULE_TYPE_SCORE
    return _SCORERS[rule_type](transaction, rule)


def get_confidence_level(score: int | None) -> ConfidenceLevel:
    if score is None:
        return ConfidenceLevel.NONE
    if score >= 95:
        return ConfidenceLevel.HIGH
    if score >= 70:
        return ConfidenceLevel.MEDIUM
    if score >= 50:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.NONE
