"""
services/rule_matcher.py — Ordered predicate matching of transactions to rules.

Pure functions: no session, no Flask, no shared state. Safe to call from any
number of worker threads.

A "rule" here is anything with the SplittingRule attributes (the ORM model,
or a DraftRule for dry runs); a "transaction" anything with merchant_name,
category and amount.

Evaluation order:
  priority ascending, then created_at ascending, then id ascending. Rules
  that have not been saved yet (no created_at / id) sort after saved rules of
  the same priority. The first rule whose predicate holds wins; later rules
  are not evaluated.

Predicates (one per RuleType, see _PREDICATES):
  merchant          pattern containing ".*" or ".+" → case-insensitive regex
                    search; otherwise case-insensitive exact equality
                    (overlong, invalid and nested-repetition patterns are
                    refused: no match, logged)
  category          case-sensitive exact equality
  amount_threshold  abs(amount) within [min or 0, max or +inf], inclusive
  default           always matches
"""

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable

from backend.app.models.splitting_rule import MAX_MERCHANT_PATTERN_LENGTH, RuleType

logger = logging.getLogger(__name__)

WILDCARD_TOKENS = (".*", ".+")


@dataclass
class DraftRule:
    """An unsaved rule, used to preview matches before creating it."""
    rule_type: RuleType
    household_id: int | None = None
    rule_name: str = "Draft rule"
    priority: int = 100
    merchant_pattern: str | None = None
    category_match: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    split_percentage: dict | None = field(default_factory=dict)
    is_active: bool = True
    id: int | None = None
    created_at: datetime | None = None


# ── Helpers ────────────────────────────────────────────────────────────────

def coerce_rule_type(value) -> RuleType | None:
    """Returns the RuleType for an enum member or its string value, else None."""
    if isinstance(value, RuleType):
        return value
    try:
        return RuleType(value)
    except ValueError:
        return None


def to_decimal(value) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def is_wildcard_pattern(pattern: str | None) -> bool:
    return bool(pattern) and any(token in pattern for token in WILDCARD_TOKENS)


_COUNTED_REPEAT_RE = re.compile(r"\{(\d*)(,(\d*))?\}")


def _repeat_at(pattern: str, i: int) -> tuple[bool, int]:
    """
    Looks for a quantifier at pattern[i].

    Returns (repeats, length): repeats is True for *, + and {n,m} that allow
    more than one occurrence; length is how many characters the quantifier
    spans (0 when there is none). A trailing lazy/possessive marker is
    included in the length.
    """
    if i >= len(pattern):
        return False, 0

    char = pattern[i]
    if char in "*+":
        length = 1
    elif char == "?":
        return False, 1
    elif char == "{":
        counted = _COUNTED_REPEAT_RE.match(pattern, i)
        if counted is None:
            return False, 0
        low, comma, high = counted.group(1), counted.group(2), counted.group(3)
        if not low and not high:
            return False, 0
        length = counted.end() - i
        upper = high if comma else low
        if upper and int(upper) <= 1:
            return False, length
    else:
        return False, 0

    if i + length < len(pattern) and pattern[i + length] in "?+":
        length += 1
    return True, length


def has_nested_quantifier(pattern: str) -> bool:
    """
    True when a repeated group itself contains a repetition, e.g. "(a+)+",
    "(.*x)*" or "(\\w+\\s?){2,}". Such patterns backtrack exponentially on
    a non-matching input and are refused everywhere a pattern is compiled.
    """
    # One flag per open group: does anything inside it repeat?
    stack: list[bool] = [False]
    i = 0
    while i < len(pattern):
        char = pattern[i]

        if char == "\\":
            i += 2
            repeats, length = _repeat_at(pattern, i)
            stack[-1] = stack[-1] or repeats
            i += length
            continue

        if char == "[":
            i += 1
            if i < len(pattern) and pattern[i] == "^":
                i += 1
            if i < len(pattern) and pattern[i] == "]":
                i += 1
            while i < len(pattern) and pattern[i] != "]":
                i += 2 if pattern[i] == "\\" else 1
            i += 1
            repeats, length = _repeat_at(pattern, i)
            stack[-1] = stack[-1] or repeats
            i += length
            continue

        if char == "(":
            stack.append(False)
            i += 1
            # "(?:", "(?P<name>", "(?=" ... : the "?" is not a quantifier.
            if i < len(pattern) and pattern[i] == "?":
                i += 1
            continue

        if char == ")":
            inner_repeats = stack.pop() if len(stack) > 1 else False
            i += 1
            repeats, length = _repeat_at(pattern, i)
            if repeats and inner_repeats:
                return True
            stack[-1] = stack[-1] or repeats or inner_repeats
            i += length
            continue

        i += 1
        repeats, length = _repeat_at(pattern, i)
        stack[-1] = stack[-1] or repeats
        i += length

    return False


@functools.lru_cache(maxsize=512)
def _compile_pattern(pattern: str) -> re.Pattern | None:
    """Compiles a merchant pattern, or returns None if it must be refused."""
    if len(pattern) > MAX_MERCHANT_PATTERN_LENGTH:
        logger.warning(
            "Refusing merchant pattern longer than %d characters",
            MAX_MERCHANT_PATTERN_LENGTH,
        )
        return None
    if has_nested_quantifier(pattern):
        logger.warning("Refusing merchant pattern with nested repetition %r", pattern)
        return None
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        logger.warning("Refusing invalid merchant pattern %r: %s", pattern, exc)
        return None


def rule_sort_key(rule) -> tuple:
    """Deterministic evaluation order: priority, then created_at, then id."""
    created_at = getattr(rule, "created_at", None)
    rule_id = getattr(rule, "id", None)
    return (
        rule.priority,
        created_at is None,
        created_at.timestamp() if created_at is not None else 0.0,
        rule_id is None,
        rule_id or 0,
    )


def sort_rules(rules: Iterable) -> list:
    """Returns the active rules in evaluation order."""
    return sorted((r for r in rules if r.is_active), key=rule_sort_key)


# ── Predicates ─────────────────────────────────────────────────────────────

def _matches_merchant(transaction, rule) -> bool:
    pattern = rule.merchant_pattern
    merchant_name = transaction.merchant_name
    if not pattern or not merchant_name:
        return False

    if is_wildcard_pattern(pattern):
        compiled = _compile_pattern(pattern)
        return compiled is not None and compiled.search(merchant_name) is not None

    return merchant_name.casefold() == pattern.casefold()


def _matches_category(transaction, rule) -> bool:
    if rule.category_match is None or transaction.category is None:
        return False
    return transaction.category == rule.category_match


def _matches_amount_threshold(transaction, rule) -> bool:
    amount = abs(to_decimal(transaction.amount))
    lower = to_decimal(rule.min_amount) if rule.min_amount is not None else Decimal("0")
    if amount < lower:
        return False
    if rule.max_amount is not None and amount > to_decimal(rule.max_amount):
        return False
    return True


def _matches_default(transaction, rule) -> bool:
    return True


_PREDICATES: dict[RuleType, Callable[[object, object], bool]] = {
    RuleType.MERCHANT:         _matches_merchant,
    RuleType.CATEGORY:         _matches_category,
    RuleType.AMOUNT_THRESHOLD: _matches_amount_threshold,
    RuleType.DEFAULT:          _matches_default,
}

if set(_PREDICATES) != set(RuleType):
    raise RuntimeError(
        f"rule_matcher has no predicate for: {set(RuleType) - set(_PREDICATES)}"
    )


# ── Public API ─────────────────────────────────────────────────────────────

def rule_matches(transaction, rule) -> bool:
    """True if `rule`'s predicate holds for `transaction`. Unknown types never match."""
    rule_type = coerce_rule_type(rule.rule_type)
    if rule_type is None:
        return False
    return _PREDICATES[rule_type](transaction, rule)


def find_matching_rule(transaction, rules: Iterable):
    """
    Returns the first active rule, in evaluation order, that matches
    `transaction`, or None.
    """
    for rule in sort_rules(rules):
        if rule_matches(transaction, rule):
            return rule
    return None


def find_all_matching_rules(transaction, rules: Iterable) -> list:
    """Every active rule that matches, in evaluation order. Used for previews."""
    return [rule for rule in sort_rules(rules) if rule_matches(transaction, rule)]


def preview_draft_rule(draft, transactions: Iterable) -> list:
    """Returns the transactions the draft rule would match on its own."""
    return [t for t in transactions if rule_matches(t, draft)]


def get_rule_match_statistics(transactions: Iterable, rules: Iterable) -> dict:
    """
    Dry-run summary of how a rule set would categorize `transactions`.

    Returns:
        {"total": int, "matched": int, "unmatched": int,
         "matches_by_rule": {rule_id: count}}
    """
    ordered = sort_rules(rules)
    total = 0
    matches_by_rule: dict = {}

    for transaction in transactions:
        total += 1
        for rule in ordered:
            if rule_matches(transaction, rule):
                matches_by_rule[rule.id] = matches_by_rule.get(rule.id, 0) + 1
                break

    matched = sum(matches_by_rule.values())
    return {
        "total": total,
        "matched": matched,
        "unmatched": total - matched,
        "matches_by_rule": matches_by_rule,
    }
