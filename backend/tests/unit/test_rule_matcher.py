"""
tests/unit/test_rule_matcher.py — Unit tests for services/rule_matcher.py.

What this file proves:
  - Each rule type's predicate (merchant exact / wildcard, category,
    amount threshold bounds, default)
  - First-match-wins evaluation in priority order
  - Deterministic tie-break on equal priority: created_at, then id
  - Inactive rules and unknown rule types never match
  - Overlong, invalid and nested-repetition merchant patterns are refused,
    not raised

Pure functions only: no database, no Flask app context. Rules and
transactions are SimpleNamespace objects carrying the attributes the matcher reads.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from backend.app.models.splitting_rule import RuleType
from backend.app.services import rule_matcher
from backend.app.services.rule_matcher import (
    DraftRule,
    find_all_matching_rules,
    find_matching_rule,
    get_rule_match_statistics,
    has_nested_quantifier,
    preview_draft_rule,
    rule_matches,
    sort_rules,
)

_BASE_TIME = datetime(2026, 1, 1, 12, 0, 0)


def _txn(merchant_name="Tesco", category="groceries", amount="25.00", id=1):
    return SimpleNamespace(
        id=id,
        merchant_name=merchant_name,
        category=category,
        amount=Decimal(amount),
    )


def _rule(rule_type, id=1, priority=100, created_offset=0, is_active=True, **criteria):
    values = {
        "merchant_pattern": None,
        "category_match": None,
        "min_amount": None,
        "max_amount": None,
    }
    values.update(criteria)
    return SimpleNamespace(
        id=id,
        household_id=1,
        rule_name=f"rule-{id}",
        rule_type=rule_type,
        priority=priority,
        is_active=is_active,
        created_at=_BASE_TIME + timedelta(seconds=created_offset),
        split_percentage={"1": 50, "2": 50},
        **values,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Predicates
# ═══════════════════════════════════════════════════════════════════════════

class TestMerchantPredicate:

    def test_exact_match_ignores_case(self):
        rule = _rule(RuleType.MERCHANT, merchant_pattern="tesco")
        assert rule_matches(_txn(merchant_name="TESCO"), rule)

    def test_exact_pattern_is_not_a_substring_match(self):
        rule = _rule(RuleType.MERCHANT, merchant_pattern="Tesco")
        assert not rule_matches(_txn(merchant_name="Tesco Extra"), rule)

    def test_wildcard_pattern_is_a_case_insensitive_search(self):
        rule = _rule(RuleType.MERCHANT, merchant_pattern="tesco.*")
        assert rule_matches(_txn(merchant_name="TESCO EXPRESS"), rule)

    def test_plus_wildcard(self):
        rule = _rule(RuleType.MERCHANT, merchant_pattern="Uber.+")
        assert rule_matches(_txn(merchant_name="Uber Eats"), rule)
        assert not rule_matches(_txn(merchant_name="Uber"), rule)

    def test_missing_merchant_name_never_matches(self):
        rule = _rule(RuleType.MERCHANT, merchant_pattern="Tesco.*")
        assert not rule_matches(_txn(merchant_name=None), rule)

    def test_invalid_regex_is_refused_without_raising(self):
        rule = _rule(RuleType.MERCHANT, merchant_pattern="(Tesco.*")
        assert not rule_matches(_txn(merchant_name="Tesco"), rule)

    def test_overlong_pattern_is_refused(self):
        pattern = "a" * 250 + ".*"
        rule = _rule(RuleType.MERCHANT, merchant_pattern=pattern)
        assert not rule_matches(_txn(merchant_name="a" * 300), rule)

    def test_nested_repetition_is_refused_without_backtracking(self):
        rule = _rule(RuleType.MERCHANT, merchant_pattern="(.+)+!")
        started = time.perf_counter()
        assert not rule_matches(_txn(merchant_name="a" * 40), rule)
        assert time.perf_counter() - started < 0.5

    def test_nested_repetition_does_not_stop_later_rules(self):
        unsafe = _rule(RuleType.MERCHANT, id=1, priority=1, merchant_pattern="(\\w+\\s?)*x.*")
        fallback = _rule(RuleType.DEFAULT, id=2, priority=999)
        assert find_matching_rule(_txn(merchant_name="a" * 40), [unsafe, fallback]) is fallback


class TestNestedQuantifier:

    @pytest.mark.parametrize("pattern", [
        "(.+)+!",
        "(a+)+",
        "(.*x)*",
        "(a*)*b",
        "((ab)+c)+.*",
        "(\\w+\\s?){2,}",
        "([a-z]+)*.*",
        "(?:Tesco.*)+",
    ])
    def test_unsafe_patterns(self, pattern):
        assert has_nested_quantifier(pattern)

    @pytest.mark.parametrize("pattern", [
        "Tesco.*",
        "Uber.+",
        "(Tesco|Sainsbury|Asda|Morrisons|Waitrose|Aldi|Lidl|Co-op).*",
        "(Tesco.*)?",
        "(ab){1}.*",
        "\\(a+\\)+.*",
        "[(a+)]+.*",
        "(?i)netflix.*",
    ])
    def test_safe_patterns(self, pattern):
        assert not has_nested_quantifier(pattern)


class TestCategoryPredicate:

    def test_exact_match(self):
        rule = _rule(RuleType.CATEGORY, category_match="groceries")
        assert rule_matches(_txn(category="groceries"), rule)

    def test_case_sensitive(self):
        rule = _rule(RuleType.CATEGORY, category_match="groceries")
        assert not rule_matches(_txn(category="Groceries"), rule)

    def test_missing_category_never_matches(self):
        rule = _rule(RuleType.CATEGORY, category_match="groceries")
        assert not rule_matches(_txn(category=None), rule)


class TestAmountThresholdPredicate:

    @pytest.mark.parametrize("amount, expected", [
        ("99.99", False),
        ("100.00", True),
        ("250.00", True),
        ("500.00", True),
        ("500.01", False),
    ])
    def test_bounds_are_inclusive(self, amount, expected):
        rule = _rule(
            RuleType.AMOUNT_THRESHOLD,
            min_amount=Decimal("100.00"),
            max_amount=Decimal("500.00"),
        )
        assert rule_matches(_txn(amount=amount), rule) is expected

    def test_uses_absolute_amount(self):
        rule = _rule(RuleType.AMOUNT_THRESHOLD, min_amount=Decimal("100.00"))
        assert rule_matches(_txn(amount="-150.00"), rule)

    def test_missing_min_means_zero(self):
        rule = _rule(RuleType.AMOUNT_THRESHOLD, max_amount=Decimal("10.00"))
        assert rule_matches(_txn(amount="0.00"), rule)
        assert not rule_matches(_txn(amount="10.01"), rule)

    def test_missing_max_means_unbounded(self):
        rule = _rule(RuleType.AMOUNT_THRESHOLD, min_amount=Decimal("100.00"))
        assert rule_matches(_txn(amount="999999.99"), rule)


class TestDefaultPredicate:

    def test_matches_anything(self):
        rule = _rule(RuleType.DEFAULT)
        assert rule_matches(_txn(merchant_name=None, category=None, amount="0.01"), rule)


def test_string_rule_type_is_accepted():
    rule = _rule("category", category_match="groceries")
    assert rule_matches(_txn(), rule)


def test_unknown_rule_type_never_matches():
    rule = _rule("weekday")
    assert not rule_matches(_txn(), rule)


def test_every_rule_type_has_a_predicate():
    assert set(rule_matcher._PREDICATES) == set(RuleType)


# ═══════════════════════════════════════════════════════════════════════════
# Ordering
# ═══════════════════════════════════════════════════════════════════════════

class TestFindMatchingRule:

    def test_lowest_priority_number_wins(self):
        category = _rule(RuleType.CATEGORY, id=1, priority=20, category_match="groceries")
        merchant = _rule(RuleType.MERCHANT, id=2, priority=10, merchant_pattern="Tesco")
        assert find_matching_rule(_txn(), [category, merchant]) is merchant

    def test_first_match_wins_even_if_later_rules_also_match(self):
        first = _rule(RuleType.CATEGORY, id=1, priority=1, category_match="groceries")
        default = _rule(RuleType.DEFAULT, id=2, priority=999)
        assert find_matching_rule(_txn(), [default, first]) is first

    def test_falls_through_to_later_rules(self):
        merchant = _rule(RuleType.MERCHANT, id=1, priority=1, merchant_pattern="Sainsbury")
        default = _rule(RuleType.DEFAULT, id=2, priority=999)
        assert find_matching_rule(_txn(), [merchant, default]) is default

    def test_no_match_returns_none(self):
        merchant = _rule(RuleType.MERCHANT, merchant_pattern="Sainsbury")
        assert find_matching_rule(_txn(), [merchant]) is None

    def test_empty_rule_list(self):
        assert find_matching_rule(_txn(), []) is None

    def test_inactive_rules_are_skipped(self):
        inactive = _rule(RuleType.DEFAULT, id=1, priority=1, is_active=False)
        assert find_matching_rule(_txn(), [inactive]) is None

    def test_equal_priority_earliest_created_wins(self):
        older = _rule(RuleType.DEFAULT, id=9, priority=50, created_offset=0)
        newer = _rule(RuleType.DEFAULT, id=3, priority=50, created_offset=60)
        assert find_matching_rule(_txn(), [newer, older]) is older

    def test_equal_priority_and_created_at_lowest_id_wins(self):
        a = _rule(RuleType.DEFAULT, id=7, priority=50)
        b = _rule(RuleType.DEFAULT, id=4, priority=50)
        assert find_matching_rule(_txn(), [a, b]) is b
        assert find_matching_rule(_txn(), [b, a]) is b

    def test_unsaved_rules_sort_after_saved_rules_of_same_priority(self):
        saved = _rule(RuleType.DEFAULT, id=1, priority=50)
        draft = DraftRule(rule_type=RuleType.DEFAULT, priority=50)
        assert sort_rules([draft, saved]) == [saved, draft]


def test_find_all_matching_rules_in_evaluation_order():
    default = _rule(RuleType.DEFAULT, id=1, priority=999)
    category = _rule(RuleType.CATEGORY, id=2, priority=10, category_match="groceries")
    other = _rule(RuleType.CATEGORY, id=3, priority=5, category_match="dining")
    assert find_all_matching_rules(_txn(), [default, category, other]) == [category, default]


# ═══════════════════════════════════════════════════════════════════════════
# Dry runs
# ═══════════════════════════════════════════════════════════════════════════

def test_preview_draft_rule_returns_matching_transactions():
    draft = DraftRule(rule_type=RuleType.MERCHANT, merchant_pattern="Tesco.*")
    transactions = [
        _txn(id=1, merchant_name="Tesco Extra"),
        _txn(id=2, merchant_name="Aldi"),
        _txn(id=3, merchant_name="tesco metro"),
    ]
    assert [t.id for t in preview_draft_rule(draft, transactions)] == [1, 3]


def test_get_rule_match_statistics_counts_first_match_only():
    category = _rule(RuleType.CATEGORY, id=1, priority=10, category_match="groceries")
    default = _rule(RuleType.DEFAULT, id=2, priority=999)
    merchant = _rule(RuleType.MERCHANT, id=3, priority=20, merchant_pattern="Nowhere")
    transactions = [
        _txn(id=1, category="groceries"),
        _txn(id=2, category="groceries"),
        _txn(id=3, category="transport"),
    ]

    stats = get_rule_match_statistics(transactions, [category, merchant])
    assert stats == {"total": 3, "matched": 2, "unmatched": 1, "matches_by_rule": {1: 2}}

    stats = get_rule_match_statistics(transactions, [category, default])
    assert stats["matched"] == 3
    assert stats["matches_by_rule"] == {1: 2, 2: 1}
