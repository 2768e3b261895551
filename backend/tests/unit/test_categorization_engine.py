"""
tests/unit/test_categorization_engine.py — Unit tests for services/categorization_engine.py.

What this file proves:
  - Single application: no match writes nothing; a match writes the rule,
    confidence, shared flag and split through the LedgerStore
  - Rules of other households are never applied
  - Batch: categorized + uncategorized == total == len(input), results in
    input order, and the outcome does not depend on chunk size or worker count
  - Batch: one failing item is reported on its own result and does not
    affect its neighbours
  - Review queue paging is delegated to the store

The store is an in-memory fake; no database, no Flask app context.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from backend.app.errors import AppError, ErrorCode
from backend.app.models.splitting_rule import RuleType
from backend.app.services.categorization_engine import (
    BatchCategorizationResult,
    RuleApplicationResult,
    apply_rule_to_transaction,
    apply_rules_to_transactions,
    get_uncategorized_transactions,
)

HOUSEHOLD_ID = 1


class FakeLedgerStore:
    """Records writes in memory. Ids listed in `failing_ids` raise on write."""

    def __init__(self, failing_ids=(), error=None):
        self.writes: dict[int, dict] = {}
        self.failing_ids = set(failing_ids)
        self.error = error
        self._lock = threading.Lock()
        self.list_calls: list[tuple] = []

    def record_categorization(self, transaction_id, **fields):
        if transaction_id in self.failing_ids:
            raise self.error or RuntimeError(f"write failed for {transaction_id}")
        with self._lock:
            self.writes[transaction_id] = fields

    def list_uncategorized(self, household_id, min_confidence, max_confidence, limit, offset):
        self.list_calls.append((household_id, min_confidence, max_confidence, limit, offset))
        return ["page"], 42


def _txn(id, merchant_name="Tesco", category="groceries", amount="25.00"):
    return SimpleNamespace(id=id, merchant_name=merchant_name, category=category, amount=Decimal(amount))


def _rule(rule_type, id=1, priority=100, household_id=HOUSEHOLD_ID, split=None, **criteria):
    values = {
        "merchant_pattern": None,
        "category_match": None,
        "min_amount": None,
        "max_amount": None,
    }
    values.update(criteria)
    return SimpleNamespace(
        id=id,
        household_id=household_id,
        rule_name=f"Rule {id}",
        rule_type=rule_type,
        priority=priority,
        is_active=True,
        created_at=datetime(2026, 1, 1) + timedelta(seconds=id),
        split_percentage={"1": 50, "2": 50} if split is None else split,
        **values,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Single transaction
# ═══════════════════════════════════════════════════════════════════════════

class TestApplyRuleToTransaction:

    def test_exact_merchant_rule_applies_with_confidence_100(self):
        store = FakeLedgerStore()
        rule = _rule(RuleType.MERCHANT, id=7, merchant_pattern="Tesco")

        result = apply_rule_to_transaction(_txn(1), [rule], HOUSEHOLD_ID, store)

        assert result == RuleApplicationResult(
            transaction_id=1,
            rule_applied=True,
            confidence_score=100,
            is_shared_expense=True,
            rule_id=7,
            rule_name="Rule 7",
            shared_with_household_id=HOUSEHOLD_ID,
            split_percentage={"1": 50, "2": 50},
        )
        assert store.writes[1] == {
            "splitting_rule_id": 7,
            "is_shared_expense": True,
            "shared_with_household_id": HOUSEHOLD_ID,
            "confidence_score": 100,
            "split_percentage": {"1": 50, "2": 50},
        }

    def test_wildcard_merchant_rule_applies_with_confidence_85(self):
        store = FakeLedgerStore()
        rule = _rule(RuleType.MERCHANT, merchant_pattern="Tesco.*")

        result = apply_rule_to_transaction(_txn(1, merchant_name="Tesco Metro"), [rule], HOUSEHOLD_ID, store)

        assert result.confidence_score == 85
        assert store.writes[1]["confidence_score"] == 85

    def test_no_match_writes_nothing(self):
        store = FakeLedgerStore()
        rule = _rule(RuleType.MERCHANT, merchant_pattern="Aldi")

        result = apply_rule_to_transaction(_txn(1), [rule], HOUSEHOLD_ID, store)

        assert result.rule_applied is False
        assert result.confidence_score == 0
        assert result.is_shared_expense is False
        assert result.rule_id is None
        assert store.writes == {}

    def test_empty_split_keeps_transaction_personal(self):
        store = FakeLedgerStore()
        rule = _rule(RuleType.DEFAULT, split={})

        result = apply_rule_to_transaction(_txn(1), [rule], HOUSEHOLD_ID, store)

        assert result.rule_applied is True
        assert result.confidence_score == 60
        assert result.is_shared_expense is False
        assert result.shared_with_household_id is None
        assert store.writes[1]["split_percentage"] is None

    def test_rules_of_other_households_are_ignored(self):
        store = FakeLedgerStore()
        foreign = _rule(RuleType.DEFAULT, household_id=2)

        result = apply_rule_to_transaction(_txn(1), [foreign], HOUSEHOLD_ID, store)

        assert result.rule_applied is False
        assert store.writes == {}

    def test_store_error_propagates_for_single_application(self):
        store = FakeLedgerStore(failing_ids={1})
        with pytest.raises(RuntimeError):
            apply_rule_to_transaction(_txn(1), [_rule(RuleType.DEFAULT)], HOUSEHOLD_ID, store)


# ═══════════════════════════════════════════════════════════════════════════
# Batch
# ═══════════════════════════════════════════════════════════════════════════

def _mixed_batch(count=11):
    """Every third transaction is from a merchant no rule matches."""
    return [
        _txn(i, merchant_name="Unknown Shop" if i % 3 == 0 else "Tesco", category=None)
        for i in range(1, count + 1)
    ]


class TestApplyRulesToTransactions:

    def test_counts_add_up(self):
        store = FakeLedgerStore()
        rules = [_rule(RuleType.MERCHANT, merchant_pattern="Tesco")]

        batch = apply_rules_to_transactions(_mixed_batch(), rules, HOUSEHOLD_ID, store, chunk_size=4)

        assert batch.total == 11
        assert batch.categorized == 8
        assert batch.uncategorized == 3
        assert batch.failed == 0
        assert batch.categorized + batch.uncategorized == batch.total

    def test_results_are_in_input_order(self):
        store = FakeLedgerStore()
        transactions = list(reversed(_mixed_batch()))

        batch = apply_rules_to_transactions(
            transactions,
            [_rule(RuleType.DEFAULT)],
            HOUSEHOLD_ID,
            store,
            chunk_size=2,
            max_workers=4,
        )

        assert [r.transaction_id for r in batch.results] == [t.id for t in transactions]

    @pytest.mark.parametrize("chunk_size, max_workers", [(1, 1), (3, 2), (50, 8), (100, 1)])
    def test_outcome_does_not_depend_on_chunking(self, chunk_size, max_workers):
        rules = [
            _rule(RuleType.MERCHANT, id=1, priority=10, merchant_pattern="Tesco"),
            _rule(RuleType.AMOUNT_THRESHOLD, id=2, priority=20, min_amount=Decimal("100.00")),
        ]
        transactions = _mixed_batch() + [_txn(99, merchant_name="IKEA", amount="150.00")]

        reference = apply_rules_to_transactions(
            transactions, rules, HOUSEHOLD_ID, FakeLedgerStore(), chunk_size=1, max_workers=1,
        )
        batch = apply_rules_to_transactions(
            transactions, rules, HOUSEHOLD_ID, FakeLedgerStore(),
            chunk_size=chunk_size, max_workers=max_workers,
        )

        assert batch.to_dict() == reference.to_dict()

    def test_one_failing_item_is_isolated(self):
        store = FakeLedgerStore(failing_ids={3})
        transactions = [_txn(i) for i in range(1, 6)]

        batch = apply_rules_to_transactions(
            transactions, [_rule(RuleType.DEFAULT)], HOUSEHOLD_ID, store, chunk_size=2, max_workers=2,
        )

        assert batch.total == 5
        assert batch.categorized == 4
        assert batch.uncategorized == 1
        assert batch.failed == 1
        failed = batch.results[2]
        assert failed.transaction_id == 3
        assert failed.rule_applied is False
        assert failed.error == "write failed for 3"
        assert set(store.writes) == {1, 2, 4, 5}

    def test_app_error_message_is_reported(self):
        conflict = AppError(ErrorCode.CONCURRENT_MODIFICATION, "Transaction 2 was modified concurrently.", 409)
        store = FakeLedgerStore(failing_ids={2}, error=conflict)

        batch = apply_rules_to_transactions(
            [_txn(1), _txn(2)], [_rule(RuleType.DEFAULT)], HOUSEHOLD_ID, store, max_workers=1,
        )

        assert batch.results[1].error == "Transaction 2 was modified concurrently."
        assert batch.failed == 1

    def test_empty_input(self):
        batch = apply_rules_to_transactions([], [_rule(RuleType.DEFAULT)], HOUSEHOLD_ID, FakeLedgerStore())
        assert batch == BatchCategorizationResult()

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            apply_rules_to_transactions([_txn(1)], [], HOUSEHOLD_ID, FakeLedgerStore(), chunk_size=0)

    def test_to_dict_shape(self):
        batch = apply_rules_to_transactions(
            [_txn(1)], [_rule(RuleType.CATEGORY, category_match="groceries")], HOUSEHOLD_ID,
            FakeLedgerStore(), max_workers=1,
        )
        payload = batch.to_dict()
        assert payload["total"] == 1
        assert payload["categorized"] == 1
        assert payload["results"][0]["confidence_score"] == 95
        assert payload["results"][0]["error"] is None


def test_get_uncategorized_transactions_delegates_to_store():
    store = FakeLedgerStore()

    page, total = get_uncategorized_transactions(HOUSEHOLD_ID, store, limit=10, offset=20)

    assert (page, total) == (["page"], 42)
    assert store.list_calls == [(HOUSEHOLD_ID, 0, 70, 10, 20)]
