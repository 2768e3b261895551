"""
services/categorization_engine.py — Applies a household's rules to transactions.

Single transaction:
  1. Matcher picks the first matching rule (or none).
  2. No match → result with rule_applied=False, confidence 0, not shared.
     Nothing is written; the transaction waits for manual review.
  3. Match → Scorer gives the confidence; a non-empty split_percentage
     makes the transaction shared with the rule's household.
  4. The outcome is written through the LedgerStore.

Batch:
  Input is processed in fixed-size chunks (backpressure only; results do not
  depend on the chunk size). Within a chunk items run concurrently on a
  thread pool, and each item's outcome is captured on its own: an exception
  in one item becomes that item's `error` and counts as uncategorized. It is
  never re-raised, so one bad row cannot hide the results of its neighbours.
  categorized + uncategorized == total == len(input), always.

Callers are responsible for leaving manually overridden transactions out of
automatic passes.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Iterable

from backend.app.errors import AppError
from backend.app.services.confidence_scorer import calculate_confidence_score
from backend.app.services.ledger_store import LedgerStore
from backend.app.services.rule_matcher import find_matching_rule, sort_rules

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50
DEFAULT_MAX_WORKERS = 8

DEFAULT_MIN_CONFIDENCE = 0
DEFAULT_MAX_CONFIDENCE = 70
DEFAULT_PAGE_LIMIT = 50


@dataclass
class RuleApplicationResult:
    transaction_id: int
    rule_applied: bool
    confidence_score: int
    is_shared_expense: bool
    rule_id: int | None = None
    rule_name: str | None = None
    shared_with_household_id: int | None = None
    split_percentage: dict | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BatchCategorizationResult:
    total: int = 0
    categorized: int = 0
    uncategorized: int = 0
    # Items that raised; a subset of `uncategorized`.
    failed: int = 0
    results: list[RuleApplicationResult] = field(default_factory=list)

    def add(self, result: RuleApplicationResult) -> None:
        self.total += 1
        self.results.append(result)
        if result.rule_applied:
            self.categorized += 1
        else:
            self.uncategorized += 1
            if result.error is not None:
                self.failed += 1

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "categorized": self.categorized,
            "uncategorized": self.uncategorized,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


# ── Single transaction ─────────────────────────────────────────────────────

def apply_rule_to_transaction(
        transaction,
        rules: Iterable,
        household_id: int,
        store: LedgerStore,
) -> RuleApplicationResult:
    """
    Categorizes one transaction with the household's rules and persists the
    outcome. Rules belonging to other households are ignored.
    """
    household_rules = [r for r in rules if r.household_id == household_id]
    rule = find_matching_rule(transaction, household_rules)

    if rule is None:
        return RuleApplicationResult(
            transaction_id=transaction.id,
            rule_applied=False,
            confidence_score=0,
            is_shared_expense=False,
        )

    confidence_score = calculate_confidence_score(transaction, rule)
    is_shared = bool(rule.split_percentage)
    shared_with_household_id = rule.household_id if is_shared else None
    split_percentage = dict(rule.split_percentage) if is_shared else None

    store.record_categorization(
        transaction.id,
        splitting_rule_id=rule.id,
        is_shared_expense=is_shared,
        shared_with_household_id=shared_with_household_id,
        confidence_score=confidence_score,
        split_percentage=split_percentage,
    )

    return RuleApplicationResult(
        transaction_id=transaction.id,
        rule_applied=True,
        confidence_score=confidence_score,
        is_shared_expense=is_shared,
        rule_id=rule.id,
        rule_name=rule.rule_name,
        shared_with_household_id=shared_with_household_id,
        split_percentage=split_percentage,
    )


# ── Batch ──────────────────────────────────────────────────────────────────

def _failed_result(transaction_id: int, exc: Exception) -> RuleApplicationResult:
    message = exc.message if isinstance(exc, AppError) else str(exc) or type(exc).__name__
    return RuleApplicationResult(
        transaction_id=transaction_id,
        rule_applied=False,
        confidence_score=0,
        is_shared_expense=False,
        error=message,
    )


def _settle(transaction, future: Future) -> RuleApplicationResult:
    try:
        return future.result()
    except Exception as exc:
        logger.warning(
            "Categorization failed for transaction %s: %s",
            transaction.id, exc,
            exc_info=not isinstance(exc, AppError),
        )
        return _failed_result(transaction.id, exc)


def _apply_inline(transaction, rules, household_id, store) -> RuleApplicationResult:
    try:
        return apply_rule_to_transaction(transaction, rules, household_id, store)
    except Exception as exc:
        logger.warning(
            "Categorization failed for transaction %s: %s",
            transaction.id, exc,
            exc_info=not isinstance(exc, AppError),
        )
        return _failed_result(transaction.id, exc)


def apply_rules_to_transactions(
        transactions: Iterable,
        rules: Iterable,
        household_id: int,
        store: LedgerStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_workers: int = DEFAULT_MAX_WORKERS,
) -> BatchCategorizationResult:
    """
    Categorizes many transactions, chunk by chunk, isolating failures per item.

    Results are returned in input order. With max_workers <= 1 the items run
    sequentially on the calling thread.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be a positive integer")

    items = list(transactions)
    ordered_rules = sort_rules(r for r in rules if r.household_id == household_id)
    batch = BatchCategorizationResult()

    if max_workers <= 1:
        for transaction in items:
            batch.add(_apply_inline(transaction, ordered_rules, household_id, store))
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            for start in range(0, len(items), chunk_size):
                chunk = items[start:start + chunk_size]
                futures = [
                    pool.submit(
                        apply_rule_to_transaction,
                        transaction, ordered_rules, household_id, store,
                    )
                    for transaction in chunk
                ]
                # Wait for the whole chunk before starting the next one.
                for transaction, future in zip(chunk, futures):
                    batch.add(_settle(transaction, future))

    logger.info(
        "Categorized household %s batch: total=%d categorized=%d uncategorized=%d failed=%d",
        household_id, batch.total, batch.categorized, batch.uncategorized, batch.failed,
    )
    return batch


# ── Review queue ───────────────────────────────────────────────────────────

def get_uncategorized_transactions(
        household_id: int,
        store: LedgerStore,
        min_confidence: int = DEFAULT_MIN_CONFIDENCE,
        max_confidence: int = DEFAULT_MAX_CONFIDENCE,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
) -> tuple[list, int]:
    """
    Transactions of the household that still need a human decision.

    Returns (page, total) — not manually overridden, confidence absent or
    within [min_confidence, max_confidence], most recent first.
    """
    return store.list_uncategorized(
        household_id,
        min_confidence,
        max_confidence,
        limit,
        offset,
    )
