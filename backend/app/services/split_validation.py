"""
services/split_validation.py — Validation of a manual personal/shared split.

The engine never computes splits itself; manual-split callers send the
amounts and percentages and this module checks them against the
transaction. Pure, no session.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal

from backend.app.services.rule_matcher import to_decimal

AMOUNT_TOLERANCE = Decimal("0.01")
PERCENTAGE_TOLERANCE = 0.01


@dataclass(frozen=True)
class SplitValidationResult:
    is_valid: bool
    error: str | None = None

    def to_dict(self) -> dict:
        return {"is_valid": self.is_valid, "error": self.error}


def percentages_sum_to_100(split_percentage: dict) -> bool:
    total = math.fsum(float(v) for v in split_percentage.values())
    return abs(total - 100) <= PERCENTAGE_TOLERANCE


def validate_split_transaction(transaction, split: dict) -> SplitValidationResult:
    """
    Checks a manual split of `transaction`.

    Args:
        transaction: anything with an `amount` (signed).
        split:       {"personal_amount", "shared_amount", "split_percentage"}.

    Fails when either amount is negative, when the two amounts differ from
    abs(transaction.amount) by more than one cent, or when the percentages
    do not sum to 100 (within 0.01).
    """
    personal = to_decimal(split["personal_amount"])
    shared = to_decimal(split["shared_amount"])

    if personal < 0 or shared < 0:
        return SplitValidationResult(False, "Split amounts must be non-negative")

    total = abs(to_decimal(transaction.amount))
    split_total = personal + shared
    if abs(split_total - total) > AMOUNT_TOLERANCE:
        return SplitValidationResult(
            False,
            f"Split amounts ({split_total}) must equal transaction total ({total})",
        )

    percentages = split.get("split_percentage") or {}
    if not percentages_sum_to_100(percentages):
        percentage_total = math.fsum(float(v) for v in percentages.values())
        return SplitValidationResult(
            False,
            f"Split percentages must sum to 100%, got {percentage_total:g}%",
        )

    return SplitValidationResult(True)
