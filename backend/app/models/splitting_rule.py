"""
models/splitting_rule.py — SplittingRule table definition.

A household-scoped, user-authored classification rule. The engine evaluates
a household's active rules in ascending priority order (ties broken by
created_at, then id) and the first rule whose predicate holds decides whether
a transaction is shared and how it is split.

Key design points:
  - Only the criteria column(s) relevant to rule_type are populated; the
    service layer clears the others on save. A default rule has none.
  - split_percentage maps household member id (as a string key, since JSON
    object keys are strings) to a percentage. When non-empty, the values sum
    to 100 within 0.01 — checked by the schema, not the DB.
  - Rules are never hard-deleted; deactivation sets is_active = false so that
    transactions and feedback rows can keep referencing them.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    false,
    func,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db
from backend.app.models.column_types import enum_column_type, json_column_type


class RuleType(str, enum.Enum):
    """Closed set of rule kinds. Every dispatch table in the services is keyed by all of these."""
    MERCHANT         = "merchant"
    CATEGORY         = "category"
    AMOUNT_THRESHOLD = "amount_threshold"
    DEFAULT          = "default"


MIN_PRIORITY     = 1
MAX_PRIORITY     = 1000
DEFAULT_PRIORITY = 100

MAX_MERCHANT_PATTERN_LENGTH = 200


class SplittingRule(db.Model):
    __tablename__ = "splitting_rules"

    __table_args__ = (
        CheckConstraint(
            f"priority BETWEEN {MIN_PRIORITY} AND {MAX_PRIORITY}",
            name="ck_splitting_rules_priority_range",
        ),
        CheckConstraint(
            "min_amount IS NULL OR min_amount >= 0",
            name="ck_splitting_rules_min_amount_nonneg",
        ),
        CheckConstraint(
            "max_amount IS NULL OR min_amount IS NULL OR max_amount > min_amount",
            name="ck_splitting_rules_amount_range",
        ),
        CheckConstraint(
            "LENGTH(TRIM(rule_name)) > 0",
            name="ck_splitting_rules_name_nonempty",
        ),
        # The matcher always loads "active rules of household X".
        Index(
            "idx_splitting_rules_household_active",
            "household_id",
            "is_active",
            "priority",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id", ondelete="RESTRICT"),
        nullable=False,
    )

    rule_name: Mapped[str] = mapped_column(String(100), nullable=False)

    rule_type: Mapped[RuleType] = mapped_column(
        enum_column_type(RuleType, "rule_type_enum"),
        nullable=False,
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
        server_default=str(DEFAULT_PRIORITY),
    )

    # merchant rules only. Exact string, or a pattern containing .* / .+
    merchant_pattern: Mapped[str | None] = mapped_column(
        String(MAX_MERCHANT_PATTERN_LENGTH),
        nullable=True,
    )

    # category rules only. Compared case-sensitively.
    category_match: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # amount_threshold rules only. Bounds on abs(amount), inclusive.
    min_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    split_percentage: Mapped[dict | None] = mapped_column(
        json_column_type(),
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )

    # Consumed once by the historical back-fill job; the per-transaction
    # pipeline ignores it.
    apply_to_existing_transactions: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    created_by: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    household: Mapped["Household"] = relationship(  # noqa: F821
        "Household",
        back_populates="rules",
    )

    creator: Mapped["User"] = relationship("User")  # noqa: F821

    @property
    def is_shared(self) -> bool:
        """True if applying this rule marks a transaction as shared."""
        return bool(self.split_percentage)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<SplittingRule id={self.id} "
            f"household_id={self.household_id} "
            f"type={self.rule_type} "
            f"priority={self.priority} "
            f"active={self.is_active}>"
        )
