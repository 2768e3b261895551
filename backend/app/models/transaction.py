"""
models/transaction.py — Transaction table definition (categorization subset).

Transactions are ingested by the bank-aggregation service. The rule engine
owns only the categorization columns below (is_shared_expense onwards).

Key design points:
  - `amount` is signed and uses Numeric(12, 2) — never Float. Matching and
    split validation work on abs(amount).
  - manual_override = true implies confidence_score = 100. splitting_rule_id
    is never cleared by an override; original_rule_id records the rule that
    was in force when the user first took over.
  - `version` is SQLAlchemy's optimistic concurrency counter. Every UPDATE
    carries "WHERE version = <loaded>", so an automatic application racing a
    manual override fails with StaleDataError instead of silently winning.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db
from backend.app.models.column_types import json_column_type


class Transaction(db.Model):
    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 100)",
            name="ck_transactions_confidence_range",
        ),
        CheckConstraint(
            "manual_override = false OR confidence_score = 100",
            name="ck_transactions_override_confidence",
        ),
        # Review queue: non-overridden rows by confidence, newest first.
        Index(
            "idx_transactions_review_queue",
            "manual_override",
            "confidence_score",
            "date",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    account_id: Mapped[int] = mapped_column(
        ForeignKey("financial_accounts.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    date: Mapped[date] = mapped_column(Date, nullable=False)

    # ── Categorization state ───────────────────────────────────────────────

    is_shared_expense: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    shared_with_household_id: Mapped[int | None] = mapped_column(
        ForeignKey("households.id", ondelete="SET NULL"),
        nullable=True,
    )

    # The rule last applied. Preserved across overrides.
    splitting_rule_id: Mapped[int | None] = mapped_column(
        ForeignKey("splitting_rules.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    # NULL = never evaluated. 0..100 otherwise.
    confidence_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    manual_override: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )

    original_rule_id: Mapped[int | None] = mapped_column(
        ForeignKey("splitting_rules.id", ondelete="RESTRICT"),
        nullable=True,
    )

    # Split currently in force (copied from the rule or the override).
    split_percentage: Mapped[dict | None] = mapped_column(
        json_column_type(),
        nullable=True,
    )

    # {"personal_amount": "..", "shared_amount": "..", "split_percentage": {..}}
    split_details: Mapped[dict | None] = mapped_column(
        json_column_type(),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ──────────────────────────────────────────────────────

    account: Mapped["FinancialAccount"] = relationship(  # noqa: F821
        "FinancialAccount",
        back_populates="transactions",
    )

    splitting_rule: Mapped["SplittingRule | None"] = relationship(  # noqa: F821
        "SplittingRule",
        foreign_keys=[splitting_rule_id],
    )

    overrides: Mapped[list["TransactionOverride"]] = relationship(  # noqa: F821
        "TransactionOverride",
        back_populates="transaction",
        order_by="TransactionOverride.id",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Transaction id={self.id} "
            f"account_id={self.account_id} "
            f"amount={self.amount} "
            f"rule={self.splitting_rule_id} "
            f"override={self.manual_override}>"
        )
