"""
models/rule_feedback.py — RuleFeedback analytics table.

Append-only record of what a user did with an automatic categorization:
accepted it, rejected it, or overrode it. Written best-effort after the
primary change commits; a missing row never means the primary change failed.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.extensions import db
from backend.app.models.column_types import enum_column_type, json_column_type


class FeedbackAction(str, enum.Enum):
    ACCEPTED   = "accepted"
    REJECTED   = "rejected"
    OVERRIDDEN = "overridden"


class RuleFeedback(db.Model):
    __tablename__ = "rule_feedback"

    __table_args__ = (
        CheckConstraint(
            "original_confidence_score IS NULL OR "
            "(original_confidence_score >= 0 AND original_confidence_score <= 100)",
            name="ck_rule_feedback_confidence_range",
        ),
        Index("idx_rule_feedback_rule_action", "rule_id", "user_action"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    rule_id: Mapped[int | None] = mapped_column(
        ForeignKey("splitting_rules.id", ondelete="RESTRICT"),
        nullable=True,
    )

    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    user_action: Mapped[FeedbackAction] = mapped_column(
        enum_column_type(FeedbackAction, "feedback_action_enum"),
        nullable=False,
    )

    original_confidence_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    override_details: Mapped[dict | None] = mapped_column(
        json_column_type(),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<RuleFeedback id={self.id} "
            f"transaction_id={self.transaction_id} "
            f"rule_id={self.rule_id} "
            f"action={self.user_action}>"
        )
