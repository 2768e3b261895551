"""
models/transaction_override.py — TransactionOverride audit table.

Append-only: one row per manual override action, written in the same
database transaction as the update it describes. Never updated or deleted
(migration 002 installs triggers that reject both on PostgreSQL).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db
from backend.app.models.column_types import json_column_type


class TransactionOverride(db.Model):
    __tablename__ = "transaction_overrides"

    id: Mapped[int] = mapped_column(primary_key=True)

    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Rule in force just before the override; NULL if none was applied.
    original_rule_id: Mapped[int | None] = mapped_column(
        ForeignKey("splitting_rules.id", ondelete="RESTRICT"),
        nullable=True,
    )

    override_by: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    old_is_shared_expense: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    new_is_shared_expense: Mapped[bool] = mapped_column(Boolean, nullable=False)

    old_split_percentage: Mapped[dict | None] = mapped_column(
        json_column_type(),
        nullable=True,
    )
    new_split_percentage: Mapped[dict | None] = mapped_column(
        json_column_type(),
        nullable=True,
    )

    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    transaction: Mapped["Transaction"] = relationship(  # noqa: F821
        "Transaction",
        back_populates="overrides",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<TransactionOverride id={self.id} "
            f"transaction_id={self.transaction_id} "
            f"shared={self.old_is_shared_expense}->{self.new_is_shared_expense}>"
        )
