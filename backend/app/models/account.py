"""
models/account.py — FinancialAccount table definition.

Accounts are created by the bank-aggregation service. A transaction belongs
to a household only through its account's household_id; an account with no
household is purely personal.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class FinancialAccount(db.Model):
    __tablename__ = "financial_accounts"

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    household_id: Mapped[int | None] = mapped_column(
        ForeignKey("households.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    account_name: Mapped[str] = mapped_column(String(100), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    owner: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="accounts",
    )

    transactions: Mapped[list["Transaction"]] = relationship(  # noqa: F821
        "Transaction",
        back_populates="account",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<FinancialAccount id={self.id} "
            f"user_id={self.user_id} "
            f"household_id={self.household_id}>"
        )
