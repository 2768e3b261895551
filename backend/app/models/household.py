"""
models/household.py — Household table definition.

Households are managed by the membership service. The rule engine reads them
to scope rules and to check access; it never creates or edits them.

FK policy: created_by_user_id ON DELETE RESTRICT.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class Household(db.Model):
    __tablename__ = "households"

    __table_args__ = (
        CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_households_name_nonempty",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    created_by_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    members: Mapped[list["HouseholdMember"]] = relationship(  # noqa: F821
        "HouseholdMember",
        back_populates="household",
    )

    rules: Mapped[list["SplittingRule"]] = relationship(  # noqa: F821
        "SplittingRule",
        back_populates="household",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Household id={self.id} name={self.name!r}>"
