"""
models/household_member.py — Household membership junction table.

The member ids stored here are the keys allowed in a rule's or an override's
split_percentage mapping.

FK policy: user_id and household_id both ON DELETE RESTRICT.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class HouseholdMember(db.Model):
    __tablename__ = "household_members"

    __table_args__ = (
        UniqueConstraint(
            "user_id", "household_id",
            name="uq_household_members_user_household",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # 'owner' or 'member'; only informational for the rule engine.
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="member",
        server_default="member",
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="memberships",
    )

    household: Mapped["Household"] = relationship(  # noqa: F821
        "Household",
        back_populates="members",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<HouseholdMember id={self.id} "
            f"user_id={self.user_id} "
            f"household_id={self.household_id}>"
        )
