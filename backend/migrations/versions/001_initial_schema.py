"""Initial schema — all tables, constraints, and indexes.

Revision: 001_initial_schema
Created:  2026-10-17

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

Creation order (FK dependency order):
  users → households → household_members → financial_accounts
  → splitting_rules → transactions → transaction_overrides, rule_feedback

Enums (rule_type, user_action) are VARCHAR columns with a CHECK constraint,
matching the models' Enum(native_enum=False). Adding a rule type is then a
constraint change rather than an ALTER TYPE.

ON DELETE policies:
  financial_accounts.household_id       → SET NULL  (account outlives household link)
  transactions.shared_with_household_id → SET NULL
  everything else                       → RESTRICT  (rules and audit rows are kept)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None      # first migration — no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        _created_at(),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sa.CheckConstraint("email LIKE '%@%'", name="ck_users_email_format"),
    )

    # ── households ────────────────────────────────────────────────────────
    op.create_table(
        "households",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "created_by_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        _created_at(),
        sa.CheckConstraint("LENGTH(TRIM(name)) > 0", name="ck_households_name_nonempty"),
    )

    # ── household_members ─────────────────────────────────────────────────
    op.create_table(
        "household_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "household_id",
            sa.Integer(),
            sa.ForeignKey("households.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "user_id", "household_id",
            name="uq_household_members_user_household",
        ),
    )
    op.create_index("ix_household_members_user_id", "household_members", ["user_id"])
    op.create_index("ix_household_members_household_id", "household_members", ["household_id"])

    # ── financial_accounts ────────────────────────────────────────────────
    op.create_table(
        "financial_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "household_id",
            sa.Integer(),
            sa.ForeignKey("households.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("account_name", sa.String(100), nullable=False),
        _created_at(),
    )
    op.create_index("ix_financial_accounts_user_id", "financial_accounts", ["user_id"])
    op.create_index("ix_financial_accounts_household_id", "financial_accounts", ["household_id"])

    # ── splitting_rules ───────────────────────────────────────────────────
    op.create_table(
        "splitting_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id",
            sa.Integer(),
            sa.ForeignKey("households.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("rule_name", sa.String(100), nullable=False),
        sa.Column("rule_type", sa.String(32), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("merchant_pattern", sa.String(200), nullable=True),
        sa.Column("category_match", sa.String(100), nullable=True),
        sa.Column("min_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("split_percentage", _json(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "apply_to_existing_transactions",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "created_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "rule_type IN ('merchant', 'category', 'amount_threshold', 'default')",
            name="rule_type_enum",
        ),
        sa.CheckConstraint(
            "priority BETWEEN 1 AND 1000",
            name="ck_splitting_rules_priority_range",
        ),
        sa.CheckConstraint(
            "min_amount IS NULL OR min_amount >= 0",
            name="ck_splitting_rules_min_amount_nonneg",
        ),
        sa.CheckConstraint(
            "max_amount IS NULL OR min_amount IS NULL OR max_amount > min_amount",
            name="ck_splitting_rules_amount_range",
        ),
        sa.CheckConstraint(
            "LENGTH(TRIM(rule_name)) > 0",
            name="ck_splitting_rules_name_nonempty",
        ),
    )
    op.create_index(
        "idx_splitting_rules_household_active",
        "splitting_rules",
        ["household_id", "is_active", "priority"],
    )

    # ── transactions ──────────────────────────────────────────────────────
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("financial_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("merchant_name", sa.String(255), nullable=True),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("is_shared_expense", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "shared_with_household_id",
            sa.Integer(),
            sa.ForeignKey("households.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "splitting_rule_id",
            sa.Integer(),
            sa.ForeignKey("splitting_rules.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("confidence_score", sa.Integer(), nullable=True),
        sa.Column("manual_override", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "original_rule_id",
            sa.Integer(),
            sa.ForeignKey("splitting_rules.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("split_percentage", _json(), nullable=True),
        sa.Column("split_details", _json(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 100)",
            name="ck_transactions_confidence_range",
        ),
        sa.CheckConstraint(
            "manual_override = false OR confidence_score = 100",
            name="ck_transactions_override_confidence",
        ),
    )
    op.create_index("ix_transactions_account_id", "transactions", ["account_id"])
    op.create_index("ix_transactions_splitting_rule_id", "transactions", ["splitting_rule_id"])
    op.create_index(
        "idx_transactions_review_queue",
        "transactions",
        ["manual_override", "confidence_score", "date"],
    )

    # ── transaction_overrides ─────────────────────────────────────────────
    op.create_table(
        "transaction_overrides",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "original_rule_id",
            sa.Integer(),
            sa.ForeignKey("splitting_rules.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column(
            "override_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("old_is_shared_expense", sa.Boolean(), nullable=True),
        sa.Column("new_is_shared_expense", sa.Boolean(), nullable=False),
        sa.Column("old_split_percentage", _json(), nullable=True),
        sa.Column("new_split_percentage", _json(), nullable=True),
        sa.Column("override_reason", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_transaction_overrides_transaction_id",
        "transaction_overrides",
        ["transaction_id"],
    )

    # ── rule_feedback ─────────────────────────────────────────────────────
    op.create_table(
        "rule_feedback",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "rule_id",
            sa.Integer(),
            sa.ForeignKey("splitting_rules.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column(
            "household_id",
            sa.Integer(),
            sa.ForeignKey("households.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("user_action", sa.String(32), nullable=False),
        sa.Column("original_confidence_score", sa.Integer(), nullable=True),
        sa.Column("override_details", _json(), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "user_action IN ('accepted', 'rejected', 'overridden')",
            name="feedback_action_enum",
        ),
        sa.CheckConstraint(
            "original_confidence_score IS NULL OR "
            "(original_confidence_score >= 0 AND original_confidence_score <= 100)",
            name="ck_rule_feedback_confidence_range",
        ),
    )
    op.create_index("ix_rule_feedback_transaction_id", "rule_feedback", ["transaction_id"])
    op.create_index("ix_rule_feedback_household_id", "rule_feedback", ["household_id"])
    op.create_index("idx_rule_feedback_rule_action", "rule_feedback", ["rule_id", "user_action"])


def downgrade() -> None:
    """Drops everything in reverse FK order."""
    op.drop_table("rule_feedback")
    op.drop_table("transaction_overrides")
    op.drop_table("transactions")
    op.drop_table("splitting_rules")
    op.drop_table("financial_accounts")
    op.drop_table("household_members")
    op.drop_table("households")
    op.drop_table("users")
