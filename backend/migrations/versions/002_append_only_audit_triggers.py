"""Reject UPDATE and DELETE on the audit tables.

Revision: 002_append_only_audit_triggers
Created:  2026-10-17

transaction_overrides and rule_feedback are append-only: the service layer
only ever INSERTs into them. These triggers make that hold for writes that
bypass the service layer too.

Trigger design:
  Function : fn_reject_audit_mutation()
    - Raises EXCEPTION (SQLSTATE '55000' — object_not_in_prerequisite_state)
      naming the table and the operation.

  Triggers : trg_transaction_overrides_append_only
             trg_rule_feedback_append_only
    - BEFORE UPDATE OR DELETE, FOR EACH ROW

PostgreSQL only. On any other dialect (the SQLite test database) this
migration is a no-op.

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a change is needed, create a new corrective migration.
"""

from __future__ import annotations

from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "002_append_only_audit_triggers"
down_revision: str | None = "001_initial_schema"
branch_labels: tuple | None = None
depends_on: tuple | None = None

_AUDIT_TABLES = ("transaction_overrides", "rule_feedback")

_CREATE_FUNCTION = """
CREATE OR REPLACE FUNCTION fn_reject_audit_mutation()
RETURNS TRIGGER
LANGUAGE plpgsql
AS $$
BEGIN
    RAISE EXCEPTION '% is append-only: % is not allowed', TG_TABLE_NAME, TG_OP
        USING ERRCODE = '55000';
END;
$$;
"""

_DROP_FUNCTION = "DROP FUNCTION IF EXISTS fn_reject_audit_mutation();"


def _create_trigger(table: str) -> str:
    return f"""
CREATE TRIGGER trg_{table}_append_only
    BEFORE UPDATE OR DELETE
    ON {table}
    FOR EACH ROW
    EXECUTE FUNCTION fn_reject_audit_mutation();
"""


def _drop_trigger(table: str) -> str:
    return f"DROP TRIGGER IF EXISTS trg_{table}_append_only ON {table};"


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    if not _is_postgresql():
        return
    op.execute(_CREATE_FUNCTION)
    for table in _AUDIT_TABLES:
        op.execute(_create_trigger(table))


def downgrade() -> None:
    """Triggers first (they reference the function), then the function."""
    if not _is_postgresql():
        return
    for table in _AUDIT_TABLES:
        op.execute(_drop_trigger(table))
    op.execute(_DROP_FUNCTION)
