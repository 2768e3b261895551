"""
schemas/categorization_schema.py — Marshmallow schemas for transaction
categorization endpoints (batch actions, review queue, overrides, splits).

Validation responsibility:
  - This file: field types, id lists, action names, confidence band,
    split_percentage shape.
  - services/: household membership, account access, split keys being
    members, the split amounts matching the transaction total.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
"""

from __future__ import annotations

import math

from marshmallow import Schema, ValidationError, fields, validate, validates_schema

from backend.app.errors import ErrorCode

BATCH_ACTIONS = ("mark_personal", "apply_rule")
MAX_BATCH_SIZE = 500


# ── Shared field validators ────────────────────────────────────────────────
#
# Same rules as rule_schema._validate_split_percentage. Kept as a local copy
# so each schema file stays self-contained.
# ──────────────────────────────────────────────────────────────────────────

def _validate_split_percentage(value: dict | None) -> None:
    if not value:
        return

    for member_id, percentage in value.items():
        if not str(member_id).isdigit() or int(member_id) < 1:
            raise ValidationError(
                f"split_percentage keys must be member ids, got {member_id!r}."
            )
        if percentage < 0 or percentage > 100:
            raise ValidationError(
                f"Percentage for member {member_id} must be between 0 and 100."
            )

    if abs(math.fsum(value.values()) - 100) > 0.01:
        raise ValidationError(ErrorCode.SPLIT_PERCENTAGE_SUM)


def _transaction_ids_field(**kwargs) -> fields.List:
    return fields.List(
        fields.Int(strict=True, validate=validate.Range(min=1)),
        validate=validate.Length(
            min=1,
            max=MAX_BATCH_SIZE,
            error=f"transaction_ids must contain between 1 and {MAX_BATCH_SIZE} ids.",
        ),
        **kwargs,
    )


# ── Schemas ────────────────────────────────────────────────────────────────

class BatchCategorizeSchema(Schema):
    """
    POST /households/:id/categorize-batch

      transaction_ids : required, 1–500 positive ints
      action          : mark_personal | apply_rule
      rule_id         : required when action == apply_rule
    """

    transaction_ids = _transaction_ids_field(required=True)

    action = fields.Str(
        required=True,
        validate=validate.OneOf(BATCH_ACTIONS, error=ErrorCode.INVALID_BATCH_ACTION),
    )

    rule_id = fields.Int(
        load_default=None,
        allow_none=True,
        strict=True,
        validate=validate.Range(min=1),
    )

    @validates_schema
    def validate_rule_for_action(self, data: dict, **kwargs) -> None:
        if data.get("action") == "apply_rule" and data.get("rule_id") is None:
            raise ValidationError(
                "rule_id is required when action is apply_rule.",
                field_name="rule_id",
            )


class AutoCategorizeSchema(Schema):
    """
    POST /households/:id/auto-categorize

    Without transaction_ids, every household transaction that has never been
    scored and is not overridden is evaluated.
    """

    transaction_ids = _transaction_ids_field(load_default=None, allow_none=True)


class UncategorizedQuerySchema(Schema):
    """GET /households/:id/uncategorized query string."""

    min_confidence = fields.Int(load_default=0, validate=validate.Range(min=0, max=100))
    max_confidence = fields.Int(load_default=70, validate=validate.Range(min=0, max=100))
    limit = fields.Int(load_default=50, validate=validate.Range(min=1, max=200))
    offset = fields.Int(load_default=0, validate=validate.Range(min=0))

    @validates_schema
    def validate_band(self, data: dict, **kwargs) -> None:
        if data["min_confidence"] > data["max_confidence"]:
            raise ValidationError(
                "min_confidence must not exceed max_confidence.",
                field_name="min_confidence",
            )


class OverrideTransactionSchema(Schema):
    """
    POST /transactions/:id/override

      is_shared_expense : required bool
      split_percentage  : optional; when sharing without one, the split in
                          force (or the applied rule's) is kept
      reason            : optional free text, max 500 chars
    """

    is_shared_expense = fields.Bool(required=True)

    split_percentage = fields.Dict(
        keys=fields.Str(),
        values=fields.Float(allow_nan=False),
        load_default=None,
        allow_none=True,
        validate=_validate_split_percentage,
    )

    reason = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=500),
    )


class SplitTransactionSchema(Schema):
    """
    POST /transactions/:id/split and /transactions/:id/split/validate

    Only shapes are checked here; whether the amounts add up to the
    transaction total and the percentages to 100 is the split validator's job,
    so the validate endpoint can report it as {is_valid: false, error}.
    """

    personal_amount = fields.Decimal(required=True)
    shared_amount = fields.Decimal(required=True)

    split_percentage = fields.Dict(
        keys=fields.Str(),
        values=fields.Float(allow_nan=False),
        required=True,
    )


class ReviewTransactionSchema(Schema):
    """POST /transactions/:id/review — accept or reject the automatic result."""

    action = fields.Str(
        required=True,
        validate=validate.OneOf(["accepted", "rejected"]),
    )
