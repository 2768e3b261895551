"""
schemas/rule_schema.py — Marshmallow schemas for splitting-rule endpoints.

Validation responsibility:
  - This file: field types, lengths, priority range, amount precision,
    criteria required by each rule_type, merchant pattern compiles and
    has no nested repetition, split_percentage shape and sum.
  - services/rule_service.py:
      - SPLIT_USER_NOT_MEMBER (422) — split keys must be household members,
                                      requires a DB lookup.
      - FORBIDDEN (403)             — caller must be a household member.
      - RULE_NOT_FOUND (404)        — requires a DB lookup.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
           See extensions.py for the explanation.
"""

from __future__ import annotations

import math
import re
from decimal import Decimal

from marshmallow import Schema, ValidationError, fields, validate, validates_schema

from backend.app.errors import ErrorCode
from backend.app.models.splitting_rule import (
    DEFAULT_PRIORITY,
    MAX_MERCHANT_PATTERN_LENGTH,
    MAX_PRIORITY,
    MIN_PRIORITY,
    RuleType,
)
from backend.app.services.rule_matcher import has_nested_quantifier


# ── Shared field validators ────────────────────────────────────────────────
#
# categorization_schema.py carries its own copy of the split validator to
# keep each schema file self-contained.
# ──────────────────────────────────────────────────────────────────────────

def _validate_rule_amount(value: Decimal | None) -> None:
    """Rule bounds are absolute values: non-negative, at most 2 decimal places."""
    if value is None:
        return
    if value < Decimal("0"):
        raise ValidationError("Amount bounds must not be negative.")
    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_split_percentage(value: dict | None) -> None:
    """
    An empty (or absent) split keeps matched transactions personal.
    A non-empty split maps member ids to percentages between 0 and 100 that
    sum to 100 within 0.01.
    """
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

    total = math.fsum(value.values())
    if abs(total - 100) > 0.01:
        raise ValidationError(ErrorCode.SPLIT_PERCENTAGE_SUM)


def _split_percentage_field(**kwargs) -> fields.Dict:
    return fields.Dict(
        keys=fields.Str(),
        values=fields.Float(allow_nan=False),
        validate=_validate_split_percentage,
        **kwargs,
    )


# ── Schemas ────────────────────────────────────────────────────────────────

class CreateRuleSchema(Schema):
    """
    POST /households/:id/rules

    Field rules:
      rule_name        : required, 1–100 chars after trimming
      rule_type        : required, merchant | category | amount_threshold | default
      priority         : optional int 1–1000, default 100 (lower runs first)
      merchant_pattern : required for merchant rules; must compile as a regex
      category_match   : required for category rules
      min_amount /
      max_amount       : amount_threshold rules need at least one; max > min
      split_percentage : optional; empty means matched transactions stay personal
    """

    rule_name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100),
    )

    rule_type = fields.Enum(
        RuleType,
        by_value=True,
        required=True,
        error_messages={"unknown": ErrorCode.INVALID_RULE_TYPE},
    )

    priority = fields.Int(
        load_default=DEFAULT_PRIORITY,
        strict=True,
        validate=validate.Range(
            min=MIN_PRIORITY,
            max=MAX_PRIORITY,
            error=f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}.",
        ),
    )

    merchant_pattern = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(min=1, max=MAX_MERCHANT_PATTERN_LENGTH),
    )

    category_match = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(min=1, max=100),
    )

    min_amount = fields.Decimal(
        load_default=None,
        allow_none=True,
        validate=_validate_rule_amount,
    )

    max_amount = fields.Decimal(
        load_default=None,
        allow_none=True,
        validate=_validate_rule_amount,
    )

    split_percentage = _split_percentage_field(load_default=dict)

    apply_to_existing_transactions = fields.Bool(load_default=False)

    @validates_schema
    def validate_criteria(self, data: dict, **kwargs) -> None:
        name = data.get("rule_name")
        if name is not None and not name.strip():
            raise ValidationError("rule_name must not be blank.", field_name="rule_name")

        rule_type = data.get("rule_type")

        if rule_type is RuleType.MERCHANT:
            pattern = data.get("merchant_pattern")
            if not pattern:
                raise ValidationError(
                    "Missing data for required field.",
                    field_name="merchant_pattern",
                )
            try:
                re.compile(pattern)
            except re.error:
                raise ValidationError(
                    ErrorCode.INVALID_MERCHANT_PATTERN,
                    field_name="merchant_pattern",
                )
            if has_nested_quantifier(pattern):
                raise ValidationError(
                    ErrorCode.INVALID_MERCHANT_PATTERN,
                    field_name="merchant_pattern",
                )

        elif rule_type is RuleType.CATEGORY:
            if not data.get("category_match"):
                raise ValidationError(
                    "Missing data for required field.",
                    field_name="category_match",
                )

        elif rule_type is RuleType.AMOUNT_THRESHOLD:
            min_amount = data.get("min_amount")
            max_amount = data.get("max_amount")
            if min_amount is None and max_amount is None:
                raise ValidationError(
                    "Amount threshold rules need min_amount, max_amount, or both.",
                    field_name="min_amount",
                )
            if min_amount is not None and max_amount is not None and max_amount <= min_amount:
                raise ValidationError(
                    "max_amount must be greater than min_amount.",
                    field_name="max_amount",
                )


class DraftRuleSchema(CreateRuleSchema):
    """
    POST /households/:id/rules/test — same criteria as a real rule, but the
    draft is never saved, so a name is optional.
    """

    rule_name = fields.Str(
        load_default="Draft rule",
        validate=validate.Length(min=1, max=100),
    )


class UpdateRuleSchema(Schema):
    """
    PATCH /households/:id/rules/:rule_id

    Only rule_name, priority, split_percentage and is_active may change;
    criteria changes require a new rule so feedback history stays meaningful.
    At least one field must be sent.
    """

    rule_name = fields.Str(validate=validate.Length(min=1, max=100))

    priority = fields.Int(
        strict=True,
        validate=validate.Range(
            min=MIN_PRIORITY,
            max=MAX_PRIORITY,
            error=f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}.",
        ),
    )

    split_percentage = _split_percentage_field(allow_none=True)

    is_active = fields.Bool()

    @validates_schema
    def validate_not_empty(self, data: dict, **kwargs) -> None:
        if not data:
            raise ValidationError("Send at least one field to update.")
        name = data.get("rule_name")
        if name is not None and not name.strip():
            raise ValidationError("rule_name must not be blank.", field_name="rule_name")


class ListRulesQuerySchema(Schema):
    """GET /households/:id/rules query string."""

    active_only = fields.Bool(load_default=False)

    order_by = fields.Str(
        load_default="priority",
        validate=validate.OneOf(["priority", "created_at"]),
    )


class ApplyRuleSchema(Schema):
    """POST /households/:id/rules/:rule_id/apply — optional date window."""

    start_date = fields.Date(load_default=None, allow_none=True)
    end_date = fields.Date(load_default=None, allow_none=True)

    @validates_schema
    def validate_window(self, data: dict, **kwargs) -> None:
        start, end = data.get("start_date"), data.get("end_date")
        if start is not None and end is not None and end < start:
            raise ValidationError(ErrorCode.INVALID_DATE_RANGE, field_name="end_date")


class CreateRuleFromTemplateSchema(Schema):
    """
    POST /households/:id/rules/from-template

    customizations may override any CreateRuleSchema field; the merged result
    is validated by CreateRuleSchema before the rule is saved.
    """

    template_id = fields.Str(required=True, validate=validate.Length(min=1, max=64))
    customizations = fields.Dict(keys=fields.Str(), load_default=dict)
