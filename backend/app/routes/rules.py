"""
routes/rules.py — Splitting rule route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries.

create_rule and update_rule return (SplittingRule, warnings[]). Conflicts with
other active rules are warnings, not errors: the rule is saved and the
response carries {"code": "RULE_CONFLICT", ...} entries. Status stays 201/200.

Endpoints (base url_prefix=/api/v1/households):
  GET    /households/:id/rules                      → 200  list rules
  POST   /households/:id/rules                      → 201  create rule (+ warnings)
  GET    /households/:id/rules/templates            → 200  template catalogue
  POST   /households/:id/rules/from-template        → 201  create rule from a template
  POST   /households/:id/rules/test                 → 200  dry run of a draft rule
  GET    /households/:id/rules/feedback-summary     → 200  accept/reject/override counts
  GET    /households/:id/rules/:rule_id             → 200  one rule
  PATCH  /households/:id/rules/:rule_id             → 200  update name/priority/split/active
  DELETE /households/:id/rules/:rule_id             → 200  deactivate (soft delete)
  POST   /households/:id/rules/:rule_id/apply       → 200  apply to past transactions
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.models.splitting_rule import SplittingRule
from backend.app.schemas.rule_schema import (
    ApplyRuleSchema,
    CreateRuleFromTemplateSchema,
    CreateRuleSchema,
    DraftRuleSchema,
    ListRulesQuerySchema,
    UpdateRuleSchema,
)
from backend.app.services import feedback_service, rule_service
from backend.app.services.ledger_store import SqlLedgerStore

rules_bp = Blueprint("rules", __name__)


# ── Serialization helper ───────────────────────────────────────────────────

def _serialize_rule(r: SplittingRule) -> dict:
    """Converts a SplittingRule ORM object to a plain dict for JSON output."""
    return {
        "id": r.id,
        "household_id": r.household_id,
        "rule_name": r.rule_name,
        "rule_type": r.rule_type.value,
        "priority": r.priority,
        "merchant_pattern": r.merchant_pattern,
        "category_match": r.category_match,
        "min_amount": str(r.min_amount) if r.min_amount is not None else None,
        "max_amount": str(r.max_amount) if r.max_amount is not None else None,
        "split_percentage": r.split_percentage or {},
        "is_active": r.is_active,
        "apply_to_existing_transactions": r.apply_to_existing_transactions,
        "created_by": r.created_by,
        "created_at": r.created_at.isoformat(),
        "updated_at": r.updated_at.isoformat() if r.updated_at else None,
    }


# ── Route handlers ─────────────────────────────────────────────────────────

@rules_bp.route("/<int:household_id>/rules", methods=["GET"])
@require_auth
def list_rules(household_id: int):
    """GET /households/:id/rules — ?active_only=true&order_by=priority|created_at"""
    query = ListRulesQuerySchema().load(request.args)
    rules = rule_service.list_rules(
        household_id=household_id,
        caller_id=g.user_id,
        session=db.session,
        active_only=query["active_only"],
        order_by=query["order_by"],
    )
    return jsonify({"data": [_serialize_rule(r) for r in rules], "warnings": []}), 200


@rules_bp.route("/<int:household_id>/rules", methods=["POST"])
@require_auth
def create_rule(household_id: int):
    """
    POST /households/:id/rules — Create a splitting rule.

    Overlaps with active rules of the same type come back as RULE_CONFLICT
    warnings; the rule is created regardless.
    """
    data = CreateRuleSchema().load(request.get_json(force=True) or {})
    rule, warnings = rule_service.create_rule(
        household_id=household_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_rule(rule), "warnings": warnings}), 201


@rules_bp.route("/<int:household_id>/rules/templates", methods=["GET"])
@require_auth
def list_templates(household_id: int):
    catalogue = rule_service.list_templates(
        household_id=household_id,
        caller_id=g.user_id,
        session=db.session,
    )
    return jsonify({"data": catalogue, "warnings": []}), 200


@rules_bp.route("/<int:household_id>/rules/from-template", methods=["POST"])
@require_auth
def create_rule_from_template(household_id: int):
    """
    POST /households/:id/rules/from-template — {template_id, customizations}

    The template's fields, split evenly across the household's members and
    overlaid with the customizations, go through the same validation as a
    hand-written rule.
    """
    body = CreateRuleFromTemplateSchema().load(request.get_json(force=True) or {})
    fields = rule_service.build_rule_from_template(
        household_id=household_id,
        caller_id=g.user_id,
        template_id=body["template_id"],
        customizations=body["customizations"],
        session=db.session,
    )
    data = CreateRuleSchema().load(fields)
    rule, warnings = rule_service.create_rule(
        household_id=household_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_rule(rule), "warnings": warnings}), 201


@rules_bp.route("/<int:household_id>/rules/test", methods=["POST"])
@require_auth
def preview_rule(household_id: int):
    """POST /households/:id/rules/test — What would this rule have matched recently?"""
    data = DraftRuleSchema().load(request.get_json(force=True) or {})
    preview = rule_service.preview_rule(
        household_id=household_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
        lookback_days=current_app.config["RULE_TEST_LOOKBACK_DAYS"],
        preview_limit=current_app.config["RULE_TEST_PREVIEW_LIMIT"],
    )
    return jsonify({"data": preview, "warnings": []}), 200


@rules_bp.route("/<int:household_id>/rules/feedback-summary", methods=["GET"])
@require_auth
def feedback_summary(household_id: int):
    summary = feedback_service.get_rule_feedback_summary(
        household_id=household_id,
        caller_id=g.user_id,
        session=db.session,
    )
    return jsonify({"data": summary, "warnings": []}), 200


@rules_bp.route("/<int:household_id>/rules/<int:rule_id>", methods=["GET"])
@require_auth
def get_rule(household_id: int, rule_id: int):
    rule = rule_service.get_rule(
        household_id=household_id,
        rule_id=rule_id,
        caller_id=g.user_id,
        session=db.session,
    )
    return jsonify({"data": _serialize_rule(rule), "warnings": []}), 200


@rules_bp.route("/<int:household_id>/rules/<int:rule_id>", methods=["PATCH"])
@require_auth
def update_rule(household_id: int, rule_id: int):
    data = UpdateRuleSchema().load(request.get_json(force=True) or {})
    rule, warnings = rule_service.update_rule(
        household_id=household_id,
        rule_id=rule_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_rule(rule), "warnings": warnings}), 200


@rules_bp.route("/<int:household_id>/rules/<int:rule_id>", methods=["DELETE"])
@require_auth
def deactivate_rule(household_id: int, rule_id: int):
    """
    DELETE /households/:id/rules/:rule_id — Soft delete.

    The row stays so categorized transactions and feedback keep their rule.
    """
    rule = rule_service.deactivate_rule(
        household_id=household_id,
        rule_id=rule_id,
        caller_id=g.user_id,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_rule(rule), "warnings": []}), 200


@rules_bp.route("/<int:household_id>/rules/<int:rule_id>/apply", methods=["POST"])
@require_auth
def apply_rule(household_id: int, rule_id: int):
    """
    POST /households/:id/rules/:rule_id/apply — {start_date?, end_date?}

    Categorizes past transactions that no rule has claimed and that were not
    overridden. Items that fail are listed in "errors"; the rest are kept.
    """
    data = ApplyRuleSchema().load(request.get_json(silent=True) or {})
    summary = rule_service.apply_rule_to_history(
        household_id=household_id,
        rule_id=rule_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
        store=SqlLedgerStore(db.session, app=current_app._get_current_object()),
        chunk_size=current_app.config["CATEGORIZATION_CHUNK_SIZE"],
        max_workers=current_app.config["CATEGORIZATION_MAX_WORKERS"],
    )
    db.session.commit()
    return jsonify({"data": summary, "warnings": []}), 200
