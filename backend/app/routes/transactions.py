"""
routes/transactions.py — Per-transaction route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries.

Feedback returned by a service is recorded after the primary commit and
committed on its own, so a failed feedback insert can never undo the change
the user asked for.

Endpoints (base url_prefix=/api/v1/transactions):
  POST   /transactions/:id/override        → 200  manual categorization override
  POST   /transactions/:id/split           → 200  manual personal/shared split
  POST   /transactions/:id/split/validate  → 200  {is_valid, error}; nothing saved
  GET    /transactions/:id/overrides       → 200  override audit trail, newest first
  POST   /transactions/:id/review          → 200  accept / reject the automatic result
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.models.transaction import Transaction
from backend.app.models.transaction_override import TransactionOverride
from backend.app.schemas.categorization_schema import (
    OverrideTransactionSchema,
    ReviewTransactionSchema,
    SplitTransactionSchema,
)
from backend.app.services import categorization_service, feedback_service, override_service

transactions_bp = Blueprint("transactions", __name__)


# ── Serialization helpers ──────────────────────────────────────────────────

def serialize_transaction(t: Transaction) -> dict:
    """Converts a Transaction ORM object to a plain dict. Also used by the household routes."""
    return {
        "id": t.id,
        "account_id": t.account_id,
        "amount": str(t.amount),
        "merchant_name": t.merchant_name,
        "category": t.category,
        "description": t.description,
        "date": t.date.isoformat(),
        "is_shared_expense": t.is_shared_expense,
        "shared_with_household_id": t.shared_with_household_id,
        "splitting_rule_id": t.splitting_rule_id,
        "original_rule_id": t.original_rule_id,
        "confidence_score": t.confidence_score,
        "manual_override": t.manual_override,
        "split_percentage": t.split_percentage,
        "split_details": t.split_details,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


def _serialize_override(o: TransactionOverride) -> dict:
    return {
        "id": o.id,
        "transaction_id": o.transaction_id,
        "original_rule_id": o.original_rule_id,
        "override_by": o.override_by,
        "old_is_shared_expense": o.old_is_shared_expense,
        "new_is_shared_expense": o.new_is_shared_expense,
        "old_split_percentage": o.old_split_percentage,
        "new_split_percentage": o.new_split_percentage,
        "override_reason": o.override_reason,
        "created_at": o.created_at.isoformat(),
    }


def _commit_with_feedback(entries) -> None:
    db.session.commit()
    feedback_service.commit_feedback_entries(entries, db.session)


# ── Route handlers ─────────────────────────────────────────────────────────

@transactions_bp.route("/<int:transaction_id>/override", methods=["POST"])
@require_auth
def override_transaction(transaction_id: int):
    """
    POST /transactions/:id/override — Replace the automatic categorization.

    The transaction keeps its splitting_rule_id; confidence becomes 100 and
    manual_override true. An audit row is written in the same commit.
    """
    data = OverrideTransactionSchema().load(request.get_json(force=True) or {})
    transaction, feedback = override_service.override_transaction(
        transaction_id=transaction_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
    )
    _commit_with_feedback([feedback] if feedback else [])
    return jsonify({"data": serialize_transaction(transaction), "warnings": []}), 200


@transactions_bp.route("/<int:transaction_id>/split", methods=["POST"])
@require_auth
def split_transaction(transaction_id: int):
    """POST /transactions/:id/split — Record a personal/shared split (422 if it does not add up)."""
    data = SplitTransactionSchema().load(request.get_json(force=True) or {})
    transaction, feedback = categorization_service.split_transaction(
        transaction_id=transaction_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
    )
    _commit_with_feedback([feedback] if feedback else [])
    return jsonify({"data": serialize_transaction(transaction), "warnings": []}), 200


@transactions_bp.route("/<int:transaction_id>/split/validate", methods=["POST"])
@require_auth
def validate_split(transaction_id: int):
    """POST /transactions/:id/split/validate — Check a split without saving it."""
    data = SplitTransactionSchema().load(request.get_json(force=True) or {})
    result = categorization_service.validate_split(
        transaction_id=transaction_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
    )
    return jsonify({"data": result.to_dict(), "warnings": []}), 200


@transactions_bp.route("/<int:transaction_id>/overrides", methods=["GET"])
@require_auth
def list_overrides(transaction_id: int):
    overrides = override_service.list_transaction_overrides(
        transaction_id=transaction_id,
        caller_id=g.user_id,
        session=db.session,
    )
    return jsonify({
        "data": [_serialize_override(o) for o in overrides],
        "warnings": [],
    }), 200


@transactions_bp.route("/<int:transaction_id>/review", methods=["POST"])
@require_auth
def review_transaction(transaction_id: int):
    """POST /transactions/:id/review — Accept or reject the automatic result."""
    data = ReviewTransactionSchema().load(request.get_json(force=True) or {})
    entry = categorization_service.review_transaction(
        transaction_id=transaction_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
    )
    recorded = feedback_service.commit_feedback_entries([entry], db.session)
    return jsonify({
        "data": {
            "transaction_id": transaction_id,
            "action": data["action"],
            "recorded": recorded == 1,
        },
        "warnings": [],
    }), 200
