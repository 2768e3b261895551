"""
routes/categorization.py — Household categorization route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries.

Batch endpoints never fail as a whole because one transaction failed: the
per-transaction outcome is in the response body and the status is 200.

Endpoints (base url_prefix=/api/v1/households):
  POST   /households/:id/categorize-batch   → 200  mark_personal | apply_rule
  GET    /households/:id/uncategorized      → 200  review queue with suggestions
  POST   /households/:id/auto-categorize    → 200  run active rules automatically
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from backend.app.extensions import db
from backend.app.middleware.auth_middleware import require_auth
from backend.app.routes.transactions import serialize_transaction
from backend.app.schemas.categorization_schema import (
    AutoCategorizeSchema,
    BatchCategorizeSchema,
    UncategorizedQuerySchema,
)
from backend.app.services import categorization_service, feedback_service
from backend.app.services.ledger_store import SqlLedgerStore

categorization_bp = Blueprint("categorization", __name__)


def _ledger_store() -> SqlLedgerStore:
    # The engine's worker threads push this app's context for each write.
    return SqlLedgerStore(db.session, app=current_app._get_current_object())


def _batch_options() -> dict:
    return {
        "chunk_size": current_app.config["CATEGORIZATION_CHUNK_SIZE"],
        "max_workers": current_app.config["CATEGORIZATION_MAX_WORKERS"],
    }


# ── Route handlers ─────────────────────────────────────────────────────────

@categorization_bp.route("/<int:household_id>/categorize-batch", methods=["POST"])
@require_auth
def categorize_batch(household_id: int):
    """
    POST /households/:id/categorize-batch

    Body: {"transaction_ids": [...], "action": "mark_personal"|"apply_rule", "rule_id"?}
    Response data: {action, success_count, failed_count, details[]}
    """
    data = BatchCategorizeSchema().load(request.get_json(force=True) or {})
    result, feedback = categorization_service.batch_categorize(
        household_id=household_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
        store=_ledger_store(),
        **_batch_options(),
    )
    db.session.commit()
    feedback_service.commit_feedback_entries(feedback, db.session)

    return jsonify({"data": result, "warnings": []}), 200


@categorization_bp.route("/<int:household_id>/uncategorized", methods=["GET"])
@require_auth
def list_uncategorized(household_id: int):
    """
    GET /households/:id/uncategorized — ?min_confidence&max_confidence&limit&offset

    max_confidence and limit default to UNCATEGORIZED_MAX_CONFIDENCE and
    UNCATEGORIZED_PAGE_LIMIT.
    """
    defaults = {
        "max_confidence": current_app.config["UNCATEGORIZED_MAX_CONFIDENCE"],
        "limit": current_app.config["UNCATEGORIZED_PAGE_LIMIT"],
    }
    query = UncategorizedQuerySchema().load({**defaults, **request.args.to_dict()})
    queue = categorization_service.list_uncategorized(
        household_id=household_id,
        caller_id=g.user_id,
        data=query,
        session=db.session,
        store=_ledger_store(),
    )
    return jsonify({
        "data": {
            "transactions": [serialize_transaction(t) for t in queue["transactions"]],
            "queue_items": [
                {**item, "transaction": serialize_transaction(item["transaction"])}
                for item in queue["queue_items"]
            ],
            "total": queue["total"],
            "has_more": queue["has_more"],
        },
        "warnings": [],
    }), 200


@categorization_bp.route("/<int:household_id>/auto-categorize", methods=["POST"])
@require_auth
def auto_categorize(household_id: int):
    """
    POST /households/:id/auto-categorize — {transaction_ids?}

    Response data: {total, categorized, uncategorized, failed, results[]}
    """
    data = AutoCategorizeSchema().load(request.get_json(silent=True) or {})
    batch = categorization_service.auto_categorize(
        household_id=household_id,
        caller_id=g.user_id,
        data=data,
        session=db.session,
        store=_ledger_store(),
        **_batch_options(),
    )
    db.session.commit()
    return jsonify({"data": batch.to_dict(), "warnings": []}), 200
