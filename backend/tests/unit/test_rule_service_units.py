"""
Unit tests for rule_service branches that are lightly exercised by integration tests.

These tests run DB-free with mocked session/query behavior.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from backend.app.errors import AppError, ErrorCode, WarningCode
from backend.app.models.splitting_rule import RuleType
from backend.app.services import rule_service


def _rule(rule_type, id, priority=100, is_active=True, household_id=1, **criteria):
    values = {
        "merchant_pattern": None,
        "category_match": None,
        "min_amount": None,
        "max_amount": None,
    }
    values.update(criteria)
    return SimpleNamespace(
        id=id,
        household_id=household_id,
        rule_name=f"Rule {id}",
        rule_type=rule_type,
        priority=priority,
        is_active=is_active,
        **values,
    )


def test_criteria_table_covers_every_rule_type():
    assert set(rule_service._CRITERIA_BY_TYPE) == set(RuleType)


def test_get_household_or_404_raises_when_missing():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(AppError) as exc_info:
        rule_service._get_household_or_404(404, session)

    assert exc_info.value.code == ErrorCode.HOUSEHOLD_NOT_FOUND
    assert exc_info.value.http_status == 404


def test_require_member_raises_forbidden_when_missing():
    session = MagicMock()
    session.execute.return_value.scalar_one_or_none.return_value = None

    with pytest.raises(AppError) as exc_info:
        rule_service._require_member(household_id=1, user_id=999, session=session)

    assert exc_info.value.code == ErrorCode.FORBIDDEN
    assert exc_info.value.http_status == 403


def test_get_rule_or_404_hides_rules_of_other_households():
    session = MagicMock()
    session.get.return_value = _rule(RuleType.DEFAULT, id=3, household_id=2)

    with pytest.raises(AppError) as exc_info:
        rule_service._get_rule_or_404(household_id=1, rule_id=3, session=session)

    assert exc_info.value.code == ErrorCode.RULE_NOT_FOUND


def test_normalise_split():
    assert rule_service._normalise_split({}) is None
    assert rule_service._normalise_split(None) is None
    assert rule_service._normalise_split({1: 60, "2": 40}) == {"1": 60, "2": 40}


# ═══════════════════════════════════════════════════════════════════════════
# Warnings
# ═══════════════════════════════════════════════════════════════════════════

class TestConflictWarnings:

    def test_overlap_is_reported_as_rule_conflict(self):
        candidate = _rule(RuleType.CATEGORY, id=10, category_match="groceries")
        existing = [_rule(RuleType.CATEGORY, id=2, category_match="groceries")]

        warnings = rule_service._conflict_warnings(candidate, existing)

        assert warnings == [{
            "code": WarningCode.RULE_CONFLICT,
            "message": 'Same category "groceries" as "Rule 2". Priority 100 vs 100.',
            "rule_id": 2,
            "rule_name": "Rule 2",
        }]

    def test_rule_after_active_default_is_shadowed(self):
        candidate = _rule(RuleType.MERCHANT, id=10, priority=500, merchant_pattern="Tesco")
        existing = [_rule(RuleType.DEFAULT, id=2, priority=100)]

        warnings = rule_service._conflict_warnings(candidate, existing)

        assert [w["code"] for w in warnings] == [WarningCode.RULE_SHADOWED_BY_DEFAULT]
        assert warnings[0]["rule_id"] == 2

    def test_inactive_default_does_not_shadow(self):
        candidate = _rule(RuleType.MERCHANT, id=10, priority=500, merchant_pattern="Tesco")
        existing = [_rule(RuleType.DEFAULT, id=2, priority=100, is_active=False)]

        assert rule_service._conflict_warnings(candidate, existing) == []

    def test_default_placed_before_other_rules_is_flagged(self):
        candidate = _rule(RuleType.DEFAULT, id=10, priority=5)
        existing = [
            _rule(RuleType.CATEGORY, id=2, priority=10, category_match="groceries"),
            _rule(RuleType.MERCHANT, id=3, priority=20, merchant_pattern="Tesco"),
        ]

        warnings = rule_service._conflict_warnings(candidate, existing)

        assert len(warnings) == 1
        assert warnings[0]["code"] == WarningCode.RULE_SHADOWED_BY_DEFAULT
        assert "2 other active rule(s)" in warnings[0]["message"]

    def test_default_at_the_end_is_clean(self):
        candidate = _rule(RuleType.DEFAULT, id=10, priority=999)
        existing = [_rule(RuleType.CATEGORY, id=2, priority=10, category_match="groceries")]

        assert rule_service._conflict_warnings(candidate, existing) == []


# ═══════════════════════════════════════════════════════════════════════════
# create / deactivate
# ═══════════════════════════════════════════════════════════════════════════

@patch("backend.app.services.rule_service._active_rules", return_value=[])
@patch("backend.app.services.rule_service._require_split_members")
@patch("backend.app.services.rule_service._require_member")
@patch("backend.app.services.rule_service._get_household_or_404")
def test_create_rule_drops_criteria_of_other_types(
    mock_household, mock_member, mock_split_members, mock_active,
):
    session = MagicMock()
    data = {
        "rule_name": "  Everything  ",
        "rule_type": RuleType.DEFAULT,
        "priority": 999,
        "merchant_pattern": "Tesco",
        "category_match": "groceries",
        "min_amount": Decimal("1.00"),
        "max_amount": None,
        "split_percentage": {"1": 50, "2": 50},
        "apply_to_existing_transactions": False,
    }

    rule, warnings = rule_service.create_rule(1, 10, data, session)

    assert rule.rule_name == "Everything"
    assert rule.rule_type is RuleType.DEFAULT
    assert rule.merchant_pattern is None
    assert rule.category_match is None
    assert rule.min_amount is None
    assert rule.created_by == 10
    assert warnings == []
    session.add.assert_called_once_with(rule)
    session.flush.assert_called_once()
    mock_split_members.assert_called_once_with(1, {"1": 50, "2": 50}, session)


@patch("backend.app.services.rule_service._active_rules", return_value=[])
@patch("backend.app.services.rule_service._require_split_members")
@patch("backend.app.services.rule_service._require_member")
@patch("backend.app.services.rule_service._get_household_or_404")
def test_create_rule_with_empty_split_stores_none(
    mock_household, mock_member, mock_split_members, mock_active,
):
    data = {
        "rule_name": "Small stuff",
        "rule_type": RuleType.AMOUNT_THRESHOLD,
        "max_amount": Decimal("10.00"),
        "split_percentage": {},
    }

    rule, _ = rule_service.create_rule(1, 10, data, MagicMock())

    assert rule.split_percentage is None
    assert rule.max_amount == Decimal("10.00")
    assert rule.priority == 100


@patch("backend.app.services.rule_service._get_rule_or_404")
@patch("backend.app.services.rule_service._require_member")
def test_deactivate_inactive_rule_conflicts(mock_member, mock_get_rule):
    mock_get_rule.return_value = _rule(RuleType.DEFAULT, id=3, is_active=False)

    with pytest.raises(AppError) as exc_info:
        rule_service.deactivate_rule(1, 3, 10, MagicMock())

    assert exc_info.value.code == ErrorCode.RULE_ALREADY_INACTIVE
    assert exc_info.value.http_status == 409


@patch("backend.app.services.rule_service._get_rule_or_404")
@patch("backend.app.services.rule_service._require_member")
def test_deactivate_rule_sets_flag(mock_member, mock_get_rule):
    rule = _rule(RuleType.DEFAULT, id=3)
    mock_get_rule.return_value = rule
    session = MagicMock()

    assert rule_service.deactivate_rule(1, 3, 10, session) is rule
    assert rule.is_active is False
    session.flush.assert_called_once()


@patch("backend.app.services.rule_service._get_rule_or_404")
@patch("backend.app.services.rule_service._require_member")
def test_apply_inactive_rule_is_not_found(mock_member, mock_get_rule):
    mock_get_rule.return_value = _rule(RuleType.DEFAULT, id=3, is_active=False)

    with pytest.raises(AppError) as exc_info:
        rule_service.apply_rule_to_history(1, 3, 10, {}, MagicMock(), store=MagicMock())

    assert exc_info.value.code == ErrorCode.RULE_NOT_FOUND
    assert exc_info.value.http_status == 404


# ═══════════════════════════════════════════════════════════════════════════
# preview / templates
# ═══════════════════════════════════════════════════════════════════════════

@patch("backend.app.services.rule_service._require_member")
@patch("backend.app.services.rule_service._get_household_or_404")
def test_preview_rule_counts_and_limits(mock_household, mock_member):
    session = MagicMock()
    session.execute.return_value.scalars.return_value.all.return_value = [
        SimpleNamespace(id=i, date=date(2026, 3, 10), merchant_name="Tesco Metro",
                        category="groceries", amount=Decimal("-10.50"))
        for i in range(1, 4)
    ] + [
        SimpleNamespace(id=9, date=date(2026, 3, 9), merchant_name="Aldi",
                        category="groceries", amount=Decimal("-99.00")),
    ]

    result = rule_service.preview_rule(
        1, 10,
        {"rule_type": RuleType.MERCHANT, "merchant_pattern": "Tesco.*", "category_match": "x"},
        session,
        lookback_days=30,
        preview_limit=2,
        today=date(2026, 3, 15),
    )

    assert result["match_count"] == 3
    assert result["total_amount"] == Decimal("31.50")
    assert result["date_range"] == {"start": "2026-02-13", "end": "2026-03-15"}
    assert [p["transaction_id"] for p in result["preview"]] == [1, 2]
    assert result["preview"][0]["confidence_score"] == 85
    session.add.assert_not_called()
    session.flush.assert_not_called()


@patch("backend.app.services.rule_service._require_member")
@patch("backend.app.services.rule_service._get_household_or_404")
def test_build_rule_from_unknown_template(mock_household, mock_member):
    with pytest.raises(AppError) as exc_info:
        rule_service.build_rule_from_template(1, 10, "nope", {}, MagicMock())

    assert exc_info.value.code == ErrorCode.TEMPLATE_NOT_FOUND
    assert exc_info.value.field == "template_id"


@patch("backend.app.services.rule_service._get_member_ids", return_value=[4, 5, 6])
@patch("backend.app.services.rule_service._require_member")
@patch("backend.app.services.rule_service._get_household_or_404")
def test_build_rule_from_template_splits_across_members(mock_household, mock_member, mock_ids):
    fields = rule_service.build_rule_from_template(
        1, 10, "groceries-5050", {"priority": 3}, MagicMock(),
    )

    assert fields["split_percentage"] == {"4": 34, "5": 33, "6": 33}
    assert fields["priority"] == 3
