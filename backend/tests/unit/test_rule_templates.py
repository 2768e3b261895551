"""
tests/unit/test_rule_templates.py — Unit tests for services/rule_templates.py.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from backend.app.models.splitting_rule import RuleType
from backend.app.schemas.rule_schema import CreateRuleSchema
from backend.app.services.rule_templates import (
    RULE_TEMPLATES,
    build_rule_from_template,
    get_template_by_id,
    get_templates_by_type,
    populate_template_split,
)


class TestCatalogue:

    def test_ids_are_unique(self):
        ids = [t.id for t in RULE_TEMPLATES]
        assert len(ids) == len(set(ids))

    def test_every_rule_type_is_covered(self):
        assert {t.rule_type for t in RULE_TEMPLATES} == set(RuleType)

    def test_lookup_by_id(self):
        template = get_template_by_id("groceries-5050")
        assert template.rule_type is RuleType.CATEGORY
        assert template.default_config["category_match"] == "groceries"

    def test_unknown_id(self):
        assert get_template_by_id("nope") is None

    def test_lookup_by_type_accepts_strings(self):
        defaults = get_templates_by_type("default")
        assert {t.id for t in defaults} == {"default-share-all", "default-keep-private"}

    def test_to_dict_carries_rule_type_in_config(self):
        payload = get_template_by_id("large-purchases").to_dict()
        assert payload["rule_type"] == "amount_threshold"
        assert payload["default_config"]["rule_type"] == "amount_threshold"
        assert payload["example_transactions"]

    @pytest.mark.parametrize("template", RULE_TEMPLATES, ids=lambda t: t.id)
    def test_every_template_builds_a_valid_rule(self, template):
        fields = build_rule_from_template(template, [1, 2])
        CreateRuleSchema().load(fields)


@pytest.mark.parametrize("member_ids, expected", [
    ([], {}),
    ([7], {"7": 100}),
    ([1, 2], {"1": 50, "2": 50}),
    ([1, 2, 3], {"1": 34, "2": 33, "3": 33}),
    ([4, 5, 6, 7], {"4": 25, "5": 25, "6": 25, "7": 25}),
    ([1, 2, 3, 4, 5, 6], {"1": 20, "2": 16, "3": 16, "4": 16, "5": 16, "6": 16}),
])
def test_populate_template_split(member_ids, expected):
    split = populate_template_split(member_ids)
    assert split == expected
    if split:
        assert sum(split.values()) == 100


class TestBuildRuleFromTemplate:

    def test_shared_template_gets_member_split(self):
        fields = build_rule_from_template(get_template_by_id("groceries-5050"), [3, 9])
        assert fields == {
            "rule_name": "Groceries 50/50",
            "category_match": "groceries",
            "priority": 10,
            "rule_type": "category",
            "split_percentage": {"3": 50, "9": 50},
        }

    def test_private_template_gets_empty_split(self):
        fields = build_rule_from_template(get_template_by_id("small-purchases"), [1, 2])
        assert fields["split_percentage"] == {}
        assert fields["max_amount"] == Decimal("10.00")

    def test_customizations_override_defaults(self):
        fields = build_rule_from_template(
            get_template_by_id("utilities-custom"),
            [1, 2],
            {"rule_name": "Bills", "split_percentage": {"1": 70, "2": 30}, "priority": None},
        )
        assert fields["rule_name"] == "Bills"
        assert fields["split_percentage"] == {"1": 70, "2": 30}
        assert fields["priority"] == 15

    def test_template_config_is_not_mutated(self):
        template = get_template_by_id("transport-shared")
        build_rule_from_template(template, [1, 2], {"rule_name": "Travel"})
        assert template.default_config["rule_name"] == "Transport"
