"""
services/rule_templates.py — Catalogue of ready-made splitting rules.

Templates are static; a household turns one into a real rule through
rule_service.build_rule_from_template, which fills in the split for the
household's members and applies the caller's customizations.

"Private" templates keep transactions personal: they produce an empty split,
and an empty split means not shared.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from backend.app.models.splitting_rule import RuleType


@dataclass(frozen=True)
class RuleTemplate:
    id: str
    name: str
    description: str
    rule_type: RuleType
    default_config: dict
    example_transactions: tuple[str, ...] = field(default_factory=tuple)
    keeps_private: bool = False

    def to_dict(self) -> dict:
        config = dict(self.default_config)
        config["rule_type"] = self.rule_type.value
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "rule_type": self.rule_type.value,
            "default_config": config,
            "example_transactions": list(self.example_transactions),
            "keeps_private": self.keeps_private,
        }


RULE_TEMPLATES: tuple[RuleTemplate, ...] = (
    RuleTemplate(
        id="groceries-5050",
        name="Split Groceries 50/50",
        description="Share all grocery expenses equally between two people",
        rule_type=RuleType.CATEGORY,
        default_config={
            "rule_name": "Groceries 50/50",
            "category_match": "groceries",
            "priority": 10,
        },
        example_transactions=("Tesco", "Sainsbury's", "Waitrose", "Asda", "Morrisons"),
    ),
    RuleTemplate(
        id="utilities-custom",
        name="Split Utilities by Custom Ratio",
        description="Share utility bills with custom percentages per person",
        rule_type=RuleType.CATEGORY,
        default_config={
            "rule_name": "Utilities Split",
            "category_match": "utilities",
            "priority": 15,
        },
        example_transactions=("Thames Water", "British Gas", "EDF Energy", "Council Tax"),
    ),
    RuleTemplate(
        id="large-purchases",
        name="Share Large Purchases (>£100)",
        description="Automatically share any transaction over £100",
        rule_type=RuleType.AMOUNT_THRESHOLD,
        default_config={
            "rule_name": "Large Purchases",
            "min_amount": Decimal("100.00"),
            "priority": 5,
        },
        example_transactions=("John Lewis £250", "Currys £180", "IKEA £150"),
    ),
    RuleTemplate(
        id="supermarket-merchant",
        name="Share All Supermarket Purchases",
        description="Match all major UK supermarkets automatically",
        rule_type=RuleType.MERCHANT,
        default_config={
            "rule_name": "Supermarkets",
            "merchant_pattern": "(Tesco|Sainsbury|Asda|Morrisons|Waitrose|Aldi|Lidl|Co-op).*",
            "priority": 20,
        },
        example_transactions=("Tesco Extra", "Sainsbury's Local", "Aldi"),
    ),
    RuleTemplate(
        id="restaurants-dining",
        name="Split Restaurant & Dining",
        description="Share all restaurant and dining expenses",
        rule_type=RuleType.CATEGORY,
        default_config={
            "rule_name": "Restaurants & Dining",
            "category_match": "dining",
            "priority": 25,
        },
        example_transactions=("Nando's", "Pizza Express", "Starbucks", "Deliveroo"),
    ),
    RuleTemplate(
        id="transport-shared",
        name="Share Transport Costs",
        description="Split all transport and travel expenses",
        rule_type=RuleType.CATEGORY,
        default_config={
            "rule_name": "Transport",
            "category_match": "transport",
            "priority": 30,
        },
        example_transactions=("Uber", "TfL", "Trainline", "Shell Petrol"),
    ),
    RuleTemplate(
        id="entertainment-shared",
        name="Share Entertainment Costs",
        description="Split streaming services, cinema, and entertainment",
        rule_type=RuleType.CATEGORY,
        default_config={
            "rule_name": "Entertainment",
            "category_match": "entertainment",
            "priority": 35,
        },
        example_transactions=("Netflix", "Spotify", "Odeon Cinema", "Amazon Prime"),
    ),
    RuleTemplate(
        id="household-supplies",
        name="Share Household Supplies",
        description="Split cleaning products, toiletries, and household items",
        rule_type=RuleType.CATEGORY,
        default_config={
            "rule_name": "Household Supplies",
            "category_match": "household",
            "priority": 40,
        },
        example_transactions=("Boots", "Superdrug", "Wilko", "B&M"),
    ),
    RuleTemplate(
        id="small-purchases",
        name="Keep Small Purchases Private (<£10)",
        description="Don't share transactions under £10 to avoid micro-splitting",
        rule_type=RuleType.AMOUNT_THRESHOLD,
        default_config={
            "rule_name": "Small Purchases Private",
            "min_amount": Decimal("0.00"),
            "max_amount": Decimal("10.00"),
            "priority": 50,
        },
        example_transactions=("Coffee £3.50", "Snack £5", "Magazine £4.99"),
        keeps_private=True,
    ),
    RuleTemplate(
        id="default-share-all",
        name="Share Everything (Default Rule)",
        description="Share all transactions that don't match other rules",
        rule_type=RuleType.DEFAULT,
        default_config={
            "rule_name": "Default - Share All",
            "priority": 999,
        },
        example_transactions=("Any transaction not covered by other rules",),
    ),
    RuleTemplate(
        id="default-keep-private",
        name="Keep Everything Private (Default Rule)",
        description="Keep all transactions private unless matched by other rules",
        rule_type=RuleType.DEFAULT,
        default_config={
            "rule_name": "Default - Keep Private",
            "priority": 999,
        },
        example_transactions=("Any transaction not covered by other rules",),
        keeps_private=True,
    ),
)

_TEMPLATES_BY_ID = {template.id: template for template in RULE_TEMPLATES}


def get_template_by_id(template_id: str) -> RuleTemplate | None:
    return _TEMPLATES_BY_ID.get(template_id)


def get_templates_by_type(rule_type: RuleType | str) -> list[RuleTemplate]:
    return [t for t in RULE_TEMPLATES if t.rule_type == rule_type]


def populate_template_split(member_ids: list) -> dict[str, int]:
    """
    Equal split across the household's members, keyed by member id string.

    Two members get 50/50. Otherwise each member gets floor(100 / n) and the
    first member also takes the remainder, so the values sum to exactly 100.
    """
    count = len(member_ids)
    if count == 0:
        return {}
    if count == 2:
        return {str(member_ids[0]): 50, str(member_ids[1]): 50}

    base = 100 // count
    remainder = 100 - base * count
    return {
        str(member_id): base + (remainder if index == 0 else 0)
        for index, member_id in enumerate(member_ids)
    }


def build_rule_from_template(
        template: RuleTemplate,
        member_ids: list,
        customizations: dict | None = None,
) -> dict:
    """Rule fields for `template`, ready for CreateRuleSchema validation."""
    rule = dict(template.default_config)
    rule["rule_type"] = template.rule_type.value
    rule["split_percentage"] = {} if template.keeps_private else populate_template_split(member_ids)

    for key, value in (customizations or {}).items():
        if value is not None:
            rule[key] = value
    return rule
