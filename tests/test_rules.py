from __future__ import annotations

import math
from datetime import date

import pytest

from statement_ingest.models import TransactionInput
from statement_ingest.rules import (
    CategorizationRule,
    IgnoreAction,
    RuleCondition,
    SetCategoryAction,
    SetSignAction,
    apply_rules,
    matches_condition,
    parse_rule,
    to_number,
)


def _tx(merchant: str = "Amazon Marketplace", amount: int = -2599) -> TransactionInput:
    return TransactionInput(
        date=date(2025, 3, 1), merchant_name=merchant, amount=amount, currency="EUR"
    )


def _rule(conditions, actions, logic_operator: str = "and") -> CategorizationRule:
    return parse_rule(
        {"logic_operator": logic_operator, "conditions": conditions, "actions": actions}
    )


def _cond(field: str, operator: str, value) -> dict:
    return {"field": field, "operator": operator, "value": value}


# ---- Conditions ----------------------------------------------------------------


@pytest.mark.parametrize(
    ("operator", "value", "expected"),
    [
        ("eq", "AMAZON MARKETPLACE", True),
        ("eq", "amazon", False),
        ("neq", "amazon", True),
        ("neq", "amazon marketplace", False),
        ("contains", "MARKET", True),
        ("contains", "ebay", False),
        ("gt", "x", False),
    ],
)
def test_merchant_conditions(operator: str, value: str, expected: bool) -> None:
    cond = RuleCondition(field="merchant_name", operator=operator, value=value)
    assert matches_condition(_tx(), cond) is expected


@pytest.mark.parametrize(
    ("operator", "value", "expected"),
    [
        ("lt", 0, True),
        ("lt", "-2599", False),
        ("lte", "-2599", True),
        ("gt", -3000, True),
        ("gte", -2599.0, True),
        ("eq", "-2599", True),
        ("eq", " -2599 ", True),
        ("neq", 0, False),
        ("contains", "25", False),
    ],
)
def test_amount_conditions(operator: str, value, expected: bool) -> None:
    cond = RuleCondition(field="amount", operator=operator, value=value)
    assert matches_condition(_tx(), cond) is expected


@pytest.mark.parametrize("value", ["abc", "", None, True, "NaN"])
@pytest.mark.parametrize("operator", ["eq", "gt", "lt", "gte", "lte"])
def test_non_numeric_amount_values_never_match(operator: str, value) -> None:
    cond = RuleCondition(field="amount", operator=operator, value=value)
    assert matches_condition(_tx(), cond) is False


def test_to_number() -> None:
    assert to_number("12.5") == 12.5
    assert to_number(3) == 3.0
    assert math.isnan(to_number("twelve"))
    assert math.isnan(to_number(False))


@pytest.mark.parametrize("value", ["1_000", "inf", "-Infinity", "nan", "0x10", "1,000"])
def test_to_number_rejects_non_decimal_spellings(value: str) -> None:
    assert math.isnan(to_number(value))


def test_to_number_accepts_decimal_spellings() -> None:
    assert to_number("+12") == 12.0
    assert to_number(".5") == 0.5
    assert to_number("5.") == 5.0
    assert to_number("1e3") == 1000.0


def test_underscored_amount_value_does_not_match() -> None:
    cond = RuleCondition(field="amount", operator="lt", value="1_000")
    assert matches_condition(_tx(amount=-2599), cond) is False


def test_unknown_field_never_matches() -> None:
    cond = RuleCondition(field="currency", operator="eq", value="EUR")
    assert matches_condition(_tx(), cond) is False


# ---- Rule matching ---------------------------------------------------------------


def test_rule_without_conditions_never_matches() -> None:
    rule = _rule([], [{"type": "ignore"}])
    result = apply_rules(_tx(), [rule])
    assert result.skip is False
    assert result.rules_applied == 0


def test_and_requires_all_or_requires_any() -> None:
    conditions = [_cond("merchant_name", "contains", "amazon"), _cond("amount", "gt", 0)]
    actions = [{"type": "set_category", "value": "cat-shopping"}]

    and_result = apply_rules(_tx(), [_rule(conditions, actions, "and")])
    or_result = apply_rules(_tx(), [_rule(conditions, actions, "or")])

    assert and_result.rules_applied == 0
    assert or_result.rules_applied == 1
    assert or_result.overrides.category_id == "cat-shopping"


def test_unknown_logic_operator_never_matches() -> None:
    rule = _rule([_cond("amount", "lt", 0)], [{"type": "ignore"}], logic_operator="xor")
    assert apply_rules(_tx(), [rule]).skip is False


# ---- Actions ---------------------------------------------------------------------


def test_ignore_short_circuits_and_discards_overrides() -> None:
    categorize = _rule(
        [_cond("amount", "lt", 0)], [{"type": "set_category", "value": "cat-a"}]
    )
    ignore = _rule(
        [_cond("merchant_name", "contains", "amazon")],
        [{"type": "ignore"}, {"type": "set_category", "value": "cat-b"}],
    )
    never_reached = _rule([_cond("amount", "lt", 0)], [{"type": "set_sign", "value": "positive"}])

    result = apply_rules(_tx(), [categorize, ignore, never_reached])

    assert result.skip is True
    assert result.rules_applied == 2
    assert result.overrides.amount is None
    assert result.overrides.category_id is None
    assert result.as_dict() == {"skip": True, "rulesApplied": 2, "overrides": {}}


def test_set_sign_uses_latest_override() -> None:
    to_positive = _rule([_cond("amount", "lt", 0)], [{"type": "set_sign", "value": "positive"}])
    to_negative = _rule(
        [_cond("merchant_name", "contains", "amazon")],
        [{"type": "set_sign", "value": "negative"}],
    )

    result = apply_rules(_tx(amount=-2599), [to_positive, to_negative])

    assert result.rules_applied == 2
    assert result.overrides.amount == -2599


def test_overrides_accumulate_across_rules() -> None:
    to_negative = _rule(
        [_cond("merchant_name", "contains", "amazon")],
        [{"type": "set_sign", "value": "negative"}],
    )
    categorize = _rule([_cond("amount", "gt", 0)], [{"type": "set_category", "value": "cat-x"}])

    result = apply_rules(_tx(amount=2599), [to_negative, categorize])

    assert result.skip is False
    assert result.rules_applied == 2
    assert result.as_dict()["overrides"] == {"amount": -2599, "categoryId": "cat-x"}


def test_set_sign_invalid_value_is_a_noop() -> None:
    rule = _rule([_cond("amount", "lt", 0)], [{"type": "set_sign", "value": "flip"}])
    result = apply_rules(_tx(), [rule])

    assert result.rules_applied == 1
    assert result.overrides.amount is None


def test_later_category_wins() -> None:
    rules = [
        _rule([_cond("amount", "lt", 0)], [{"type": "set_category", "value": "cat-a"}]),
        _rule([_cond("amount", "lt", 0)], [{"type": "set_category", "value": "cat-b"}]),
    ]
    result = apply_rules(_tx(), rules)

    assert result.overrides.category_id == "cat-b"
    assert result.as_dict()["overrides"] == {"categoryId": "cat-b"}


def test_set_category_without_value_is_a_noop() -> None:
    rule = _rule([_cond("amount", "lt", 0)], [{"type": "set_category"}])
    assert apply_rules(_tx(), [rule]).overrides.category_id is None


def test_unknown_action_types_are_dropped() -> None:
    rule = _rule(
        [_cond("amount", "lt", 0)],
        [{"type": "notify"}, {"type": "set_sign", "value": "positive"}],
    )
    assert rule.actions == (SetSignAction(value="positive"),)
    assert apply_rules(_tx(), [rule]).overrides.amount == 2599


def test_input_is_not_mutated() -> None:
    tx = _tx()
    rule = _rule([_cond("amount", "lt", 0)], [{"type": "set_sign", "value": "positive"}])
    apply_rules(tx, [rule])
    assert tx.amount == -2599


def test_no_rules() -> None:
    result = apply_rules(_tx(), [])
    assert result.as_dict() == {"skip": False, "rulesApplied": 0, "overrides": {}}


def test_parse_rule_accepts_camel_case_operator() -> None:
    rule = parse_rule(
        {
            "logicOperator": "or",
            "conditions": [_cond("amount", "gt", 10)],
            "actions": [{"type": "ignore"}, {"type": "set_category", "value": "c"}],
        }
    )
    assert rule.logic_operator == "or"
    assert rule.actions == (IgnoreAction(), SetCategoryAction(value="c"))
