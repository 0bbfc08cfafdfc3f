"""User-defined categorization rules and the engine that applies them.

Rules are evaluated in their stored order. A rule matches when it has at least
one condition and all (``and``) or any (``or``) of its conditions hold. Each
matching rule applies its actions in order:

- ``ignore`` drops the transaction and stops evaluation of every remaining
  action and rule; overrides accumulated so far are discarded;
- ``set_sign`` forces the sign of the current amount (the override from an
  earlier rule, or the original amount);
- ``set_category`` assigns a category id.

Evaluation never raises. Unsupported field/operator combinations, unknown
action types, and missing action values degrade to "does nothing" so that one
misconfigured rule cannot block a whole document.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, assert_never

from .logging_setup import get_logger
from .models import TransactionInput

_logger = get_logger("statement_ingest.rules")

type ConditionField = Literal["merchant_name", "amount"]
type ConditionOperator = Literal["eq", "neq", "contains", "gt", "lt", "gte", "lte"]
type LogicOperator = Literal["and", "or"]

CONDITION_FIELDS: frozenset[str] = frozenset({"merchant_name", "amount"})
STRING_OPERATORS: frozenset[str] = frozenset({"eq", "neq", "contains"})
NUMERIC_OPERATORS: frozenset[str] = frozenset({"eq", "gt", "lt", "gte", "lte"})
SIGN_VALUES: frozenset[str] = frozenset({"positive", "negative"})
# Plain decimal notation only: no underscores, inf, nan or hex.
_DECIMAL_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


# ---------------------------------------------------------------------------
# Rule model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuleCondition:
    field: str
    operator: str
    value: str | int | float | None


@dataclass(frozen=True, slots=True)
class IgnoreAction:
    pass


@dataclass(frozen=True, slots=True)
class SetSignAction:
    value: str | None = None


@dataclass(frozen=True, slots=True)
class SetCategoryAction:
    value: str | None = None


type RuleAction = IgnoreAction | SetSignAction | SetCategoryAction


@dataclass(frozen=True, slots=True)
class CategorizationRule:
    logic_operator: str = "and"
    conditions: tuple[RuleCondition, ...] = ()
    actions: tuple[RuleAction, ...] = ()
    enabled: bool = True
    id: str | None = None
    name: str | None = None


def parse_condition(raw: Mapping[str, Any]) -> RuleCondition:
    return RuleCondition(
        field=str(raw.get("field", "")),
        operator=str(raw.get("operator", "")),
        value=raw.get("value"),
    )


def parse_action(raw: Mapping[str, Any]) -> RuleAction | None:
    """Decode a stored ``{type, value?}`` mapping; unknown types yield ``None``."""

    kind = raw.get("type")
    value = raw.get("value")
    match kind:
        case "ignore":
            return IgnoreAction()
        case "set_sign":
            return SetSignAction(value=value if isinstance(value, str) else None)
        case "set_category":
            return SetCategoryAction(value=value if isinstance(value, str) else None)
        case _:
            _logger.debug("Dropping unsupported rule action type %r", kind)
            return None


def action_to_dict(action: RuleAction) -> dict[str, Any]:
    match action:
        case IgnoreAction():
            return {"type": "ignore"}
        case SetSignAction(value=value):
            return {"type": "set_sign", "value": value}
        case SetCategoryAction(value=value):
            return {"type": "set_category", "value": value}
        case _:
            assert_never(action)


def parse_rule(raw: Mapping[str, Any]) -> CategorizationRule:
    """Build a :class:`CategorizationRule` from a stored/JSON mapping.

    Accepts both ``logic_operator`` and ``logicOperator`` keys.
    """

    actions = tuple(
        a for a in (parse_action(item) for item in raw.get("actions") or ()) if a is not None
    )
    return CategorizationRule(
        logic_operator=str(raw.get("logic_operator", raw.get("logicOperator", "and"))),
        conditions=tuple(parse_condition(c) for c in raw.get("conditions") or ()),
        actions=actions,
        enabled=bool(raw.get("enabled", True)),
        id=raw.get("id"),
        name=raw.get("name"),
    )


# ---------------------------------------------------------------------------
# Result model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RuleOverrides:
    amount: int | None = None
    category_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.amount is not None:
            out["amount"] = self.amount
        if self.category_id is not None:
            out["categoryId"] = self.category_id
        return out


@dataclass(frozen=True, slots=True)
class RuleResult:
    skip: bool
    rules_applied: int
    overrides: RuleOverrides = field(default_factory=RuleOverrides)

    def as_dict(self) -> dict[str, Any]:
        return {
            "skip": self.skip,
            "rulesApplied": self.rules_applied,
            "overrides": self.overrides.as_dict(),
        }


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def to_number(value: Any) -> float:
    """Numeric view of a rule value; anything non-numeric becomes NaN."""

    if isinstance(value, bool) or value is None:
        return math.nan
    if isinstance(value, int | float):
        return float(value)
    text = str(value).strip()
    if not _DECIMAL_RE.fullmatch(text):
        return math.nan
    return float(text)


def matches_condition(tx: TransactionInput, condition: RuleCondition) -> bool:
    if condition.field == "merchant_name":
        if condition.value is None:
            return False
        name = tx.merchant_name.lower()
        needle = str(condition.value).lower()
        match condition.operator:
            case "eq":
                return name == needle
            case "neq":
                return name != needle
            case "contains":
                return needle in name
            case _:
                return False

    if condition.field == "amount":
        # NaN compares False against everything, so bad values never match.
        value = to_number(condition.value)
        match condition.operator:
            case "gt":
                return tx.amount > value
            case "lt":
                return tx.amount < value
            case "gte":
                return tx.amount >= value
            case "lte":
                return tx.amount <= value
            case "eq":
                return tx.amount == value
            case _:
                return False

    return False


def matches_rule(tx: TransactionInput, rule: CategorizationRule) -> bool:
    if not rule.conditions:
        return False
    if rule.logic_operator == "and":
        return all(matches_condition(tx, c) for c in rule.conditions)
    if rule.logic_operator == "or":
        return any(matches_condition(tx, c) for c in rule.conditions)
    return False


def apply_rules(tx: TransactionInput, rules: Iterable[CategorizationRule]) -> RuleResult:
    """Run ``tx`` through ``rules`` and return the skip flag and overrides.

    Disabled rules are expected to be filtered out by the caller (see
    ``persistence.load_active_rules``); they are not re-checked here.
    """

    amount: int | None = None
    category_id: str | None = None
    rules_applied = 0

    for rule in rules:
        if not matches_rule(tx, rule):
            continue
        rules_applied += 1

        for action in rule.actions:
            match action:
                case IgnoreAction():
                    return RuleResult(skip=True, rules_applied=rules_applied)
                case SetSignAction(value=value):
                    if value not in SIGN_VALUES:
                        continue
                    current = amount if amount is not None else tx.amount
                    amount = abs(current) if value == "positive" else -abs(current)
                case SetCategoryAction(value=value):
                    if value:
                        category_id = value
                case _:
                    assert_never(action)

    return RuleResult(
        skip=False,
        rules_applied=rules_applied,
        overrides=RuleOverrides(amount=amount, category_id=category_id),
    )


def apply_rules_to_all(
    transactions: Sequence[TransactionInput], rules: Sequence[CategorizationRule]
) -> list[RuleResult]:
    """Apply the same rule list to each transaction, preserving order."""

    return [apply_rules(tx, rules) for tx in transactions]


__all__ = [
    "CONDITION_FIELDS",
    "NUMERIC_OPERATORS",
    "SIGN_VALUES",
    "STRING_OPERATORS",
    "CategorizationRule",
    "IgnoreAction",
    "RuleAction",
    "RuleCondition",
    "RuleOverrides",
    "RuleResult",
    "SetCategoryAction",
    "SetSignAction",
    "action_to_dict",
    "apply_rules",
    "apply_rules_to_all",
    "matches_condition",
    "matches_rule",
    "parse_action",
    "parse_rule",
    "to_number",
]
