"""Evaluate a single ``field operator value`` rule against an attribute snapshot.

Evaluation is pure: the only inputs are the rule, the snapshot mapping and the
reference time used to resolve relative dates such as ``"30 days ago"``.

A missing attribute (``None``) never matches a positive operator; the negated
operators (``not_equals``, ``not_contains``, ``not_in``) treat it as a match.
Text operators (``contains``, ``starts_with``, ``ends_with``) compare
case-insensitively while ``equals`` and ``in`` are exact.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Mapping
from uuid import UUID

from dentalos_marketing.core.clock import add_months, ensure_aware
from dentalos_marketing.schemas.rules import RuleOperator, SegmentRule
from dentalos_marketing.services.errors import MalformedRule, TypeMismatch
from dentalos_marketing.services.rules.fields import FieldDefinition, FieldKind, operators_for, resolve_field

_NEGATED_OPERATORS = frozenset({RuleOperator.NOT_EQUALS, RuleOperator.NOT_CONTAINS, RuleOperator.NOT_IN})
_NULL_OPERATORS = frozenset({RuleOperator.IS_NULL, RuleOperator.IS_NOT_NULL})
_RELATIVE_DATE = re.compile(r"^(\d+)\s+(day|week|month|year)s?\s+(ago|from now)$")


def check_rule_shape(rule: SegmentRule) -> FieldDefinition:
    """Validate field, operator applicability and value arity without a snapshot."""

    definition = resolve_field(rule.field)
    operator = RuleOperator(rule.operator)
    if operator not in operators_for(definition.kind):
        raise TypeMismatch(
            f"Operator '{operator.value}' does not apply to {definition.kind.value} field '{definition.key}'",
            field=definition.key,
            operator=operator.value,
        )

    if operator in _NULL_OPERATORS:
        return definition

    value = rule.value
    if operator is RuleOperator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise MalformedRule(
                "between requires a two-element [lower, upper] value",
                field=definition.key,
                operator=operator.value,
            )
    elif operator in (RuleOperator.IN, RuleOperator.NOT_IN):
        if not isinstance(value, (list, tuple, set)):
            raise MalformedRule(
                f"{operator.value} requires a list value", field=definition.key, operator=operator.value
            )
    elif value is None:
        raise MalformedRule(
            f"{operator.value} requires a value", field=definition.key, operator=operator.value
        )
    return definition


def evaluate_rule(
    rule: SegmentRule,
    snapshot: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> bool:
    """Return whether ``snapshot`` satisfies ``rule``.

    Raises ``MalformedRule`` for unknown fields or invalid values and
    ``TypeMismatch`` when the operator or the snapshot value does not fit the
    field kind.
    """

    definition = check_rule_shape(rule)
    operator = RuleOperator(rule.operator)
    reference = ensure_aware(now) or datetime.now(timezone.utc)

    actual = _coerce_actual(definition, snapshot.get(definition.key))
    if operator is RuleOperator.IS_NULL:
        return _is_null(actual)
    if operator is RuleOperator.IS_NOT_NULL:
        return not _is_null(actual)

    expected = _coerce_expected(definition, operator, rule.value, reference)
    if actual is None:
        return operator in _NEGATED_OPERATORS

    handler = _HANDLERS[definition.kind]
    return handler(operator, actual, expected)


def _is_null(value: Any) -> bool:
    return value is None or value == "" or value == []


# Actual (snapshot) values: wrong types are TypeMismatch.


def _coerce_actual(definition: FieldDefinition, value: Any) -> Any:
    if value is None:
        return None
    kind = definition.kind
    if kind is FieldKind.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise _mismatch(definition, value)
        return Decimal(str(value))
    if kind is FieldKind.STRING:
        if isinstance(value, Enum):
            return str(value.value)
        if isinstance(value, (str, UUID)):
            return str(value)
        raise _mismatch(definition, value)
    if kind is FieldKind.DATE:
        parsed = _parse_date_value(value)
        if parsed is None:
            raise _mismatch(definition, value)
        return parsed
    if kind is FieldKind.BOOLEAN:
        if not isinstance(value, bool):
            raise _mismatch(definition, value)
        return value
    if kind is FieldKind.STRING_LIST:
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise _mismatch(definition, value)
        items: list[str] = []
        for item in value:
            if not isinstance(item, (str, UUID)):
                raise _mismatch(definition, value)
            items.append(str(item))
        return items
    raise _mismatch(definition, value)  # pragma: no cover - closed enum


def _mismatch(definition: FieldDefinition, value: Any) -> TypeMismatch:
    return TypeMismatch(
        f"Attribute '{definition.key}' expected {definition.kind.value}, got {type(value).__name__}",
        field=definition.key,
        value=value,
    )


# Expected (rule) values: uncoercible values are MalformedRule.


def _coerce_expected(definition: FieldDefinition, operator: RuleOperator, value: Any, now: datetime) -> Any:
    def scalar(item: Any) -> Any:
        coerced = _coerce_scalar(definition.kind, item, now)
        if coerced is None:
            raise MalformedRule(
                f"Value {item!r} is not a valid {definition.kind.value} for '{definition.key}'",
                field=definition.key,
                operator=operator.value,
            )
        return coerced

    if operator is RuleOperator.BETWEEN:
        lower, upper = (scalar(item) for item in value)
        if lower > upper:
            raise MalformedRule(
                "between bounds must be ordered lower <= upper", field=definition.key, operator=operator.value
            )
        return lower, upper
    if operator in (RuleOperator.IN, RuleOperator.NOT_IN):
        return [scalar(item) for item in value]
    if definition.kind is FieldKind.STRING_LIST and operator in (RuleOperator.EQUALS, RuleOperator.NOT_EQUALS):
        items = value if isinstance(value, (list, tuple, set)) else [value]
        return {_coerce_scalar(FieldKind.STRING, item, now) for item in items}
    return scalar(value)


def _coerce_scalar(kind: FieldKind, value: Any, now: datetime) -> Any:
    if value is None:
        return None
    if kind is FieldKind.NUMBER:
        if isinstance(value, bool):
            return None
        try:
            return Decimal(str(value).strip())
        except InvalidOperation:
            return None
    if kind in (FieldKind.STRING, FieldKind.STRING_LIST):
        if isinstance(value, Enum):
            return str(value.value)
        if isinstance(value, (str, int, float, Decimal, UUID)) and not isinstance(value, bool):
            return str(value)
        return None
    if kind is FieldKind.DATE:
        if isinstance(value, str):
            relative = resolve_relative_date(value, now)
            if relative is not None:
                return relative
        return _parse_date_value(value)
    if kind is FieldKind.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        return None
    return None  # pragma: no cover - closed enum


def resolve_relative_date(expression: str, now: datetime) -> datetime | None:
    """Resolve ``"today"``, ``"N days ago"``, ``"N months from now"`` and friends."""

    text = expression.strip().lower()
    if text in ("today", "now"):
        return now if text == "now" else datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    if text == "yesterday":
        return datetime.combine(now.date() - timedelta(days=1), time.min, tzinfo=now.tzinfo)
    match = _RELATIVE_DATE.match(text)
    if match is None:
        return None
    amount = int(match.group(1))
    unit = match.group(2)
    sign = -1 if match.group(3) == "ago" else 1
    if unit == "day":
        return now + timedelta(days=sign * amount)
    if unit == "week":
        return now + timedelta(weeks=sign * amount)
    if unit == "month":
        return add_months(now, sign * amount)
    return add_months(now, sign * amount * 12)


def _parse_date_value(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return ensure_aware(parsed)
    return None


# Per-kind comparison tables.


def _compare_ordered(operator: RuleOperator, actual: Any, expected: Any) -> bool | None:
    if operator is RuleOperator.GREATER_THAN:
        return actual > expected
    if operator is RuleOperator.GREATER_THAN_OR_EQUAL:
        return actual >= expected
    if operator is RuleOperator.LESS_THAN:
        return actual < expected
    if operator is RuleOperator.LESS_THAN_OR_EQUAL:
        return actual <= expected
    if operator is RuleOperator.BETWEEN:
        lower, upper = expected
        return lower <= actual <= upper
    return None


def _evaluate_number(operator: RuleOperator, actual: Decimal, expected: Any) -> bool:
    if operator is RuleOperator.EQUALS:
        return actual == expected
    if operator is RuleOperator.NOT_EQUALS:
        return actual != expected
    if operator is RuleOperator.IN:
        return actual in expected
    if operator is RuleOperator.NOT_IN:
        return actual not in expected
    result = _compare_ordered(operator, actual, expected)
    if result is None:  # pragma: no cover - filtered by check_rule_shape
        raise TypeMismatch(f"Unsupported number operator {operator.value}", operator=operator.value)
    return result


def _evaluate_string(operator: RuleOperator, actual: str, expected: Any) -> bool:
    if operator is RuleOperator.EQUALS:
        return actual == expected
    if operator is RuleOperator.NOT_EQUALS:
        return actual != expected
    if operator is RuleOperator.IN:
        return actual in expected
    if operator is RuleOperator.NOT_IN:
        return actual not in expected
    folded = actual.casefold()
    needle = expected.casefold()
    if operator is RuleOperator.CONTAINS:
        return needle in folded
    if operator is RuleOperator.NOT_CONTAINS:
        return needle not in folded
    if operator is RuleOperator.STARTS_WITH:
        return folded.startswith(needle)
    if operator is RuleOperator.ENDS_WITH:
        return folded.endswith(needle)
    raise TypeMismatch(f"Unsupported string operator {operator.value}", operator=operator.value)  # pragma: no cover


def _evaluate_date(operator: RuleOperator, actual: datetime, expected: Any) -> bool:
    if operator is RuleOperator.EQUALS:
        return actual.date() == expected.date()
    if operator is RuleOperator.NOT_EQUALS:
        return actual.date() != expected.date()
    result = _compare_ordered(operator, actual, expected)
    if result is None:  # pragma: no cover - filtered by check_rule_shape
        raise TypeMismatch(f"Unsupported date operator {operator.value}", operator=operator.value)
    return result


def _evaluate_boolean(operator: RuleOperator, actual: bool, expected: bool) -> bool:
    if operator is RuleOperator.EQUALS:
        return actual is expected
    return actual is not expected


def _evaluate_string_list(operator: RuleOperator, actual: list[str], expected: Any) -> bool:
    if operator is RuleOperator.EQUALS:
        return set(actual) == expected
    if operator is RuleOperator.NOT_EQUALS:
        return set(actual) != expected
    if operator is RuleOperator.IN:
        return bool(set(actual) & set(expected))
    if operator is RuleOperator.NOT_IN:
        return not set(actual) & set(expected)
    folded = {item.casefold() for item in actual}
    if operator is RuleOperator.CONTAINS:
        return expected.casefold() in folded
    if operator is RuleOperator.NOT_CONTAINS:
        return expected.casefold() not in folded
    raise TypeMismatch(f"Unsupported list operator {operator.value}", operator=operator.value)  # pragma: no cover


_HANDLERS: dict[FieldKind, Callable[[RuleOperator, Any, Any], bool]] = {
    FieldKind.NUMBER: _evaluate_number,
    FieldKind.STRING: _evaluate_string,
    FieldKind.DATE: _evaluate_date,
    FieldKind.BOOLEAN: _evaluate_boolean,
    FieldKind.STRING_LIST: _evaluate_string_list,
}


__all__ = ["check_rule_shape", "evaluate_rule", "resolve_relative_date"]
