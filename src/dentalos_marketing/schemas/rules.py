from __future__ import annotations

from typing import Any, Iterable

from pydantic import AliasChoices, Field, ValidationError

from dentalos_marketing.core.enums import TokenEnum
from dentalos_marketing.schemas._base import CamelModel
from dentalos_marketing.services.errors import MalformedRule


class RuleOperator(TokenEnum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


class RuleGroupOperator(TokenEnum):
    AND = "and"
    OR = "or"


class SegmentRule(CamelModel):
    """Single ``field operator value`` predicate."""

    field: str = Field(..., min_length=1)
    operator: RuleOperator
    value: Any = None
    rule_id: str | None = Field(default=None, validation_alias=AliasChoices("id", "rule_id", "ruleId"))


class RuleGroup(CamelModel):
    """AND/OR combination of rules and nested groups."""

    operator: RuleGroupOperator = RuleGroupOperator.AND
    rules: list[SegmentRule] = Field(default_factory=list)
    groups: list["RuleGroup"] = Field(
        default_factory=list, validation_alias=AliasChoices("groups", "subgroups")
    )

    def depth(self) -> int:
        if not self.groups:
            return 1
        return 1 + max(group.depth() for group in self.groups)


def parse_rule_groups(raw: Iterable[Any] | None) -> list[RuleGroup]:
    """Coerce persisted JSON (or already-built models) into rule groups."""

    if raw is None:
        return []
    groups: list[RuleGroup] = []
    for item in raw:
        if isinstance(item, RuleGroup):
            groups.append(item)
            continue
        try:
            groups.append(RuleGroup.model_validate(item))
        except ValidationError as exc:
            raise MalformedRule(f"Invalid rule group: {exc.errors()[0]['msg']}") from exc
    return groups


def parse_rules(raw: Iterable[Any] | None) -> list[SegmentRule]:
    if raw is None:
        return []
    rules: list[SegmentRule] = []
    for item in raw:
        if isinstance(item, SegmentRule):
            rules.append(item)
            continue
        try:
            rules.append(SegmentRule.model_validate(item))
        except ValidationError as exc:
            raise MalformedRule(f"Invalid rule: {exc.errors()[0]['msg']}") from exc
    return rules


def dump_rule_groups(groups: Iterable[RuleGroup]) -> list[dict[str, Any]]:
    return [group.model_dump(mode="json", exclude_none=True) for group in groups]


def dump_rules(rules: Iterable[SegmentRule]) -> list[dict[str, Any]]:
    return [rule.model_dump(mode="json", exclude_none=True) for rule in rules]


__all__ = [
    "RuleGroup",
    "RuleGroupOperator",
    "RuleOperator",
    "SegmentRule",
    "dump_rule_groups",
    "dump_rules",
    "parse_rule_groups",
    "parse_rules",
]
