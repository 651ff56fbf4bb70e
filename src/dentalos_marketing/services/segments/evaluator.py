from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from dentalos_marketing.core.settings import settings
from dentalos_marketing.schemas.rules import RuleGroup, RuleGroupOperator, SegmentRule, parse_rule_groups
from dentalos_marketing.services.errors import MalformedRule
from dentalos_marketing.services.rules import check_rule_shape, evaluate_rule

RuleEvaluator = Callable[..., bool]


class SegmentEvaluator:
    """Recursive AND/OR evaluation of rule groups against a patient snapshot.

    ``and`` groups stop at the first false child and ``or`` groups at the first
    true child; rules are visited before nested groups. An empty group is true.
    Several top-level groups combine with AND.
    """

    def __init__(
        self,
        *,
        max_depth: int | None = None,
        rule_evaluator: RuleEvaluator = evaluate_rule,
        now: datetime | None = None,
    ) -> None:
        self._max_depth = max_depth or settings.segment_rule_max_depth
        self._evaluate_rule = rule_evaluator
        self._now = now

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def evaluate_group(self, group: RuleGroup, snapshot: Mapping[str, Any], *, depth: int = 1) -> bool:
        # Checked up front so short-circuiting cannot hide an over-deep branch.
        if depth == 1 and group.depth() > self._max_depth:
            raise MalformedRule(f"Rule groups may nest at most {self._max_depth} levels")

        is_and = RuleGroupOperator(group.operator) is RuleGroupOperator.AND
        for child in self._children(group):
            if isinstance(child, SegmentRule):
                matched = self._evaluate_rule(child, snapshot, now=self._now)
            else:
                matched = self.evaluate_group(child, snapshot, depth=depth + 1)
            if is_and and not matched:
                return False
            if not is_and and matched:
                return True
        if not group.rules and not group.groups:
            return True
        return is_and

    def evaluate_groups(self, groups: Iterable[RuleGroup | Mapping[str, Any]], snapshot: Mapping[str, Any]) -> bool:
        for group in parse_rule_groups(groups):
            if not self.evaluate_group(group, snapshot):
                return False
        return True

    def validate_groups(self, groups: Iterable[RuleGroup | Mapping[str, Any]]) -> list[RuleGroup]:
        """Parse and check every rule and the nesting depth; return the parsed groups."""

        parsed = parse_rule_groups(groups)
        for group in parsed:
            self._validate(group, depth=1)
        return parsed

    def _validate(self, group: RuleGroup, *, depth: int) -> None:
        if depth > self._max_depth:
            raise MalformedRule(f"Rule groups may nest at most {self._max_depth} levels")
        for rule in group.rules:
            check_rule_shape(rule)
        for child in group.groups:
            self._validate(child, depth=depth + 1)

    @staticmethod
    def _children(group: RuleGroup) -> Iterable[SegmentRule | RuleGroup]:
        yield from group.rules
        yield from group.groups


def referenced_fields(groups: Iterable[RuleGroup]) -> set[str]:
    """Collect the field keys a rule tree reads, used to avoid fetching unused attributes."""

    fields: set[str] = set()

    def _walk(group: RuleGroup) -> None:
        for rule in group.rules:
            fields.add(rule.field.strip().lower())
        for child in group.groups:
            _walk(child)

    for group in groups:
        _walk(group)
    return fields


__all__ = ["RuleEvaluator", "SegmentEvaluator", "referenced_fields"]
