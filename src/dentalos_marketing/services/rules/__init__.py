from .evaluator import check_rule_shape, evaluate_rule, resolve_relative_date
from .fields import FIELD_DEFINITIONS, FieldDefinition, FieldKind, SegmentRuleField, TriggerField, resolve_field

__all__ = [
    "FIELD_DEFINITIONS",
    "FieldDefinition",
    "FieldKind",
    "SegmentRuleField",
    "TriggerField",
    "check_rule_shape",
    "evaluate_rule",
    "resolve_field",
    "resolve_relative_date",
]
