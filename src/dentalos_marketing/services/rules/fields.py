"""Closed table of fields that segment rules and automation conditions may reference."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from dentalos_marketing.schemas.rules import RuleOperator
from dentalos_marketing.services.errors import MalformedRule


class FieldKind(str, Enum):
    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    BOOLEAN = "boolean"
    STRING_LIST = "string_list"


class FieldCategory(str, Enum):
    DEMOGRAPHIC = "demographic"
    ENGAGEMENT = "engagement"
    FINANCIAL = "financial"
    LOYALTY = "loyalty"
    CLINICAL = "clinical"
    COMMUNICATION = "communication"
    TRIGGER = "trigger"
    MEMBERSHIP = "membership"


class SegmentRuleField(str, Enum):
    """Patient attributes available to segment rules."""

    AGE = "age"
    GENDER = "gender"
    ZIP_CODE = "zip_code"
    LANGUAGE = "language"
    LAST_VISIT = "last_visit"
    FIRST_VISIT = "first_visit"
    APPOINTMENT_COUNT = "appointment_count"
    CANCELLATION_COUNT = "cancellation_count"
    NO_SHOW_COUNT = "no_show_count"
    TOTAL_SPENT = "total_spent"
    AVERAGE_INVOICE = "average_invoice"
    OUTSTANDING_BALANCE = "outstanding_balance"
    HAS_PAYMENT_PLAN = "has_payment_plan"
    LOYALTY_TIER = "loyalty_tier"
    LOYALTY_POINTS = "loyalty_points"
    REFERRAL_COUNT = "referral_count"
    NPS_SCORE = "nps_score"
    FEEDBACK_RATING = "feedback_rating"
    HAS_PROCEDURE = "has_procedure"
    HAS_TREATMENT_PLAN = "has_treatment_plan"
    HAS_INSURANCE = "has_insurance"
    PREFERRED_CHANNEL = "preferred_channel"
    MARKETING_CONSENT = "marketing_consent"
    EMAIL_ENABLED = "email_enabled"
    SMS_ENABLED = "sms_enabled"
    TAGS = "tags"
    STATUS = "status"


class TriggerField(str, Enum):
    """Trigger payload values available to automation conditions."""

    INVOICE_AMOUNT = "invoice_amount"
    INVOICE_BALANCE = "invoice_balance"
    APPOINTMENT_TYPE = "appointment_type"
    APPOINTMENT_STATUS = "appointment_status"
    PROVIDER_ID = "provider_id"
    PROCEDURE_CODE = "procedure_code"
    PROCEDURE_CATEGORY = "procedure_category"
    TREATMENT_PLAN_AMOUNT = "treatment_plan_amount"
    NPS_CATEGORY = "nps_category"
    DAYS_OVERDUE = "days_overdue"
    POINTS_EXPIRING = "points_expiring"
    SEGMENT_IDS = "segment_ids"


@dataclass(slots=True, frozen=True)
class FieldDefinition:
    key: str
    kind: FieldKind
    category: FieldCategory
    description: str = ""


_COMMON = frozenset({RuleOperator.IS_NULL, RuleOperator.IS_NOT_NULL})
_EQUALITY = frozenset({RuleOperator.EQUALS, RuleOperator.NOT_EQUALS})
_ORDERING = frozenset(
    {
        RuleOperator.GREATER_THAN,
        RuleOperator.GREATER_THAN_OR_EQUAL,
        RuleOperator.LESS_THAN,
        RuleOperator.LESS_THAN_OR_EQUAL,
        RuleOperator.BETWEEN,
    }
)
_MEMBERSHIP = frozenset({RuleOperator.IN, RuleOperator.NOT_IN})
_TEXT = frozenset(
    {
        RuleOperator.CONTAINS,
        RuleOperator.NOT_CONTAINS,
        RuleOperator.STARTS_WITH,
        RuleOperator.ENDS_WITH,
    }
)

OPERATORS_BY_KIND: dict[FieldKind, frozenset[RuleOperator]] = {
    FieldKind.NUMBER: _COMMON | _EQUALITY | _ORDERING | _MEMBERSHIP,
    FieldKind.STRING: _COMMON | _EQUALITY | _MEMBERSHIP | _TEXT,
    FieldKind.DATE: _COMMON | _EQUALITY | _ORDERING,
    FieldKind.BOOLEAN: _COMMON | _EQUALITY,
    FieldKind.STRING_LIST: _COMMON
    | _EQUALITY
    | _MEMBERSHIP
    | frozenset({RuleOperator.CONTAINS, RuleOperator.NOT_CONTAINS}),
}


def _define(key: Enum, kind: FieldKind, category: FieldCategory, description: str = "") -> tuple[str, FieldDefinition]:
    return key.value, FieldDefinition(key.value, kind, category, description)


FIELD_DEFINITIONS: dict[str, FieldDefinition] = dict(
    [
        # Demographics
        _define(SegmentRuleField.AGE, FieldKind.NUMBER, FieldCategory.DEMOGRAPHIC, "Age in whole years"),
        _define(SegmentRuleField.GENDER, FieldKind.STRING, FieldCategory.DEMOGRAPHIC),
        _define(SegmentRuleField.ZIP_CODE, FieldKind.STRING, FieldCategory.DEMOGRAPHIC),
        _define(SegmentRuleField.LANGUAGE, FieldKind.STRING, FieldCategory.DEMOGRAPHIC, "Preferred language code"),
        _define(SegmentRuleField.STATUS, FieldKind.STRING, FieldCategory.DEMOGRAPHIC, "Patient record status"),
        # Visits
        _define(SegmentRuleField.LAST_VISIT, FieldKind.DATE, FieldCategory.ENGAGEMENT),
        _define(SegmentRuleField.FIRST_VISIT, FieldKind.DATE, FieldCategory.ENGAGEMENT),
        _define(SegmentRuleField.APPOINTMENT_COUNT, FieldKind.NUMBER, FieldCategory.ENGAGEMENT),
        _define(SegmentRuleField.CANCELLATION_COUNT, FieldKind.NUMBER, FieldCategory.ENGAGEMENT),
        _define(SegmentRuleField.NO_SHOW_COUNT, FieldKind.NUMBER, FieldCategory.ENGAGEMENT),
        _define(SegmentRuleField.NPS_SCORE, FieldKind.NUMBER, FieldCategory.ENGAGEMENT, "Latest NPS score (0-10)"),
        _define(SegmentRuleField.FEEDBACK_RATING, FieldKind.NUMBER, FieldCategory.ENGAGEMENT, "Latest rating (1-5)"),
        _define(SegmentRuleField.TAGS, FieldKind.STRING_LIST, FieldCategory.ENGAGEMENT),
        # Financial
        _define(SegmentRuleField.TOTAL_SPENT, FieldKind.NUMBER, FieldCategory.FINANCIAL),
        _define(SegmentRuleField.AVERAGE_INVOICE, FieldKind.NUMBER, FieldCategory.FINANCIAL),
        _define(SegmentRuleField.OUTSTANDING_BALANCE, FieldKind.NUMBER, FieldCategory.FINANCIAL),
        _define(SegmentRuleField.HAS_PAYMENT_PLAN, FieldKind.BOOLEAN, FieldCategory.FINANCIAL),
        _define(SegmentRuleField.HAS_INSURANCE, FieldKind.BOOLEAN, FieldCategory.FINANCIAL),
        # Loyalty
        _define(SegmentRuleField.LOYALTY_TIER, FieldKind.STRING, FieldCategory.LOYALTY),
        _define(SegmentRuleField.LOYALTY_POINTS, FieldKind.NUMBER, FieldCategory.LOYALTY),
        _define(SegmentRuleField.REFERRAL_COUNT, FieldKind.NUMBER, FieldCategory.LOYALTY),
        # Clinical
        _define(SegmentRuleField.HAS_PROCEDURE, FieldKind.STRING_LIST, FieldCategory.CLINICAL, "Completed procedure codes"),
        _define(SegmentRuleField.HAS_TREATMENT_PLAN, FieldKind.BOOLEAN, FieldCategory.CLINICAL),
        # Communication preferences
        _define(SegmentRuleField.PREFERRED_CHANNEL, FieldKind.STRING, FieldCategory.COMMUNICATION),
        _define(SegmentRuleField.MARKETING_CONSENT, FieldKind.BOOLEAN, FieldCategory.COMMUNICATION),
        _define(SegmentRuleField.EMAIL_ENABLED, FieldKind.BOOLEAN, FieldCategory.COMMUNICATION),
        _define(SegmentRuleField.SMS_ENABLED, FieldKind.BOOLEAN, FieldCategory.COMMUNICATION),
        # Trigger payload
        _define(TriggerField.INVOICE_AMOUNT, FieldKind.NUMBER, FieldCategory.TRIGGER),
        _define(TriggerField.INVOICE_BALANCE, FieldKind.NUMBER, FieldCategory.TRIGGER),
        _define(TriggerField.APPOINTMENT_TYPE, FieldKind.STRING, FieldCategory.TRIGGER),
        _define(TriggerField.APPOINTMENT_STATUS, FieldKind.STRING, FieldCategory.TRIGGER),
        _define(TriggerField.PROVIDER_ID, FieldKind.STRING, FieldCategory.TRIGGER),
        _define(TriggerField.PROCEDURE_CODE, FieldKind.STRING, FieldCategory.TRIGGER),
        _define(TriggerField.PROCEDURE_CATEGORY, FieldKind.STRING, FieldCategory.TRIGGER),
        _define(TriggerField.TREATMENT_PLAN_AMOUNT, FieldKind.NUMBER, FieldCategory.TRIGGER),
        _define(TriggerField.NPS_CATEGORY, FieldKind.STRING, FieldCategory.TRIGGER, "promoter, passive or detractor"),
        _define(TriggerField.DAYS_OVERDUE, FieldKind.NUMBER, FieldCategory.TRIGGER),
        _define(TriggerField.POINTS_EXPIRING, FieldKind.NUMBER, FieldCategory.TRIGGER),
        _define(
            TriggerField.SEGMENT_IDS,
            FieldKind.STRING_LIST,
            FieldCategory.MEMBERSHIP,
            "Segments the patient currently belongs to",
        ),
    ]
)


def resolve_field(name: str) -> FieldDefinition:
    """Look up a field by key, accepting ``INVOICE_AMOUNT`` style spellings."""

    key = str(name).strip().lower()
    definition = FIELD_DEFINITIONS.get(key)
    if definition is None:
        raise MalformedRule(f"Unknown rule field '{name}'", field=str(name))
    return definition


def operators_for(kind: FieldKind) -> frozenset[RuleOperator]:
    return OPERATORS_BY_KIND[kind]


__all__ = [
    "FIELD_DEFINITIONS",
    "FieldCategory",
    "FieldDefinition",
    "FieldKind",
    "OPERATORS_BY_KIND",
    "SegmentRuleField",
    "TriggerField",
    "operators_for",
    "resolve_field",
]
