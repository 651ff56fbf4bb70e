"""Exception hierarchy shared by the rule, segment, loyalty and automation services."""

from __future__ import annotations

from typing import Any
from uuid import UUID


class MarketingEngineError(RuntimeError):
    """Base class for domain errors raised by the marketing engine."""


class MalformedRule(MarketingEngineError):
    """Rule, group or action definition is structurally invalid."""

    def __init__(self, message: str, *, field: str | None = None, operator: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.operator = operator


class TypeMismatch(MarketingEngineError):
    """Attribute value or operator is incompatible with the field kind."""

    def __init__(self, message: str, *, field: str | None = None, operator: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.operator = operator
        self.value = value


class SegmentDefinitionError(MarketingEngineError):
    """Operation is not valid for the segment's kind or state."""


class SegmentNotFound(MarketingEngineError):
    pass


class LoyaltyLedgerError(MarketingEngineError):
    def __init__(self, message: str, *, account_id: UUID | None = None) -> None:
        super().__init__(message)
        self.account_id = account_id


class LoyaltyAccountNotFound(LoyaltyLedgerError):
    pass


class InsufficientBalance(LoyaltyLedgerError):
    def __init__(self, message: str, *, account_id: UUID | None = None, requested: int = 0, available: int = 0) -> None:
        super().__init__(message, account_id=account_id)
        self.requested = requested
        self.available = available


class AccountSuspended(LoyaltyLedgerError):
    pass


class AccountInactive(LoyaltyLedgerError):
    pass


class AutomationError(MarketingEngineError):
    pass


class AutomationRuleNotFound(AutomationError):
    pass


class ActionFailed(AutomationError):
    """An action attempt did not complete successfully."""

    def __init__(self, message: str, *, action_id: str | None = None, output: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.action_id = action_id
        self.output = output


class ActionTimeout(ActionFailed):
    pass


class DedupConflict(AutomationError):
    """An execution already exists for this rule, trigger event, patient and attempt."""

    def __init__(self, message: str, *, idempotency_key: str) -> None:
        super().__init__(message)
        self.idempotency_key = idempotency_key


__all__ = [
    "AccountInactive",
    "AccountSuspended",
    "ActionFailed",
    "ActionTimeout",
    "AutomationError",
    "AutomationRuleNotFound",
    "DedupConflict",
    "InsufficientBalance",
    "LoyaltyAccountNotFound",
    "LoyaltyLedgerError",
    "MalformedRule",
    "MarketingEngineError",
    "SegmentDefinitionError",
    "SegmentNotFound",
    "TypeMismatch",
]
