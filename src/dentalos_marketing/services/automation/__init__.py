from .engine import ActionOutcome, AutomationEngine, ExecutionSummary, TriggerDispatchResult, execution_idempotency_key
from .gateways import AutomationGateways, configure_gateways
from .rules import AutomationRuleService

__all__ = [
    "ActionOutcome",
    "AutomationEngine",
    "AutomationGateways",
    "AutomationRuleService",
    "ExecutionSummary",
    "TriggerDispatchResult",
    "configure_gateways",
    "execution_idempotency_key",
]
