from .automation import (  # noqa: F401
    AutomationDailyCounter,
    AutomationExecution,
    AutomationExecutionStatus,
    AutomationRule,
    AutomationTriggerType,
)
from .loyalty import (  # noqa: F401
    LoyaltyAccount,
    LoyaltyAccrualSource,
    LoyaltyPointLot,
    LoyaltyPointLotStatus,
    LoyaltyTier,
    LoyaltyTierConfig,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from .segment import Segment, SegmentKind, SegmentMember  # noqa: F401
