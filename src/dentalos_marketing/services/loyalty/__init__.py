from .ledger import ExpiringPoints, LoyaltyLedger
from .tiers import DEFAULT_THRESHOLDS, TierPolicy, TierThreshold, load_tier_policy

__all__ = [
    "DEFAULT_THRESHOLDS",
    "ExpiringPoints",
    "LoyaltyLedger",
    "TierPolicy",
    "TierThreshold",
    "load_tier_policy",
]
