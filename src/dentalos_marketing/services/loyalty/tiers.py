from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Literal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dentalos_marketing.core.settings import settings
from dentalos_marketing.models.loyalty import LoyaltyTier, LoyaltyTierConfig

TierBasis = Literal["lifetime", "current"]


@dataclass(slots=True, frozen=True)
class TierThreshold:
    tier: LoyaltyTier
    point_threshold: int
    accrual_multiplier: Decimal = Decimal("1")


DEFAULT_THRESHOLDS: tuple[TierThreshold, ...] = (
    TierThreshold(LoyaltyTier.BRONZE, 0),
    TierThreshold(LoyaltyTier.SILVER, 1_000),
    TierThreshold(LoyaltyTier.GOLD, 5_000),
    TierThreshold(LoyaltyTier.PLATINUM, 10_000),
)


@dataclass(slots=True)
class TierPolicy:
    """Thresholds and multipliers supplied by practice configuration."""

    thresholds: tuple[TierThreshold, ...] = DEFAULT_THRESHOLDS
    basis: TierBasis = field(default_factory=lambda: settings.loyalty_tier_basis)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.thresholds, key=lambda item: item.point_threshold))
        if not ordered:
            ordered = DEFAULT_THRESHOLDS
        self.thresholds = ordered

    def tier_for(self, points: int) -> LoyaltyTier:
        tier = self.thresholds[0].tier
        for threshold in self.thresholds:
            if points >= threshold.point_threshold:
                tier = threshold.tier
        return tier

    def multiplier_for(self, tier: LoyaltyTier) -> Decimal:
        for threshold in self.thresholds:
            if threshold.tier == tier:
                return threshold.accrual_multiplier
        return Decimal("1")

    def qualifying_points(self, *, total_earned: int, current_points: int) -> int:
        return total_earned if self.basis == "lifetime" else current_points

    @classmethod
    def from_configs(cls, configs: Iterable[LoyaltyTierConfig], *, basis: TierBasis | None = None) -> "TierPolicy":
        thresholds = tuple(
            TierThreshold(
                tier=LoyaltyTier(config.tier),
                point_threshold=int(config.point_threshold),
                accrual_multiplier=Decimal(str(config.accrual_multiplier or 1)),
            )
            for config in configs
            if config.is_active
        )
        return cls(thresholds=thresholds or DEFAULT_THRESHOLDS, basis=basis or settings.loyalty_tier_basis)


async def load_tier_policy(session: AsyncSession, tenant_id: UUID, *, basis: TierBasis | None = None) -> TierPolicy:
    """Build the tenant's tier policy, falling back to the default ladder."""

    result = await session.execute(
        select(LoyaltyTierConfig).where(
            LoyaltyTierConfig.tenant_id == tenant_id,
            LoyaltyTierConfig.is_active.is_(True),
        )
    )
    return TierPolicy.from_configs(result.scalars().all(), basis=basis)


__all__ = ["DEFAULT_THRESHOLDS", "TierBasis", "TierPolicy", "TierThreshold", "load_tier_policy"]
