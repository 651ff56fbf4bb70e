"""Loyalty account, ledger and tier configuration models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship


from dentalos_marketing.core.enums import TokenEnum
from dentalos_marketing.db.base import Base


class LoyaltyTier(TokenEnum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class LoyaltyTransactionType(str, Enum):
    """Ledger entry types; amounts are signed according to the type."""

    ACCRUAL = "accrual"
    REDEMPTION = "redemption"
    EXPIRY = "expiry"
    ADJUSTMENT = "adjustment"


class LoyaltyAccrualSource(TokenEnum):
    PROCEDURE = "procedure"
    INVOICE = "invoice"
    REFERRAL = "referral"
    SIGNUP = "signup"
    BIRTHDAY = "birthday"
    PROMOTION = "promotion"
    AUTOMATION = "automation"
    ADJUSTMENT = "adjustment"


class LoyaltyPointLotStatus(str, Enum):
    OPEN = "open"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class LoyaltyAccount(Base):
    """Per-patient loyalty balance with running totals."""

    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "patient_id", name="uq_loyalty_accounts_patient"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    patient_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    current_points = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_redeemed = Column(Integer, nullable=False, default=0)
    total_expired = Column(Integer, nullable=False, default=0)
    total_adjusted = Column(Integer, nullable=False, default=0)
    tier = Column(SqlEnum(LoyaltyTier, name="loyalty_tier"), nullable=False, default=LoyaltyTier.BRONZE)
    tier_achieved_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_suspended = Column(Boolean, nullable=False, default=False)
    suspension_reason = Column(Text, nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    closure_reason = Column(Text, nullable=True)
    transaction_sequence = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    transactions = relationship(
        "LoyaltyTransaction", back_populates="account", order_by="LoyaltyTransaction.sequence"
    )
    lots = relationship("LoyaltyPointLot", back_populates="account")

    __mapper_args__ = {"version_id_col": version}


class LoyaltyTransaction(Base):
    """Immutable ledger entry recording a single balance movement."""

    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_loyalty_transactions_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False)
    transaction_type = Column(SqlEnum(LoyaltyTransactionType, name="loyalty_transaction_type"), nullable=False)
    amount = Column(Integer, nullable=False)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source = Column(SqlEnum(LoyaltyAccrualSource, name="loyalty_accrual_source"), nullable=True)
    expiry_date = Column(DateTime(timezone=True), nullable=True)
    transaction_date = Column(DateTime(timezone=True), nullable=False)
    description = Column(Text, nullable=True)
    reason = Column(Text, nullable=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    lot_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_point_lots.id"), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("LoyaltyAccount", back_populates="transactions")


class LoyaltyPointLot(Base):
    """Remaining-balance bucket created by a credit; consumed oldest-expiry first."""

    __tablename__ = "loyalty_point_lots"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False)
    points = Column(Integer, nullable=False)
    consumed_points = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    status = Column(
        SqlEnum(LoyaltyPointLotStatus, name="loyalty_point_lot_status"),
        nullable=False,
        default=LoyaltyPointLotStatus.OPEN,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    account = relationship("LoyaltyAccount", back_populates="lots")

    @property
    def remaining(self) -> int:
        return max(int(self.points or 0) - int(self.consumed_points or 0), 0)


class LoyaltyTierConfig(Base):
    """Tenant-specific tier thresholds and accrual multipliers."""

    __tablename__ = "loyalty_tier_configs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "tier", name="uq_loyalty_tier_configs_tier"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    tier = Column(SqlEnum(LoyaltyTier, name="loyalty_tier"), nullable=False)
    point_threshold = Column(Integer, nullable=False)
    accrual_multiplier = Column(Numeric(6, 3), nullable=False, default=1)
    benefits = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LedgerImmutableError(RuntimeError):
    """Raised when code attempts to rewrite a recorded loyalty transaction."""


@event.listens_for(LoyaltyTransaction, "before_update")
def _reject_transaction_update(mapper, connection, target) -> None:  # noqa: ARG001
    raise LedgerImmutableError(f"Loyalty transaction {target.id} is immutable")
