"""Segments, loyalty ledger and automation tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from dentalos_marketing.models.automation import AutomationExecutionStatus, AutomationTriggerType
from dentalos_marketing.models.loyalty import (
    LoyaltyAccrualSource,
    LoyaltyPointLotStatus,
    LoyaltyTier,
    LoyaltyTransactionType,
)
from dentalos_marketing.models.segment import SegmentKind


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


segment_kind_enum = sa.Enum(SegmentKind, name="marketing_segment_kind")
loyalty_tier_enum = sa.Enum(LoyaltyTier, name="loyalty_tier")
transaction_type_enum = sa.Enum(LoyaltyTransactionType, name="loyalty_transaction_type")
accrual_source_enum = sa.Enum(LoyaltyAccrualSource, name="loyalty_accrual_source")
lot_status_enum = sa.Enum(LoyaltyPointLotStatus, name="loyalty_point_lot_status")
trigger_type_enum = sa.Enum(AutomationTriggerType, name="automation_trigger_type")
execution_status_enum = sa.Enum(AutomationExecutionStatus, name="automation_execution_status")


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "marketing_segments",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False, index=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("kind", segment_kind_enum, nullable=False),
        sa.Column("rule_groups", sa.JSON(), nullable=False),
        sa.Column("cached_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_interval_seconds", sa.Integer(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "marketing_segment_members",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("segment_id", _uuid(), nullable=False, index=True),
        sa.Column("patient_id", _uuid(), nullable=False, index=True),
        sa.Column("added_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["segment_id"], ["marketing_segments.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("segment_id", "patient_id", name="uq_marketing_segment_members_patient"),
    )

    op.create_table(
        "loyalty_accounts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False, index=True),
        sa.Column("patient_id", _uuid(), nullable=False, index=True),
        sa.Column("current_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_expired", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_adjusted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", loyalty_tier_enum, nullable=False),
        sa.Column("tier_achieved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_suspended", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("suspension_reason", sa.Text(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closure_reason", sa.Text(), nullable=True),
        sa.Column("transaction_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "patient_id", name="uq_loyalty_accounts_patient"),
    )

    op.create_table(
        "loyalty_point_lots",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("account_id", _uuid(), nullable=False, index=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("consumed_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("status", lot_status_enum, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["loyalty_accounts.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("account_id", _uuid(), nullable=False, index=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("transaction_type", transaction_type_enum, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("source", accrual_source_enum, nullable=True),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=True, unique=True),
        sa.Column("lot_id", _uuid(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["loyalty_accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["lot_id"], ["loyalty_point_lots.id"]),
        sa.UniqueConstraint("account_id", "sequence", name="uq_loyalty_transactions_sequence"),
    )

    op.create_table(
        "loyalty_tier_configs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False, index=True),
        sa.Column("tier", sa.Enum(LoyaltyTier, name="loyalty_tier", create_type=False), nullable=False),
        sa.Column("point_threshold", sa.Integer(), nullable=False),
        sa.Column("accrual_multiplier", sa.Numeric(6, 3), nullable=False, server_default="1"),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "tier", name="uq_loyalty_tier_configs_tier"),
    )

    op.create_table(
        "automation_rules",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False, index=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", trigger_type_enum, nullable=False, index=True),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("actions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_executions_per_patient_per_day", sa.Integer(), nullable=True),
        sa.Column("execution_delay_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_executions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_executions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_executions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "automation_executions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("tenant_id", _uuid(), nullable=False, index=True),
        sa.Column("rule_id", _uuid(), nullable=False, index=True),
        sa.Column("patient_id", _uuid(), nullable=False, index=True),
        sa.Column("trigger_event_id", sa.String(), nullable=False, index=True),
        sa.Column("trigger_type", sa.Enum(AutomationTriggerType, name="automation_trigger_type", create_type=False), nullable=False),
        sa.Column("trigger_data", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("status", execution_status_enum, nullable=False),
        sa.Column("conditions_met", sa.Boolean(), nullable=True),
        sa.Column("condition_results", sa.JSON(), nullable=False),
        sa.Column("action_results", sa.JSON(), nullable=False),
        sa.Column("actions_executed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actions_succeeded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("actions_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("parent_execution_id", _uuid(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["parent_execution_id"], ["automation_executions.id"]),
    )

    op.create_table(
        "automation_daily_counters",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("rule_id", _uuid(), nullable=False),
        sa.Column("patient_id", _uuid(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("rule_id", "patient_id", "day", name="uq_automation_daily_counters_slot"),
    )


def downgrade() -> None:
    op.drop_table("automation_daily_counters")
    op.drop_table("automation_executions")
    op.drop_table("automation_rules")
    op.drop_table("loyalty_tier_configs")
    op.drop_table("loyalty_transactions")
    op.drop_table("loyalty_point_lots")
    op.drop_table("loyalty_accounts")
    op.drop_table("marketing_segment_members")
    op.drop_table("marketing_segments")

    bind = op.get_bind()
    for enum in (
        execution_status_enum,
        trigger_type_enum,
        lot_status_enum,
        accrual_source_enum,
        transaction_type_enum,
        loyalty_tier_enum,
        segment_kind_enum,
    ):
        enum.drop(bind, checkfirst=True)
