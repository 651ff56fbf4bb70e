"""Automation rule, execution log and daily cap models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from dentalos_marketing.core.enums import TokenEnum
from dentalos_marketing.db.base import Base


class AutomationTriggerType(TokenEnum):
    """Domain events that can start an automation rule."""

    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_NO_SHOW = "appointment_no_show"
    APPOINTMENT_REMINDER_DUE = "appointment_reminder_due"
    INVOICE_CREATED = "invoice_created"
    INVOICE_PAID = "invoice_paid"
    INVOICE_OVERDUE = "invoice_overdue"
    PATIENT_REGISTERED = "patient_registered"
    PATIENT_BIRTHDAY = "patient_birthday"
    PATIENT_INACTIVE = "patient_inactive"
    RECALL_OVERDUE = "recall_overdue"
    TREATMENT_PLAN_CREATED = "treatment_plan_created"
    TREATMENT_PLAN_APPROVED = "treatment_plan_approved"
    PROCEDURE_COMPLETED = "procedure_completed"
    FEEDBACK_RECEIVED = "feedback_received"
    NPS_SCORE_RECEIVED = "nps_score_received"
    LOYALTY_POINTS_ACCRUED = "loyalty_points_accrued"
    LOYALTY_TIER_ACHIEVED = "loyalty_tier_achieved"
    LOYALTY_POINTS_EXPIRING = "loyalty_points_expiring"
    REFERRAL_CREATED = "referral_created"
    REFERRAL_COMPLETED = "referral_completed"
    SCHEDULED_DAILY = "scheduled_daily"
    SCHEDULED_WEEKLY = "scheduled_weekly"
    SCHEDULED_MONTHLY = "scheduled_monthly"


class AutomationExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {
        AutomationExecutionStatus.SUCCESS,
        AutomationExecutionStatus.FAILED,
        AutomationExecutionStatus.PARTIAL,
        AutomationExecutionStatus.SKIPPED,
        AutomationExecutionStatus.CANCELLED,
    }
)


class AutomationRule(Base):
    """Trigger, conditions and ordered actions configured by a practice."""

    __tablename__ = "automation_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(SqlEnum(AutomationTriggerType, name="automation_trigger_type"), nullable=False, index=True)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    is_paused = Column(Boolean, nullable=False, default=False)
    max_executions_per_patient_per_day = Column(Integer, nullable=True)
    execution_delay_seconds = Column(Integer, nullable=False, default=0)
    total_executions = Column(Integer, nullable=False, default=0)
    successful_executions = Column(Integer, nullable=False, default=0)
    failed_executions = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    executions = relationship("AutomationExecution", back_populates="rule", passive_deletes="all")


class AutomationExecution(Base):
    """Log entry for one rule run against one trigger delivery."""

    __tablename__ = "automation_executions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    rule_id = Column(
        UUID(as_uuid=True), ForeignKey("automation_rules.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    patient_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    trigger_event_id = Column(String, nullable=False, index=True)
    trigger_type = Column(SqlEnum(AutomationTriggerType, name="automation_trigger_type"), nullable=False)
    trigger_data = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String(64), nullable=False, unique=True)
    status = Column(
        SqlEnum(AutomationExecutionStatus, name="automation_execution_status"),
        nullable=False,
        default=AutomationExecutionStatus.PENDING,
    )
    conditions_met = Column(Boolean, nullable=True)
    condition_results = Column(JSON, nullable=False, default=list)
    action_results = Column(JSON, nullable=False, default=list)
    actions_executed = Column(Integer, nullable=False, default=0)
    actions_succeeded = Column(Integer, nullable=False, default=0)
    actions_failed = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    retry_attempt = Column(Integer, nullable=False, default=0)
    parent_execution_id = Column(UUID(as_uuid=True), ForeignKey("automation_executions.id"), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    rule = relationship("AutomationRule", back_populates="executions")


class AutomationDailyCounter(Base):
    """Per rule, patient and calendar day execution tally backing the daily cap."""

    __tablename__ = "automation_daily_counters"
    __table_args__ = (
        UniqueConstraint("rule_id", "patient_id", "day", name="uq_automation_daily_counters_slot"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    rule_id = Column(
        UUID(as_uuid=True), ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False
    )
    patient_id = Column(UUID(as_uuid=True), nullable=False)
    day = Column(Date, nullable=False)
    count = Column(Integer, nullable=False, default=0)
