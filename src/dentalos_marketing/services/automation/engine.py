"""Trigger dispatch and execution of automation rules.

One execution record exists per (rule, trigger event, patient, attempt
generation); the unique ``idempotency_key`` column makes duplicate deliveries
fail at insert time. The daily cap is claimed in the same transaction with a
conditional increment on ``automation_daily_counters``.

Execution status flow::

    pending -> running -> success | failed | partial | cancelled
    pending -> skipped                      (daily cap reached)
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping
from uuid import UUID, uuid4

from fastapi.encoders import jsonable_encoder
from loguru import logger
from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dentalos_marketing.core.clock import Clock, SystemClock, ensure_aware
from dentalos_marketing.core.settings import Settings, settings as default_settings
from dentalos_marketing.db.session import SessionFactory, open_session
from dentalos_marketing.models.automation import (
    AutomationDailyCounter,
    AutomationExecution,
    AutomationExecutionStatus,
    AutomationRule,
)
from dentalos_marketing.observability.automation import get_automation_store
from dentalos_marketing.schemas.automation import (
    AutomationAction,
    AutomationActionType,
    TriggerEvent,
    parse_actions,
)
from dentalos_marketing.schemas.rules import parse_rules
from dentalos_marketing.services.automation.actions import ActionContext, action_idempotency_key, run_action
from dentalos_marketing.services.automation.conditions import ConditionEvaluation, ConditionEvaluator
from dentalos_marketing.services.automation.gateways import AutomationGateways, _get_configured_gateways
from dentalos_marketing.services.errors import (
    ActionFailed,
    ActionTimeout,
    AutomationRuleNotFound,
    DedupConflict,
)
from dentalos_marketing.services.segments.attributes import PatientAttributeSource, _get_configured_source

tracer = trace.get_tracer(__name__)

ACTION_SUCCESS = "success"
ACTION_FAILED = "failed"
ACTION_SKIPPED = "skipped"


def execution_idempotency_key(rule_id: UUID, trigger_event_id: str, patient_id: UUID, retry_attempt: int = 0) -> str:
    raw = f"{rule_id}:{trigger_event_id}:{patient_id}:{retry_attempt}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class ActionOutcome:
    action_id: str
    action_type: str
    order: int
    status: str
    attempts: int = 0
    error: str | None = None
    output: dict[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return jsonable_encoder(
            {
                "action_id": self.action_id,
                "action_type": self.action_type,
                "order": self.order,
                "status": self.status,
                "attempts": self.attempts,
                "error": self.error,
                "output": self.output,
                "started_at": self.started_at,
                "completed_at": self.completed_at,
            }
        )


@dataclass(slots=True)
class ExecutionSummary:
    execution_id: UUID
    rule_id: UUID
    status: AutomationExecutionStatus
    conditions_met: bool | None
    actions_executed: int = 0
    actions_succeeded: int = 0
    actions_failed: int = 0
    error: str | None = None
    retry_attempt: int = 0
    parent_execution_id: UUID | None = None

    @classmethod
    def from_record(cls, record: AutomationExecution) -> "ExecutionSummary":
        return cls(
            execution_id=record.id,
            rule_id=record.rule_id,
            status=AutomationExecutionStatus(record.status),
            conditions_met=record.conditions_met,
            actions_executed=record.actions_executed or 0,
            actions_succeeded=record.actions_succeeded or 0,
            actions_failed=record.actions_failed or 0,
            error=record.error,
            retry_attempt=record.retry_attempt or 0,
            parent_execution_id=record.parent_execution_id,
        )


@dataclass(slots=True)
class TriggerDispatchResult:
    event_id: str
    matched_rule_ids: list[UUID] = field(default_factory=list)
    executions: list[ExecutionSummary] = field(default_factory=list)
    duplicate_rule_ids: list[UUID] = field(default_factory=list)
    errored_rule_ids: list[UUID] = field(default_factory=list)

    def for_rule(self, rule_id: UUID) -> ExecutionSummary | None:
        return next((item for item in self.executions if item.rule_id == rule_id), None)


@dataclass(slots=True)
class _PipelineResult:
    outcomes: list[ActionOutcome]
    status: AutomationExecutionStatus
    error: str | None = None


class AutomationEngine:
    """Match trigger events to rules and run their action pipelines."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        gateways: AutomationGateways | None = None,
        attribute_source: PatientAttributeSource | None = None,
        clock: Clock | None = None,
        config: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateways = gateways or _get_configured_gateways()
        self._attributes = attribute_source or _get_configured_source()
        self._clock = clock or SystemClock()
        self._config = config or default_settings
        self._store = get_automation_store()

    async def handle_trigger(self, event: TriggerEvent | Mapping[str, Any]) -> TriggerDispatchResult:
        """Run every active, unpaused rule for the event's tenant and trigger type.

        Rules run concurrently, each in its own session. Duplicate deliveries
        and unexpected failures are reported on the result and never raised.
        """

        trigger = event if isinstance(event, TriggerEvent) else TriggerEvent.model_validate(event)
        with tracer.start_as_current_span("automation.handle_trigger") as span:
            span.set_attribute("automation.trigger_type", trigger.trigger_type.value)
            span.set_attribute("automation.event_id", trigger.event_id)

            rule_ids = await self._match_rules(trigger)
            self._store.record_trigger(trigger.trigger_type.value, len(rule_ids))
            logger.info(
                "Dispatching automation trigger",
                event_id=trigger.event_id,
                trigger_type=trigger.trigger_type.value,
                patient_id=str(trigger.patient_id),
                matched_rules=len(rule_ids),
            )

            result = TriggerDispatchResult(event_id=trigger.event_id, matched_rule_ids=list(rule_ids))
            outcomes = await asyncio.gather(*(self._dispatch_rule(rule_id, trigger) for rule_id in rule_ids))
            for rule_id, outcome in zip(rule_ids, outcomes):
                if isinstance(outcome, ExecutionSummary):
                    result.executions.append(outcome)
                elif outcome == "duplicate":
                    result.duplicate_rule_ids.append(rule_id)
                else:
                    result.errored_rule_ids.append(rule_id)
            return result

    async def retry_execution(self, execution_id: UUID) -> ExecutionSummary:
        """Re-run a finished execution as a new record linked through ``parent_execution_id``.

        The daily cap is not re-checked; action idempotency keys are stable
        across generations so side effects that already landed are not repeated.
        """

        session = await open_session(self._session_factory)
        async with session as db:
            original = await db.get(AutomationExecution, execution_id)
            if original is None:
                raise AutomationRuleNotFound(f"Automation execution {execution_id} not found")
            rule = await db.get(AutomationRule, original.rule_id)
            if rule is None or not rule.is_active:
                raise AutomationRuleNotFound(f"Automation rule {original.rule_id} is not active")

            # The newest generation for this delivery decides the next attempt number.
            latest = await db.execute(
                select(AutomationExecution.retry_attempt)
                .where(
                    AutomationExecution.rule_id == original.rule_id,
                    AutomationExecution.trigger_event_id == original.trigger_event_id,
                    AutomationExecution.patient_id == original.patient_id,
                )
                .order_by(AutomationExecution.retry_attempt.desc())
                .limit(1)
            )
            next_attempt = (latest.scalar_one_or_none() or 0) + 1
            trigger = TriggerEvent(
                event_id=original.trigger_event_id,
                trigger_type=original.trigger_type,
                tenant_id=original.tenant_id,
                patient_id=original.patient_id,
                occurred_at=ensure_aware(original.created_at) or self._clock.now(),
                payload=dict(original.trigger_data or {}),
            )
            rule_id = rule.id

        logger.info(
            "Retrying automation execution",
            execution_id=str(execution_id),
            rule_id=str(rule_id),
            retry_attempt=next_attempt,
        )
        return await self._run_rule(
            rule_id,
            trigger,
            retry_attempt=next_attempt,
            parent_execution_id=execution_id,
            enforce_cap=False,
        )

    async def _match_rules(self, trigger: TriggerEvent) -> list[UUID]:
        session = await open_session(self._session_factory)
        async with session as db:
            result = await db.execute(
                select(AutomationRule.id)
                .where(
                    AutomationRule.tenant_id == trigger.tenant_id,
                    AutomationRule.trigger_type == trigger.trigger_type,
                    AutomationRule.is_active.is_(True),
                    AutomationRule.is_paused.is_(False),
                )
                .order_by(AutomationRule.created_at.asc())
            )
            return list(result.scalars().all())

    async def _dispatch_rule(self, rule_id: UUID, trigger: TriggerEvent) -> ExecutionSummary | str | None:
        try:
            return await self._run_rule(rule_id, trigger)
        except DedupConflict:
            return "duplicate"
        except Exception:  # pragma: no cover - defensive logging
            logger.exception(
                "Automation rule dispatch failed",
                rule_id=str(rule_id),
                event_id=trigger.event_id,
            )
            return None

    async def _run_rule(
        self,
        rule_id: UUID,
        trigger: TriggerEvent,
        *,
        retry_attempt: int = 0,
        parent_execution_id: UUID | None = None,
        enforce_cap: bool = True,
    ) -> ExecutionSummary:
        session = await open_session(self._session_factory)
        async with session as db:
            rule = await db.get(AutomationRule, rule_id)
            if rule is None:
                raise AutomationRuleNotFound(f"Automation rule {rule_id} not found")

            execution = await self._create_execution(
                db,
                rule,
                trigger,
                retry_attempt=retry_attempt,
                parent_execution_id=parent_execution_id,
            )

            if enforce_cap and rule.max_executions_per_patient_per_day:
                claimed = await self._claim_daily_slot(
                    db,
                    rule_id=rule.id,
                    patient_id=trigger.patient_id,
                    day=self._clock.now().date(),
                    cap=rule.max_executions_per_patient_per_day,
                )
                if not claimed:
                    now = self._clock.now()
                    execution.status = AutomationExecutionStatus.SKIPPED
                    execution.error = "Daily execution cap reached"
                    execution.completed_at = now
                    await db.commit()
                    self._store.record_execution(AutomationExecutionStatus.SKIPPED.value)
                    logger.info(
                        "Skipped automation execution at daily cap",
                        execution_id=str(execution.id),
                        rule_id=str(rule.id),
                        patient_id=str(trigger.patient_id),
                    )
                    return ExecutionSummary.from_record(execution)

            execution.status = AutomationExecutionStatus.RUNNING
            execution.started_at = self._clock.now()
            await db.commit()

            with tracer.start_as_current_span("automation.execute_rule") as span:
                span.set_attribute("automation.rule_id", str(rule.id))
                span.set_attribute("automation.execution_id", str(execution.id))
                try:
                    await self._execute(db, rule, execution, trigger)
                except Exception as exc:  # pragma: no cover - defensive logging
                    logger.exception("Automation execution crashed", execution_id=str(execution.id))
                    await db.rollback()
                    await db.refresh(rule)
                    await db.refresh(execution)
                    await self._finalize(
                        db,
                        rule,
                        execution,
                        status=AutomationExecutionStatus.FAILED,
                        conditions=None,
                        outcomes=[],
                        error=f"{type(exc).__name__}: {exc}",
                    )
            return ExecutionSummary.from_record(execution)

    async def _create_execution(
        self,
        db: AsyncSession,
        rule: AutomationRule,
        trigger: TriggerEvent,
        *,
        retry_attempt: int,
        parent_execution_id: UUID | None,
    ) -> AutomationExecution:
        # Rollback expires ORM state, so the log below must not touch `rule`.
        rule_id = rule.id
        key = execution_idempotency_key(rule_id, trigger.event_id, trigger.patient_id, retry_attempt)
        execution = AutomationExecution(
            tenant_id=trigger.tenant_id,
            rule_id=rule_id,
            patient_id=trigger.patient_id,
            trigger_event_id=trigger.event_id,
            trigger_type=trigger.trigger_type,
            trigger_data=jsonable_encoder(trigger.payload),
            idempotency_key=key,
            status=AutomationExecutionStatus.PENDING,
            condition_results=[],
            action_results=[],
            retry_attempt=retry_attempt,
            parent_execution_id=parent_execution_id,
        )
        db.add(execution)
        try:
            await db.flush()
        except IntegrityError as exc:
            await db.rollback()
            self._store.record_duplicate()
            logger.info(
                "Ignoring duplicate automation trigger delivery",
                rule_id=str(rule_id),
                event_id=trigger.event_id,
                patient_id=str(trigger.patient_id),
                retry_attempt=retry_attempt,
            )
            raise DedupConflict("Execution already recorded for this delivery", idempotency_key=key) from exc
        return execution

    async def _claim_daily_slot(
        self,
        db: AsyncSession,
        *,
        rule_id: UUID,
        patient_id: UUID,
        day: date,
        cap: int,
    ) -> bool:
        """Atomically take one of today's slots; False once the cap is used up."""

        dialect = db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        await db.execute(
            insert(AutomationDailyCounter)
            .values(id=uuid4(), rule_id=rule_id, patient_id=patient_id, day=day, count=0)
            .on_conflict_do_nothing(index_elements=["rule_id", "patient_id", "day"])
        )
        result = await db.execute(
            update(AutomationDailyCounter)
            .where(
                AutomationDailyCounter.rule_id == rule_id,
                AutomationDailyCounter.patient_id == patient_id,
                AutomationDailyCounter.day == day,
                AutomationDailyCounter.count < cap,
            )
            .values(count=AutomationDailyCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _execute(
        self,
        db: AsyncSession,
        rule: AutomationRule,
        execution: AutomationExecution,
        trigger: TriggerEvent,
    ) -> None:
        try:
            conditions = parse_rules(rule.conditions)
            actions = parse_actions(rule.actions)
        except Exception as exc:
            await self._finalize(
                db,
                rule,
                execution,
                status=AutomationExecutionStatus.FAILED,
                conditions=None,
                outcomes=[],
                error=f"{type(exc).__name__}: {exc}",
            )
            return

        evaluation = await ConditionEvaluator(db, attribute_source=self._attributes).evaluate(
            conditions,
            tenant_id=trigger.tenant_id,
            patient_id=trigger.patient_id,
            payload=trigger.payload,
            now=self._clock.now(),
        )
        if evaluation.error is not None:
            await self._finalize(
                db,
                rule,
                execution,
                status=AutomationExecutionStatus.FAILED,
                conditions=evaluation,
                outcomes=[],
                error=evaluation.error,
            )
            return
        if not evaluation.met:
            await self._finalize(
                db, rule, execution, status=AutomationExecutionStatus.SUCCESS, conditions=evaluation, outcomes=[]
            )
            return

        if rule.execution_delay_seconds:
            await self._clock.sleep(rule.execution_delay_seconds)

        pipeline = await self._run_pipeline(db, rule, execution, trigger, actions)
        await self._finalize(
            db,
            rule,
            execution,
            status=pipeline.status,
            conditions=evaluation,
            outcomes=pipeline.outcomes,
            error=pipeline.error,
        )

    async def _run_pipeline(
        self,
        db: AsyncSession,
        rule: AutomationRule,
        execution: AutomationExecution,
        trigger: TriggerEvent,
        actions: list[AutomationAction],
    ) -> _PipelineResult:
        outcomes: list[ActionOutcome] = []
        halted_by: str | None = None
        cancelled = False

        for action in actions:
            if halted_by is not None:
                outcomes.append(
                    ActionOutcome(
                        action_id=action.action_id,
                        action_type=action.action_type.value,
                        order=action.order,
                        status=ACTION_SKIPPED,
                        error=halted_by,
                    )
                )
                continue

            context = ActionContext(
                execution_id=execution.id,
                rule_id=rule.id,
                tenant_id=trigger.tenant_id,
                patient_id=trigger.patient_id,
                trigger_event_id=trigger.event_id,
                trigger_type=trigger.trigger_type.value,
                payload=dict(trigger.payload),
                session_factory=self._session_factory,
                gateways=self._gateways,
                attribute_source=self._attributes,
                clock=self._clock,
                idempotency_key=action_idempotency_key(rule.id, trigger.event_id, trigger.patient_id, action.action_id),
            )
            outcome = await self._execute_action(action, context)
            outcomes.append(outcome)

            if outcome.status == ACTION_FAILED and action.stop_on_failure:
                halted_by = f"Pipeline stopped after action {action.action_id} failed"
            elif (
                action.action_type is AutomationActionType.WAIT
                and self._config.automation_abort_inflight_on_disable
                and not await self._rule_still_enabled(db, rule.id)
            ):
                halted_by = "Rule disabled while execution was waiting"
                cancelled = True
                logger.info("Cancelling in-flight automation execution", execution_id=str(execution.id))

        failed = sum(1 for outcome in outcomes if outcome.status == ACTION_FAILED)
        succeeded = sum(1 for outcome in outcomes if outcome.status == ACTION_SUCCESS)
        if cancelled:
            return _PipelineResult(outcomes, AutomationExecutionStatus.CANCELLED, halted_by)
        if halted_by is not None:
            return _PipelineResult(outcomes, AutomationExecutionStatus.FAILED, halted_by)
        if failed == 0:
            return _PipelineResult(outcomes, AutomationExecutionStatus.SUCCESS)
        if succeeded > 0:
            return _PipelineResult(outcomes, AutomationExecutionStatus.PARTIAL, f"{failed} action(s) failed")
        return _PipelineResult(outcomes, AutomationExecutionStatus.FAILED, "All actions failed")

    async def _execute_action(self, action: AutomationAction, context: ActionContext) -> ActionOutcome:
        action_type = action.action_type.value
        max_attempts = 1 + action.retry_attempts
        timeout = self._config.automation_action_timeout_seconds
        started_at = self._clock.now()
        last_error = "unknown error"
        last_output: dict[str, Any] | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                if action.action_type is AutomationActionType.WAIT:
                    output = await run_action(action, context)
                else:
                    output = await asyncio.wait_for(run_action(action, context), timeout=timeout)
            except asyncio.TimeoutError:
                self._store.record_timeout(action_type)
                last_error = str(ActionTimeout(f"Action timed out after {timeout}s", action_id=action.action_id))
                last_output = None
            except ActionFailed as exc:
                if isinstance(exc, ActionTimeout):
                    self._store.record_timeout(action_type)
                last_error = str(exc)
                last_output = exc.output
            except Exception as exc:
                logger.opt(exception=exc).warning(
                    "Automation action raised",
                    action_id=action.action_id,
                    action_type=action_type,
                    attempt=attempt,
                )
                last_error = f"{type(exc).__name__}: {exc}"
                last_output = None
            else:
                self._store.record_action(action_type, ACTION_SUCCESS)
                return ActionOutcome(
                    action_id=action.action_id,
                    action_type=action_type,
                    order=action.order,
                    status=ACTION_SUCCESS,
                    attempts=attempt,
                    output=output,
                    started_at=started_at,
                    completed_at=self._clock.now(),
                )

            if attempt < max_attempts:
                delay = self._retry_delay(action.retry_delay_seconds, attempt)
                self._store.record_retry(action_type)
                logger.warning(
                    "Retrying automation action",
                    execution_id=str(context.execution_id),
                    action_id=action.action_id,
                    action_type=action_type,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=last_error,
                )
                await self._clock.sleep(delay)

        self._store.record_action(action_type, ACTION_FAILED)
        logger.warning(
            "Automation action failed",
            execution_id=str(context.execution_id),
            action_id=action.action_id,
            action_type=action_type,
            attempts=max_attempts,
            error=last_error,
        )
        return ActionOutcome(
            action_id=action.action_id,
            action_type=action_type,
            order=action.order,
            status=ACTION_FAILED,
            attempts=max_attempts,
            error=last_error,
            output=last_output,
            started_at=started_at,
            completed_at=self._clock.now(),
        )

    def _retry_delay(self, base_seconds: float, attempt: int) -> float:
        if self._config.automation_retry_backoff == "exponential":
            delay = base_seconds * (2 ** (attempt - 1))
        else:
            delay = base_seconds * attempt
        return min(delay, self._config.automation_max_retry_delay_seconds)

    async def _rule_still_enabled(self, db: AsyncSession, rule_id: UUID) -> bool:
        result = await db.execute(
            select(AutomationRule.is_active, AutomationRule.is_paused).where(AutomationRule.id == rule_id)
        )
        row = result.one_or_none()
        return bool(row and row.is_active and not row.is_paused)

    async def _finalize(
        self,
        db: AsyncSession,
        rule: AutomationRule,
        execution: AutomationExecution,
        *,
        status: AutomationExecutionStatus,
        conditions: ConditionEvaluation | None,
        outcomes: list[ActionOutcome],
        error: str | None = None,
    ) -> None:
        now = self._clock.now()
        started_at = ensure_aware(execution.started_at) or now

        execution.status = status
        execution.conditions_met = conditions.met if conditions is not None and conditions.error is None else None
        execution.condition_results = jsonable_encoder(conditions.results) if conditions is not None else []
        execution.action_results = [outcome.as_dict() for outcome in outcomes]
        execution.actions_executed = sum(1 for outcome in outcomes if outcome.status != ACTION_SKIPPED)
        execution.actions_succeeded = sum(1 for outcome in outcomes if outcome.status == ACTION_SUCCESS)
        execution.actions_failed = sum(1 for outcome in outcomes if outcome.status == ACTION_FAILED)
        execution.error = error
        execution.completed_at = now
        execution.duration_ms = max(int((now - started_at).total_seconds() * 1000), 0)

        await db.execute(
            update(AutomationRule)
            .where(AutomationRule.id == rule.id)
            .values(
                total_executions=AutomationRule.total_executions + 1,
                successful_executions=AutomationRule.successful_executions
                + (1 if status is AutomationExecutionStatus.SUCCESS else 0),
                failed_executions=AutomationRule.failed_executions
                + (1 if status is AutomationExecutionStatus.FAILED else 0),
                last_executed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        self._store.record_execution(status.value, rule_id=str(rule.id), duration_ms=execution.duration_ms)
        logger.info(
            "Automation execution finished",
            execution_id=str(execution.id),
            rule_id=str(rule.id),
            status=status.value,
            conditions_met=execution.conditions_met,
            actions_succeeded=execution.actions_succeeded,
            actions_failed=execution.actions_failed,
            duration_ms=execution.duration_ms,
        )


__all__ = [
    "ActionOutcome",
    "AutomationEngine",
    "ExecutionSummary",
    "TriggerDispatchResult",
    "execution_idempotency_key",
]
