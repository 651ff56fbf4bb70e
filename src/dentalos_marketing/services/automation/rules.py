"""Automation rule management and execution log queries."""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dentalos_marketing.models.automation import (
    AutomationExecution,
    AutomationExecutionStatus,
    AutomationRule,
    AutomationTriggerType,
)
from dentalos_marketing.models.segment import Segment
from dentalos_marketing.schemas.automation import (
    AddToSegmentAction,
    AutomationAction,
    AutomationRuleDefinition,
    AutomationRuleUpdate,
    RemoveFromSegmentAction,
    dump_actions,
    parse_actions,
)
from dentalos_marketing.schemas.rules import SegmentRule, dump_rules
from dentalos_marketing.services.automation.conditions import referenced_segment_ids
from dentalos_marketing.services.errors import AutomationError, AutomationRuleNotFound, SegmentNotFound
from dentalos_marketing.services.rules import check_rule_shape


def _validated_conditions(conditions: list[SegmentRule]) -> list[dict[str, Any]]:
    for condition in conditions:
        check_rule_shape(condition)
    return dump_rules(conditions)


def _segment_ids_of(conditions: list[SegmentRule], actions: list[AutomationAction]) -> list[UUID]:
    segment_ids = referenced_segment_ids(conditions)
    for action in actions:
        if isinstance(action, (AddToSegmentAction, RemoveFromSegmentAction)):
            segment_ids.append(action.params.segment_id)
    return list(dict.fromkeys(segment_ids))


class AutomationRuleService:
    """CRUD for automation rules; rules are disabled, never deleted."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_rule(
        self,
        tenant_id: UUID,
        definition: AutomationRuleDefinition | Mapping[str, Any],
    ) -> AutomationRule:
        if not isinstance(definition, AutomationRuleDefinition):
            definition = AutomationRuleDefinition.model_validate(definition)

        conditions = _validated_conditions(definition.conditions)
        actions = parse_actions(definition.actions)
        await self._ensure_segments_belong_to(tenant_id, _segment_ids_of(definition.conditions, actions))

        rule = AutomationRule(
            tenant_id=tenant_id,
            name=definition.name,
            description=definition.description,
            trigger_type=definition.trigger_type,
            conditions=conditions,
            actions=dump_actions(actions),
            is_active=definition.is_active,
            is_paused=False,
            max_executions_per_patient_per_day=definition.max_executions_per_patient_per_day,
            execution_delay_seconds=definition.execution_delay_seconds,
            total_executions=0,
            successful_executions=0,
            failed_executions=0,
        )
        self._session.add(rule)
        await self._session.commit()
        logger.info(
            "Created automation rule",
            rule_id=str(rule.id),
            tenant_id=str(tenant_id),
            trigger_type=rule.trigger_type.value,
            action_count=len(rule.actions),
        )
        return rule

    async def get_rule(self, rule_id: UUID) -> AutomationRule:
        rule = await self._session.get(AutomationRule, rule_id)
        if rule is None:
            raise AutomationRuleNotFound(f"Automation rule {rule_id} not found")
        return rule

    async def list_rules(
        self,
        tenant_id: UUID,
        *,
        trigger_type: AutomationTriggerType | None = None,
        include_inactive: bool = True,
    ) -> list[AutomationRule]:
        stmt = select(AutomationRule).where(AutomationRule.tenant_id == tenant_id)
        if trigger_type is not None:
            stmt = stmt.where(AutomationRule.trigger_type == AutomationTriggerType(trigger_type))
        if not include_inactive:
            stmt = stmt.where(AutomationRule.is_active.is_(True))
        result = await self._session.execute(stmt.order_by(AutomationRule.created_at.asc()))
        return list(result.scalars().all())

    async def update_rule(
        self,
        rule_id: UUID,
        changes: AutomationRuleUpdate | Mapping[str, Any],
    ) -> AutomationRule:
        """Apply only the fields the caller set; in-flight executions keep their snapshot."""

        if not isinstance(changes, AutomationRuleUpdate):
            changes = AutomationRuleUpdate.model_validate(changes)
        rule = await self.get_rule(rule_id)

        values: dict[str, Any] = {}
        for field_name in changes.model_fields_set:
            value = getattr(changes, field_name)
            if field_name == "conditions":
                conditions = value or []
                value = _validated_conditions(conditions)
                await self._ensure_segments_belong_to(rule.tenant_id, _segment_ids_of(conditions, []))
            elif field_name == "actions":
                if not value:
                    raise AutomationError("Automation rules need at least one action")
                actions = parse_actions(value)
                await self._ensure_segments_belong_to(rule.tenant_id, _segment_ids_of([], actions))
                value = dump_actions(actions)
            elif field_name == "name" and value is None:
                continue
            elif field_name == "execution_delay_seconds" and value is None:
                value = 0
            values[field_name] = value

        for field_name, value in values.items():
            setattr(rule, field_name, value)

        await self._session.commit()
        logger.info("Updated automation rule", rule_id=str(rule.id), fields=sorted(values))
        return rule

    async def pause(self, rule_id: UUID) -> AutomationRule:
        return await self._set_flags(rule_id, is_paused=True)

    async def resume(self, rule_id: UUID) -> AutomationRule:
        return await self._set_flags(rule_id, is_paused=False)

    async def activate(self, rule_id: UUID) -> AutomationRule:
        return await self._set_flags(rule_id, is_active=True)

    async def deactivate(self, rule_id: UUID) -> AutomationRule:
        return await self._set_flags(rule_id, is_active=False)

    async def list_executions(
        self,
        rule_id: UUID,
        *,
        patient_id: UUID | None = None,
        status: AutomationExecutionStatus | None = None,
        limit: int = 100,
    ) -> list[AutomationExecution]:
        stmt = select(AutomationExecution).where(AutomationExecution.rule_id == rule_id)
        if patient_id is not None:
            stmt = stmt.where(AutomationExecution.patient_id == patient_id)
        if status is not None:
            stmt = stmt.where(AutomationExecution.status == AutomationExecutionStatus(status))
        stmt = stmt.order_by(AutomationExecution.created_at.desc(), AutomationExecution.retry_attempt.desc())
        result = await self._session.execute(stmt.limit(limit))
        return list(result.scalars().all())

    async def get_execution(self, execution_id: UUID) -> AutomationExecution:
        execution = await self._session.get(AutomationExecution, execution_id)
        if execution is None:
            raise AutomationError(f"Automation execution {execution_id} not found")
        return execution

    async def execution_lineage(self, execution_id: UUID) -> list[AutomationExecution]:
        """The retry chain ending at ``execution_id``, oldest first."""

        chain: list[AutomationExecution] = []
        current: AutomationExecution | None = await self.get_execution(execution_id)
        while current is not None:
            chain.append(current)
            if current.parent_execution_id is None:
                break
            current = await self._session.get(AutomationExecution, current.parent_execution_id)
        chain.reverse()
        return chain

    async def _ensure_segments_belong_to(self, tenant_id: UUID, segment_ids: list[UUID]) -> None:
        if not segment_ids:
            return
        result = await self._session.execute(
            select(Segment.id).where(Segment.id.in_(segment_ids), Segment.tenant_id == tenant_id)
        )
        known = set(result.scalars().all())
        missing = [segment_id for segment_id in segment_ids if segment_id not in known]
        if missing:
            raise SegmentNotFound(f"Segment {missing[0]} not found for tenant {tenant_id}")

    async def _set_flags(self, rule_id: UUID, **flags: bool) -> AutomationRule:
        rule = await self.get_rule(rule_id)
        for name, value in flags.items():
            setattr(rule, name, value)
        await self._session.commit()
        logger.info("Changed automation rule state", rule_id=str(rule.id), **flags)
        return rule


__all__ = ["AutomationRuleService"]
