"""Automation trigger execution helpers.

These helpers allow Celery, the in-process worker, or CLI runners to hand a
trigger event to the automation engine using the same service layer.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping
from uuid import UUID

from loguru import logger

from dentalos_marketing.db.session import SessionFactory, async_session
from dentalos_marketing.schemas.automation import TriggerEvent
from dentalos_marketing.services.automation.engine import AutomationEngine


async def process_trigger_event(
    payload: TriggerEvent | Mapping[str, Any],
    *,
    session_factory: SessionFactory | None = None,
    engine: AutomationEngine | None = None,
) -> dict[str, Any]:
    """Dispatch a trigger event and return a JSON-friendly summary."""

    event = payload if isinstance(payload, TriggerEvent) else TriggerEvent.model_validate(payload)
    runner = engine or AutomationEngine(session_factory or async_session)
    result = await runner.handle_trigger(event)

    summary = {
        "eventId": event.event_id,
        "triggerType": event.trigger_type.value,
        "matchedRules": len(result.matched_rule_ids),
        "duplicates": len(result.duplicate_rule_ids),
        "errored": len(result.errored_rule_ids),
        "executions": [
            {
                "executionId": str(execution.execution_id),
                "ruleId": str(execution.rule_id),
                "status": execution.status.value,
                "conditionsMet": execution.conditions_met,
                "actionsSucceeded": execution.actions_succeeded,
                "actionsFailed": execution.actions_failed,
            }
            for execution in result.executions
        ],
    }
    logger.bind(summary=summary).info("Automation trigger processed")
    return summary


def process_trigger_event_sync(
    payload: Mapping[str, Any],
    *,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    """Convenience wrapper so Celery/cron integrations can call the async engine."""

    return asyncio.run(process_trigger_event(payload, session_factory=session_factory))


async def retry_automation_execution(
    execution_id: UUID,
    *,
    session_factory: SessionFactory | None = None,
    engine: AutomationEngine | None = None,
) -> dict[str, Any]:
    runner = engine or AutomationEngine(session_factory or async_session)
    execution = await runner.retry_execution(execution_id)
    return {
        "executionId": str(execution.execution_id),
        "parentExecutionId": str(execution.parent_execution_id) if execution.parent_execution_id else None,
        "retryAttempt": execution.retry_attempt,
        "status": execution.status.value,
    }


def retry_automation_execution_sync(
    execution_id: str | UUID,
    *,
    session_factory: SessionFactory | None = None,
) -> dict[str, Any]:
    execution_uuid = UUID(str(execution_id))
    return asyncio.run(retry_automation_execution(execution_uuid, session_factory=session_factory))


__all__ = [
    "process_trigger_event",
    "process_trigger_event_sync",
    "retry_automation_execution",
    "retry_automation_execution_sync",
]
