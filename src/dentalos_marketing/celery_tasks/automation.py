from __future__ import annotations

from typing import Any

from loguru import logger

from dentalos_marketing.celery_app import celery_app
from dentalos_marketing.core.settings import settings
from dentalos_marketing.tasks.automation import process_trigger_event_sync, retry_automation_execution_sync


@celery_app.task(
    name="automation.process_trigger_event",
    queue=settings.automation_task_queue,
)
def process_trigger_event_task(payload: dict[str, Any]) -> dict[str, object]:
    """Celery entrypoint for dispatching a single trigger event."""

    try:
        return process_trigger_event_sync(payload)
    except Exception as exc:  # pragma: no cover - Celery handles retries/logging
        logger.exception("Automation trigger processing failed", event_id=payload.get("eventId") or payload.get("event_id"))
        raise exc


@celery_app.task(
    name="automation.retry_execution",
    queue=settings.automation_task_queue,
)
def retry_execution_task(execution_id: str) -> dict[str, object]:
    try:
        return retry_automation_execution_sync(execution_id)
    except Exception as exc:  # pragma: no cover - Celery handles retries/logging
        logger.exception("Automation execution retry failed", execution_id=execution_id)
        raise exc
