"""Celery application for automation trigger delivery and execution retries."""

from __future__ import annotations

from celery import Celery

from dentalos_marketing.core.settings import Settings, settings


def create_celery_app(config: Settings) -> Celery:
    """Build the Celery app; broker and result backend fall back to ``redis_url``."""

    app = Celery(
        "dentalos_marketing",
        broker=config.celery_broker_url or config.redis_url,
        backend=config.celery_result_backend or config.redis_url,
    )
    app.conf.update(
        task_default_queue=config.celery_default_queue,
        task_routes={"automation.*": {"queue": config.automation_task_queue}},
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        broker_connection_retry_on_startup=True,
        # Trigger handlers are idempotent, so a redelivered event after a worker crash is safe.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
    )
    app.autodiscover_tasks(["dentalos_marketing.celery_tasks"])
    return app


celery_app = create_celery_app(settings)

__all__ = ["celery_app", "create_celery_app"]
