"""APScheduler runtime for recurring marketing jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from dentalos_marketing.db.session import SessionFactory
from dentalos_marketing.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

JobCallable = Callable[..., Awaitable[Any]]


class MarketingJobScheduler:
    """Register jobs from the schedule file and run them with bounded retries."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._sleep = sleep
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._runners: dict[str, Callable[[], Awaitable[Any]]] = {}
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def load(self) -> ScheduleConfig:
        """Resolve every enabled job's callable; raises on a bad task path."""

        config = load_job_definitions(self._config_path)
        self._runners = {job.id: self._wrap_callable(self._resolve_callable(job), job) for job in config.enabled_jobs}
        self._config = config
        return config

    def start(self) -> None:
        config = self.load()
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)
        for job in config.enabled_jobs:
            scheduler.add_job(
                self._runners[job.id],
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered marketing job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._scheduler = scheduler
        logger.info("Marketing job scheduler started", jobs=len(config.enabled_jobs))

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Marketing job scheduler stopped")

    async def run_job(self, job_id: str) -> Any:
        """Run a configured job immediately, outside its cron schedule."""

        if self._config is None:
            self.load()
        runner = self._runners.get(job_id)
        if runner is None:
            raise KeyError(f"Unknown or disabled job: {job_id}")
        return await runner()

    def _resolve_callable(self, job: JobDefinition) -> JobCallable:
        module_name, _, attr = job.task.rpartition(".")
        if not module_name:
            raise ValueError(f"Invalid task path: {job.task}")
        func = getattr(import_module(module_name), attr, None)
        if func is None:
            raise AttributeError(f"Task {job.task} not found")
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Task {job.task} must be an async function")
        return func

    def _wrap_callable(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        async def _runner() -> Any:
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()

            for attempt in range(1, job.max_attempts + 1):
                try:
                    result = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    error_message = f"{type(exc).__name__}: {exc}"
                    if attempt >= job.max_attempts:
                        runtime_seconds = time.perf_counter() - started_at
                        self._observability.record_failure(
                            job.id, job.task, runtime_seconds=runtime_seconds, attempts=attempt, error=error_message
                        )
                        logger.exception(
                            "Scheduled job failed after retries", job_id=job.id, task=job.task, attempts=attempt
                        )
                        return None

                    delay = job.base_backoff_seconds * (job.backoff_multiplier ** (attempt - 1))
                    if job.max_backoff_seconds:
                        delay = min(delay, job.max_backoff_seconds)
                    if job.jitter_seconds:
                        delay += random.uniform(0, job.jitter_seconds)
                    self._observability.record_retry(job.id, job.task, attempts=attempt, error=error_message)
                    logger.warning(
                        "Scheduled job retrying",
                        job_id=job.id,
                        task=job.task,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                        error=error_message,
                    )
                    if delay:
                        await self._sleep(delay)
                    continue

                runtime_seconds = time.perf_counter() - started_at
                self._observability.record_success(
                    job.id, job.task, runtime_seconds=runtime_seconds, attempts=attempt
                )
                logger.info(
                    "Scheduled job completed",
                    job_id=job.id,
                    task=job.task,
                    attempts=attempt,
                    runtime_seconds=runtime_seconds,
                )
                return result
            return None

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "metrics": snapshot.jobs.get(job.id),
                }
                for job in jobs
            ],
        }


__all__ = ["MarketingJobScheduler"]
