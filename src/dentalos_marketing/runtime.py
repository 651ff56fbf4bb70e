"""Process bootstrap: logging, the in-process trigger worker and the job scheduler."""

from __future__ import annotations

import asyncio
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from loguru import logger

from dentalos_marketing import __version__
from dentalos_marketing.core.logging import configure_logging
from dentalos_marketing.core.settings import Settings, settings as default_settings
from dentalos_marketing.db.session import SessionFactory, async_session
from dentalos_marketing.scheduling import MarketingJobScheduler
from dentalos_marketing.workers import AutomationTriggerWorker


def _session_factory():
    return async_session()


def resolve_schedule_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = Path(__file__).resolve().parent.parent.parent / path
    return path


@dataclass(slots=True)
class MarketingRuntime:
    worker: AutomationTriggerWorker | None
    scheduler: MarketingJobScheduler | None


@asynccontextmanager
async def marketing_runtime(
    *,
    config: Settings | None = None,
    session_factory: SessionFactory | None = None,
) -> AsyncIterator[MarketingRuntime]:
    config = config or default_settings
    session_factory = session_factory or _session_factory

    worker: AutomationTriggerWorker | None = None
    if config.automation_worker_enabled:
        worker = AutomationTriggerWorker(session_factory, concurrency=config.automation_worker_concurrency)
        worker.start()
    else:
        logger.info("Automation trigger worker disabled", reason="automation_worker_enabled is false")

    scheduler: MarketingJobScheduler | None = None
    if config.scheduler_enabled:
        schedule_path = resolve_schedule_path(config.schedule_path)
        scheduler = MarketingJobScheduler(session_factory=session_factory, config_path=schedule_path)
        try:
            scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Marketing job scheduler failed to start", error=str(exc))
            scheduler = None
        else:
            logger.info("Marketing job scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info("Marketing job scheduler disabled", reason="scheduler_enabled is false")

    try:
        yield MarketingRuntime(worker=worker, scheduler=scheduler)
    finally:
        if scheduler:
            await scheduler.stop()
        if worker:
            await worker.stop()


async def serve(config: Settings | None = None) -> None:
    """Run background components until SIGINT/SIGTERM."""

    config = config or default_settings
    configure_logging(config, version=__version__)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - platforms without signal support
            pass

    async with marketing_runtime(config=config):
        logger.info("Marketing runtime started", environment=config.environment, version=__version__)
        await stop_event.wait()
    logger.info("Marketing runtime stopped")


__all__ = ["MarketingRuntime", "marketing_runtime", "resolve_schedule_path", "serve"]
