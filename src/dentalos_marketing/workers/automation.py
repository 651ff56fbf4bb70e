"""In-process worker consuming automation trigger events without Celery."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

from loguru import logger

from dentalos_marketing.core.settings import settings
from dentalos_marketing.db.session import SessionFactory
from dentalos_marketing.schemas.automation import TriggerEvent
from dentalos_marketing.services.automation.engine import AutomationEngine
from dentalos_marketing.tasks.automation import process_trigger_event


class AutomationTriggerWorker:
    """Queue-backed consumer; each event runs as its own task, bounded by ``concurrency``."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        concurrency: int | None = None,
        engine: AutomationEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine or AutomationEngine(session_factory)
        self.concurrency = concurrency or settings.automation_worker_concurrency
        self._queue: asyncio.Queue[TriggerEvent | None] = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._inflight: set[asyncio.Task] = set()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.summary: dict[str, int] = {"received": 0, "processed": 0, "failed": 0}

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info("Automation trigger worker started", concurrency=self.concurrency)

    async def stop(self) -> None:
        """Finish queued and in-flight events, then stop consuming."""

        if not self._task:
            return
        await self._queue.put(None)
        await self._task
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._task = None
        self.is_running = False
        logger.info("Automation trigger worker stopped", summary=dict(self.summary))

    async def submit(self, event: TriggerEvent | Mapping[str, Any]) -> None:
        trigger = event if isinstance(event, TriggerEvent) else TriggerEvent.model_validate(event)
        self.summary["received"] += 1
        await self._queue.put(trigger)

    async def drain(self) -> dict[str, int]:
        """Wait until every submitted event has been processed."""

        await self._queue.join()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        return dict(self.summary)

    async def _run_loop(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                self._queue.task_done()
                break
            await self._semaphore.acquire()
            task = asyncio.create_task(self._process(event))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _process(self, event: TriggerEvent) -> None:
        try:
            await process_trigger_event(event, session_factory=self._session_factory, engine=self._engine)
            self.summary["processed"] += 1
        except Exception as exc:  # pragma: no cover - defensive logging
            self.summary["failed"] += 1
            logger.exception("Automation trigger worker processing failed", event_id=event.event_id, error=str(exc))
        finally:
            self._semaphore.release()
            self._queue.task_done()


__all__ = ["AutomationTriggerWorker"]
