"""Recompute cached member counts for dynamic segments whose refresh is due."""

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from dentalos_marketing.core.clock import Clock, SystemClock
from dentalos_marketing.db.session import SessionFactory, open_session
from dentalos_marketing.services.errors import MarketingEngineError
from dentalos_marketing.services.segments import PatientAttributeSource, SegmentService


async def refresh_dynamic_segments(
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
    attribute_source: PatientAttributeSource | None = None,
    limit: int = 100,
) -> Dict[str, Any]:
    clock = clock or SystemClock()
    session = await open_session(session_factory)

    async with session as managed_session:
        service = SegmentService(managed_session, attribute_source=attribute_source, clock=clock)
        due = await service.list_segments_due_for_refresh(now=clock.now(), limit=limit)
        segment_ids = [segment.id for segment in due]

        refreshed = 0
        failed = 0
        for segment_id in segment_ids:
            try:
                await service.refresh(segment_id)
            except MarketingEngineError as exc:
                failed += 1
                await managed_session.rollback()
                logger.warning("Segment refresh failed", segment_id=str(segment_id), error=str(exc))
                continue
            refreshed += 1

        summary = {"due": len(segment_ids), "refreshed": refreshed, "failed": failed}
        logger.bind(summary=summary).info("Dynamic segment refresh completed")
        return summary


__all__ = ["refresh_dynamic_segments"]
