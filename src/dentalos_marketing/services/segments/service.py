"""Segment definitions, membership resolution and cache refresh."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dentalos_marketing.core.clock import Clock, SystemClock, ensure_aware
from dentalos_marketing.core.settings import settings
from dentalos_marketing.models.segment import Segment, SegmentKind, SegmentMember
from dentalos_marketing.schemas.rules import RuleGroup, dump_rule_groups, parse_rule_groups
from dentalos_marketing.services.errors import SegmentDefinitionError, SegmentNotFound
from dentalos_marketing.services.segments.attributes import PatientAttributeSource, _get_configured_source
from dentalos_marketing.services.segments.evaluator import SegmentEvaluator


@dataclass(slots=True)
class SegmentRefreshResult:
    segment_id: UUID
    member_count: int
    refreshed_at: datetime


class SegmentService:
    """Coordinate segment persistence with rule evaluation."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        attribute_source: PatientAttributeSource | None = None,
        evaluator: SegmentEvaluator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._attributes = attribute_source or _get_configured_source()
        self._clock = clock or SystemClock()
        self._evaluator = evaluator or SegmentEvaluator()

    async def create_segment(
        self,
        *,
        tenant_id: UUID,
        name: str,
        kind: SegmentKind,
        rule_groups: Sequence[RuleGroup | Mapping[str, Any]] | None = None,
        member_ids: Iterable[UUID] | None = None,
        description: str | None = None,
        refresh_interval_seconds: int | None = None,
    ) -> Segment:
        kind = SegmentKind(kind)
        if kind is SegmentKind.STATIC and rule_groups:
            raise SegmentDefinitionError("Static segments cannot carry rule groups")
        if kind is SegmentKind.DYNAMIC and member_ids:
            raise SegmentDefinitionError("Dynamic segments derive members from rules")

        groups = self._evaluator.validate_groups(rule_groups or []) if kind is SegmentKind.DYNAMIC else []
        segment = Segment(
            tenant_id=tenant_id,
            name=name,
            description=description,
            kind=kind,
            rule_groups=dump_rule_groups(groups),
            cached_count=0,
            refresh_interval_seconds=(
                refresh_interval_seconds
                if refresh_interval_seconds is not None or kind is SegmentKind.STATIC
                else settings.segment_default_refresh_interval_seconds
            ),
        )
        self._session.add(segment)
        await self._session.flush()

        unique_members = list(dict.fromkeys(member_ids or []))
        for patient_id in unique_members:
            self._session.add(SegmentMember(segment_id=segment.id, patient_id=patient_id))
        if unique_members:
            segment.cached_count = len(unique_members)

        await self._session.commit()
        logger.info(
            "Created marketing segment",
            segment_id=str(segment.id),
            tenant_id=str(tenant_id),
            kind=kind.value,
        )
        return segment

    async def get_segment(self, segment_id: UUID, *, tenant_id: UUID | None = None) -> Segment:
        """Load a segment; with ``tenant_id`` another tenant's segment reads as missing."""

        segment = await self._session.get(Segment, segment_id)
        if segment is None or (tenant_id is not None and segment.tenant_id != tenant_id):
            raise SegmentNotFound(f"Segment {segment_id} not found")
        return segment

    async def list_segments(self, tenant_id: UUID, *, include_archived: bool = False) -> list[Segment]:
        stmt = select(Segment).where(Segment.tenant_id == tenant_id).order_by(Segment.created_at.asc())
        if not include_archived:
            stmt = stmt.where(Segment.is_archived.is_(False))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_rule_groups(
        self,
        segment_id: UUID,
        rule_groups: Sequence[RuleGroup | Mapping[str, Any]],
    ) -> Segment:
        segment = await self.get_segment(segment_id)
        self._ensure_mutable(segment)
        if segment.kind is not SegmentKind.DYNAMIC:
            raise SegmentDefinitionError("Only dynamic segments have rule groups")
        groups = self._evaluator.validate_groups(rule_groups)
        segment.rule_groups = dump_rule_groups(groups)
        await self._session.commit()
        logger.info("Updated segment rules", segment_id=str(segment.id), group_count=len(groups))
        return segment

    async def members_of(self, segment_id: UUID) -> set[UUID]:
        """Dynamic: re-evaluate the eligible population. Static: the stored set."""

        segment = await self.get_segment(segment_id)
        if segment.kind is SegmentKind.STATIC:
            return await self._static_members(segment.id)

        groups = parse_rule_groups(segment.rule_groups)
        members: set[UUID] = set()
        for patient_id in await self._attributes.eligible_patient_ids(segment.tenant_id):
            snapshot = await self._attributes.attributes_of(segment.tenant_id, patient_id)
            if self._evaluator.evaluate_groups(groups, snapshot):
                members.add(patient_id)
        return members

    async def is_member(
        self,
        segment_id: UUID,
        patient_id: UUID,
        *,
        snapshot: Mapping[str, Any] | None = None,
        tenant_id: UUID | None = None,
    ) -> bool:
        segment = await self.get_segment(segment_id, tenant_id=tenant_id)
        if segment.kind is SegmentKind.STATIC:
            return await self._has_static_member(segment.id, patient_id)

        if snapshot is None:
            snapshot = await self._attributes.attributes_of(segment.tenant_id, patient_id)
        return self._evaluator.evaluate_groups(parse_rule_groups(segment.rule_groups), snapshot)

    async def refresh(self, segment_id: UUID) -> SegmentRefreshResult:
        """Recompute the cached member count; only cache fields are written."""

        members = await self.members_of(segment_id)
        segment = await self.get_segment(segment_id)
        refreshed_at = self._clock.now()
        segment.cached_count = len(members)
        segment.last_refreshed_at = refreshed_at
        await self._session.commit()
        logger.info(
            "Refreshed marketing segment",
            segment_id=str(segment.id),
            member_count=len(members),
        )
        return SegmentRefreshResult(segment_id=segment.id, member_count=len(members), refreshed_at=refreshed_at)

    def is_refresh_due(self, segment: Segment, *, now: datetime | None = None) -> bool:
        if segment.kind is not SegmentKind.DYNAMIC or segment.is_archived:
            return False
        if segment.last_refreshed_at is None:
            return True
        if not segment.refresh_interval_seconds:
            return False
        reference = now or self._clock.now()
        due_at = ensure_aware(segment.last_refreshed_at) + timedelta(seconds=segment.refresh_interval_seconds)
        return reference >= due_at

    async def list_segments_due_for_refresh(self, *, now: datetime | None = None, limit: int = 100) -> list[Segment]:
        stmt = (
            select(Segment)
            .where(
                Segment.kind == SegmentKind.DYNAMIC,
                Segment.is_archived.is_(False),
                or_(Segment.last_refreshed_at.is_(None), Segment.refresh_interval_seconds.is_not(None)),
            )
            .order_by(Segment.last_refreshed_at.asc())
        )
        result = await self._session.execute(stmt)
        reference = now or self._clock.now()
        due = [segment for segment in result.scalars().all() if self.is_refresh_due(segment, now=reference)]
        return due[:limit]

    async def add_member(self, segment_id: UUID, patient_id: UUID, *, tenant_id: UUID | None = None) -> bool:
        """Add a patient to a static segment; returns False when already present."""

        segment = await self._get_static_segment(segment_id, tenant_id=tenant_id)
        if await self._has_static_member(segment.id, patient_id):
            return False

        self._session.add(SegmentMember(segment_id=segment.id, patient_id=patient_id))
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            logger.warning(
                "Detected race when adding segment member",
                segment_id=str(segment_id),
                patient_id=str(patient_id),
            )
            return False

        segment.cached_count = (segment.cached_count or 0) + 1
        await self._session.commit()
        logger.info("Added segment member", segment_id=str(segment.id), patient_id=str(patient_id))
        return True

    async def remove_member(self, segment_id: UUID, patient_id: UUID, *, tenant_id: UUID | None = None) -> bool:
        segment = await self._get_static_segment(segment_id, tenant_id=tenant_id)
        result = await self._session.execute(
            delete(SegmentMember).where(
                and_(SegmentMember.segment_id == segment.id, SegmentMember.patient_id == patient_id)
            )
        )
        removed = bool(result.rowcount)
        if removed:
            segment.cached_count = max((segment.cached_count or 0) - 1, 0)
            logger.info("Removed segment member", segment_id=str(segment.id), patient_id=str(patient_id))
        await self._session.commit()
        return removed

    async def archive(self, segment_id: UUID) -> Segment:
        segment = await self.get_segment(segment_id)
        if segment.is_archived:
            return segment
        segment.is_archived = True
        segment.archived_at = self._clock.now()
        await self._session.commit()
        logger.info("Archived marketing segment", segment_id=str(segment.id))
        return segment

    async def resolve_audience(
        self,
        include_segment_ids: Iterable[UUID],
        exclude_segment_ids: Iterable[UUID] = (),
    ) -> set[UUID]:
        """Union of included segments minus the union of excluded ones."""

        audience: set[UUID] = set()
        for segment_id in include_segment_ids:
            audience |= await self.members_of(segment_id)
        for segment_id in exclude_segment_ids:
            audience -= await self.members_of(segment_id)
        return audience

    async def _get_static_segment(self, segment_id: UUID, *, tenant_id: UUID | None = None) -> Segment:
        segment = await self.get_segment(segment_id, tenant_id=tenant_id)
        self._ensure_mutable(segment)
        if segment.kind is not SegmentKind.STATIC:
            raise SegmentDefinitionError("Membership can only be edited on static segments")
        return segment

    @staticmethod
    def _ensure_mutable(segment: Segment) -> None:
        if segment.is_archived:
            raise SegmentDefinitionError(f"Segment {segment.id} is archived")

    async def _static_members(self, segment_id: UUID) -> set[UUID]:
        result = await self._session.execute(
            select(SegmentMember.patient_id).where(SegmentMember.segment_id == segment_id)
        )
        return set(result.scalars().all())

    async def _has_static_member(self, segment_id: UUID, patient_id: UUID) -> bool:
        result = await self._session.execute(
            select(SegmentMember.id).where(
                SegmentMember.segment_id == segment_id,
                SegmentMember.patient_id == patient_id,
            )
        )
        return result.scalar_one_or_none() is not None


__all__ = ["SegmentRefreshResult", "SegmentService"]
