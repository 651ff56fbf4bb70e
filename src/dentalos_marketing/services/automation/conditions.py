"""Condition evaluation for automation rules.

Conditions are an implicit AND over :class:`SegmentRule` predicates evaluated
against a snapshot merged from three sources: patient attributes (fetched
only when a condition references one), the trigger payload, and
``segment_ids`` for the segments a condition asks about.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from dentalos_marketing.schemas.rules import SegmentRule
from dentalos_marketing.services.errors import MalformedRule
from dentalos_marketing.services.rules import FIELD_DEFINITIONS, TriggerField, evaluate_rule, resolve_field
from dentalos_marketing.services.rules.fields import FieldCategory
from dentalos_marketing.services.segments.attributes import PatientAttributeSource
from dentalos_marketing.services.segments.service import SegmentService

_SEGMENT_FIELD = TriggerField.SEGMENT_IDS.value


@dataclass(slots=True)
class ConditionEvaluation:
    met: bool
    results: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


def _camel_to_snake(value: str) -> str:
    chars: list[str] = []
    for char in value:
        if char.isupper():
            chars.append("_")
            chars.append(char.lower())
        else:
            chars.append(char)
    return "".join(chars).lstrip("_")


def payload_attributes(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Map camelCase or snake_case payload keys onto known field keys."""

    attributes: dict[str, Any] = {}
    for key, value in payload.items():
        normalized = _camel_to_snake(str(key)).lower()
        if normalized in FIELD_DEFINITIONS and normalized != _SEGMENT_FIELD:
            attributes[normalized] = value
    return attributes


def referenced_segment_ids(conditions: Iterable[SegmentRule]) -> list[UUID]:
    segment_ids: list[UUID] = []
    for condition in conditions:
        if condition.field.strip().lower() != _SEGMENT_FIELD:
            continue
        values = condition.value if isinstance(condition.value, (list, tuple, set)) else [condition.value]
        for value in values:
            if value is None:
                continue
            try:
                segment_ids.append(UUID(str(value)))
            except ValueError as exc:
                raise MalformedRule(
                    f"segment_ids condition value {value!r} is not a segment id", field=_SEGMENT_FIELD
                ) from exc
    return list(dict.fromkeys(segment_ids))


class ConditionEvaluator:
    def __init__(self, session: AsyncSession, *, attribute_source: PatientAttributeSource) -> None:
        self._session = session
        self._attributes = attribute_source

    async def build_snapshot(
        self,
        conditions: list[SegmentRule],
        *,
        tenant_id: UUID,
        patient_id: UUID,
        payload: Mapping[str, Any],
    ) -> dict[str, Any]:
        definitions = [resolve_field(condition.field) for condition in conditions]
        needs_patient = any(
            definition.category not in (FieldCategory.TRIGGER, FieldCategory.MEMBERSHIP)
            for definition in definitions
        )

        snapshot: dict[str, Any] = {}
        if needs_patient:
            snapshot.update(await self._attributes.attributes_of(tenant_id, patient_id))
        snapshot.update(payload_attributes(payload))

        segment_ids = referenced_segment_ids(conditions)
        if segment_ids:
            segments = SegmentService(self._session, attribute_source=self._attributes)
            patient_snapshot = snapshot if needs_patient else None
            memberships: list[str] = []
            for segment_id in segment_ids:
                if await segments.is_member(
                    segment_id, patient_id, snapshot=patient_snapshot, tenant_id=tenant_id
                ):
                    memberships.append(str(segment_id))
            snapshot[_SEGMENT_FIELD] = memberships
        return snapshot

    async def evaluate(
        self,
        conditions: list[SegmentRule],
        *,
        tenant_id: UUID,
        patient_id: UUID,
        payload: Mapping[str, Any],
        now: datetime,
    ) -> ConditionEvaluation:
        """Evaluate every condition; any error makes the whole evaluation fail."""

        if not conditions:
            return ConditionEvaluation(met=True)

        try:
            snapshot = await self.build_snapshot(
                conditions, tenant_id=tenant_id, patient_id=patient_id, payload=payload
            )
        except Exception as exc:
            logger.warning(
                "Failed to build automation condition snapshot",
                patient_id=str(patient_id),
                error=str(exc),
            )
            return ConditionEvaluation(met=False, error=f"{type(exc).__name__}: {exc}")

        results: list[dict[str, Any]] = []
        met = True
        error: str | None = None
        for condition in conditions:
            entry: dict[str, Any] = {
                "field": condition.field,
                "operator": condition.operator.value,
                "value": condition.value,
                "actual": snapshot.get(condition.field.strip().lower()),
            }
            try:
                matched = evaluate_rule(condition, snapshot, now=now)
            except Exception as exc:
                entry["error"] = f"{type(exc).__name__}: {exc}"
                error = error or entry["error"]
                met = False
            else:
                entry["matched"] = matched
                met = met and matched
            results.append(entry)
        return ConditionEvaluation(met=met and error is None, results=results, error=error)


__all__ = ["ConditionEvaluation", "ConditionEvaluator", "payload_attributes", "referenced_segment_ids"]
