"""Patient attribute providers consumed by segment and condition evaluation."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol
from uuid import UUID

import httpx
from loguru import logger

from dentalos_marketing.core.settings import settings


class PatientAttributeSource(Protocol):
    async def attributes_of(self, tenant_id: UUID, patient_id: UUID) -> dict[str, Any]: ...

    async def eligible_patient_ids(self, tenant_id: UUID) -> list[UUID]: ...


class InMemoryPatientAttributeSource:
    """Dictionary backed source used by tests and local development."""

    def __init__(self, patients: Mapping[UUID, Mapping[str, Any]] | None = None, *, tenant_id: UUID | None = None) -> None:
        self._patients: dict[tuple[UUID | None, UUID], dict[str, Any]] = {}
        self.lookups: list[UUID] = []
        for patient_id, attributes in (patients or {}).items():
            self.upsert(patient_id, attributes, tenant_id=tenant_id)

    def upsert(self, patient_id: UUID, attributes: Mapping[str, Any], *, tenant_id: UUID | None = None) -> None:
        self._patients[(tenant_id, patient_id)] = dict(attributes)

    async def attributes_of(self, tenant_id: UUID, patient_id: UUID) -> dict[str, Any]:
        self.lookups.append(patient_id)
        record = self._patients.get((tenant_id, patient_id)) or self._patients.get((None, patient_id))
        return dict(record or {})

    async def eligible_patient_ids(self, tenant_id: UUID) -> list[UUID]:
        return [patient_id for (scope, patient_id) in self._patients if scope in (None, tenant_id)]


class HttpPatientAttributeSource:
    """Fetch patient snapshots from the patient service over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return httpx.AsyncClient(
            base_url=self._base_url, headers=headers, timeout=self._timeout, transport=self._transport
        )

    async def attributes_of(self, tenant_id: UUID, patient_id: UUID) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.get(f"/tenants/{tenant_id}/patients/{patient_id}/marketing-attributes")
        if response.status_code == 404:
            return {}
        response.raise_for_status()
        body = response.json()
        attributes = body.get("attributes", body) if isinstance(body, Mapping) else {}
        return dict(attributes)

    async def eligible_patient_ids(self, tenant_id: UUID) -> list[UUID]:
        async with self._client() as client:
            response = await client.get(f"/tenants/{tenant_id}/patients/marketing-eligible")
        response.raise_for_status()
        body = response.json()
        raw_ids: Iterable[Any] = body.get("patientIds", []) if isinstance(body, Mapping) else body
        patient_ids: list[UUID] = []
        for raw in raw_ids:
            try:
                patient_ids.append(UUID(str(raw)))
            except ValueError:
                logger.warning("Skipping malformed patient id from attribute service", value=str(raw))
        return patient_ids


_DEFAULT_SOURCE: PatientAttributeSource | None = None


def _get_configured_source() -> PatientAttributeSource:
    global _DEFAULT_SOURCE
    if _DEFAULT_SOURCE is not None:
        return _DEFAULT_SOURCE
    if settings.patient_attributes_url:
        _DEFAULT_SOURCE = HttpPatientAttributeSource(
            settings.patient_attributes_url,
            api_key=settings.patient_attributes_api_key,
            timeout_seconds=settings.patient_attributes_timeout_seconds,
        )
    else:
        logger.warning("PATIENT_ATTRIBUTES_URL not configured; using empty in-memory attribute source")
        _DEFAULT_SOURCE = InMemoryPatientAttributeSource()
    return _DEFAULT_SOURCE


__all__ = [
    "HttpPatientAttributeSource",
    "InMemoryPatientAttributeSource",
    "PatientAttributeSource",
]
