"""Outbound collaborator protocols used by automation actions.

Message delivery, staff notifications, tasks, tags and referrals belong to
other services; the engine only depends on these protocols. Every call
carries an idempotency key derived from the execution and action so
providers can drop repeated attempts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol
from urllib.parse import urlparse
from uuid import UUID, uuid4

import httpx
from fastapi.encoders import jsonable_encoder
from loguru import logger

from dentalos_marketing.core.settings import settings


class DeliveryGateway(Protocol):
    async def send(
        self,
        channel: str,
        recipient: str,
        content: Mapping[str, Any],
        *,
        idempotency_key: str,
    ) -> str: ...


class StaffNotifier(Protocol):
    async def notify(
        self,
        recipient: str,
        title: str,
        message: str,
        *,
        priority: str,
        idempotency_key: str,
    ) -> str: ...


class TaskGateway(Protocol):
    async def create_task(
        self,
        tenant_id: UUID,
        patient_id: UUID,
        *,
        title: str,
        description: str | None,
        assignee: str | None,
        due_at: datetime | None,
        priority: str,
        idempotency_key: str,
    ) -> str: ...


class PatientTagGateway(Protocol):
    async def update_tags(
        self,
        tenant_id: UUID,
        patient_id: UUID,
        *,
        add: list[str],
        remove: list[str],
        idempotency_key: str,
    ) -> list[str]: ...


class ReferralGateway(Protocol):
    async def create_referral(
        self,
        tenant_id: UUID,
        referrer_patient_id: UUID,
        *,
        referrer_reward_points: int,
        referee_reward_points: int,
        expires_at: datetime,
        idempotency_key: str,
    ) -> str: ...


@dataclass(slots=True)
class WebhookResponse:
    status_code: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class WebhookClient(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        body: Mapping[str, Any] | None,
        idempotency_key: str,
    ) -> WebhookResponse: ...


class HttpxWebhookClient:
    """Deliver webhook actions with httpx; the engine applies its own timeout on top."""

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        allowed_hosts: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout_seconds or settings.automation_webhook_timeout_seconds
        self._allowed_hosts = [host.lower() for host in (allowed_hosts or settings.automation_webhook_allowed_hosts)]
        self._transport = transport

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        body: Mapping[str, Any] | None,
        idempotency_key: str,
    ) -> WebhookResponse:
        host = (urlparse(url).hostname or "").lower()
        if self._allowed_hosts and host not in self._allowed_hosts:
            raise PermissionError(f"Webhook host '{host}' is not allow-listed")

        request_headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key}
        request_headers.update(headers)
        payload = jsonable_encoder(body) if body is not None and method != "GET" else None
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.request(method, url, json=payload, headers=request_headers)
        try:
            response_body: Any = response.json()
        except ValueError:
            response_body = response.text or None
        return WebhookResponse(status_code=response.status_code, body=response_body)


@dataclass
class InMemoryDeliveryGateway:
    """Stores deliveries for inspection; repeated idempotency keys return the original id."""

    sent_messages: list[dict[str, Any]] = field(default_factory=list)
    _by_key: dict[str, str] = field(default_factory=dict)

    async def send(
        self,
        channel: str,
        recipient: str,
        content: Mapping[str, Any],
        *,
        idempotency_key: str,
    ) -> str:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        delivery_id = uuid4().hex
        self._by_key[idempotency_key] = delivery_id
        self.sent_messages.append(
            {
                "delivery_id": delivery_id,
                "channel": channel,
                "recipient": recipient,
                "content": dict(content),
                "idempotency_key": idempotency_key,
            }
        )
        return delivery_id


@dataclass
class InMemoryStaffNotifier:
    notifications: list[dict[str, Any]] = field(default_factory=list)
    _by_key: dict[str, str] = field(default_factory=dict)

    async def notify(
        self,
        recipient: str,
        title: str,
        message: str,
        *,
        priority: str,
        idempotency_key: str,
    ) -> str:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        notification_id = uuid4().hex
        self._by_key[idempotency_key] = notification_id
        self.notifications.append(
            {"id": notification_id, "recipient": recipient, "title": title, "message": message, "priority": priority}
        )
        return notification_id


@dataclass
class InMemoryTaskGateway:
    tasks: list[dict[str, Any]] = field(default_factory=list)
    _by_key: dict[str, str] = field(default_factory=dict)

    async def create_task(
        self,
        tenant_id: UUID,
        patient_id: UUID,
        *,
        title: str,
        description: str | None,
        assignee: str | None,
        due_at: datetime | None,
        priority: str,
        idempotency_key: str,
    ) -> str:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        task_id = uuid4().hex
        self._by_key[idempotency_key] = task_id
        self.tasks.append(
            {
                "id": task_id,
                "tenant_id": tenant_id,
                "patient_id": patient_id,
                "title": title,
                "description": description,
                "assignee": assignee,
                "due_at": due_at,
                "priority": priority,
            }
        )
        return task_id


@dataclass
class InMemoryPatientTagGateway:
    tags: dict[UUID, set[str]] = field(default_factory=dict)

    async def update_tags(
        self,
        tenant_id: UUID,
        patient_id: UUID,
        *,
        add: list[str],
        remove: list[str],
        idempotency_key: str,
    ) -> list[str]:
        # Set semantics make repeated attempts harmless.
        current = self.tags.setdefault(patient_id, set())
        current.update(add)
        current.difference_update(remove)
        return sorted(current)


@dataclass
class InMemoryReferralGateway:
    referrals: list[dict[str, Any]] = field(default_factory=list)
    _by_key: dict[str, str] = field(default_factory=dict)

    async def create_referral(
        self,
        tenant_id: UUID,
        referrer_patient_id: UUID,
        *,
        referrer_reward_points: int,
        referee_reward_points: int,
        expires_at: datetime,
        idempotency_key: str,
    ) -> str:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        code = uuid4().hex[:10].upper()
        self._by_key[idempotency_key] = code
        self.referrals.append(
            {
                "code": code,
                "tenant_id": tenant_id,
                "referrer_patient_id": referrer_patient_id,
                "referrer_reward_points": referrer_reward_points,
                "referee_reward_points": referee_reward_points,
                "expires_at": expires_at,
            }
        )
        return code


@dataclass
class AutomationGateways:
    """Bundle of outbound collaborators handed to action handlers."""

    delivery: DeliveryGateway = field(default_factory=InMemoryDeliveryGateway)
    notifier: StaffNotifier = field(default_factory=InMemoryStaffNotifier)
    tasks: TaskGateway = field(default_factory=InMemoryTaskGateway)
    tags: PatientTagGateway = field(default_factory=InMemoryPatientTagGateway)
    referrals: ReferralGateway = field(default_factory=InMemoryReferralGateway)
    webhooks: WebhookClient = field(default_factory=HttpxWebhookClient)


_DEFAULT_GATEWAYS: AutomationGateways | None = None


def _get_configured_gateways() -> AutomationGateways:
    global _DEFAULT_GATEWAYS
    if _DEFAULT_GATEWAYS is None:
        logger.warning("Delivery providers not configured; automation gateways fall back to in-memory recorders")
        _DEFAULT_GATEWAYS = AutomationGateways()
    return _DEFAULT_GATEWAYS


def configure_gateways(gateways: AutomationGateways | None) -> None:
    """Install process-wide gateways (called by the worker bootstrap or tests)."""

    global _DEFAULT_GATEWAYS
    _DEFAULT_GATEWAYS = gateways


__all__ = [
    "AutomationGateways",
    "DeliveryGateway",
    "HttpxWebhookClient",
    "InMemoryDeliveryGateway",
    "InMemoryPatientTagGateway",
    "InMemoryReferralGateway",
    "InMemoryStaffNotifier",
    "InMemoryTaskGateway",
    "PatientTagGateway",
    "ReferralGateway",
    "StaffNotifier",
    "TaskGateway",
    "WebhookClient",
    "WebhookResponse",
    "configure_gateways",
]
