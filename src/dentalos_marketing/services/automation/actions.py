"""Handlers for each automation action kind.

Handlers return a JSON-friendly output mapping on success and raise
:class:`ActionFailed` (or let a collaborator error propagate) on failure; the
engine owns retries, timeouts and result bookkeeping. Handlers that touch the
database open their own session so a slow action never holds the execution
row's transaction.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable
from uuid import UUID

import httpx
from loguru import logger

from dentalos_marketing.core.clock import Clock
from dentalos_marketing.core.settings import settings
from dentalos_marketing.db.session import SessionFactory, open_session
from dentalos_marketing.schemas.automation import (
    AccrueLoyaltyPointsAction,
    AddToSegmentAction,
    AutomationAction,
    AutomationActionType,
    CreateReferralAction,
    CreateTaskAction,
    RemoveFromSegmentAction,
    SendCampaignAction,
    SendMessageAction,
    SendNotificationAction,
    SendWebhookAction,
    UpdatePatientTagsAction,
    WaitAction,
)
from dentalos_marketing.services.automation.gateways import AutomationGateways
from dentalos_marketing.services.errors import (
    ActionFailed,
    ActionTimeout,
    LoyaltyLedgerError,
    SegmentDefinitionError,
    SegmentNotFound,
)
from dentalos_marketing.services.loyalty.ledger import LoyaltyLedger
from dentalos_marketing.services.segments.attributes import PatientAttributeSource
from dentalos_marketing.services.segments.service import SegmentService


def action_idempotency_key(rule_id: UUID, trigger_event_id: str, patient_id: UUID, action_id: str) -> str:
    """Stable across retries of the same execution so side effects are applied once."""

    raw = f"{rule_id}:{trigger_event_id}:{patient_id}:{action_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class ActionContext:
    execution_id: UUID
    rule_id: UUID
    tenant_id: UUID
    patient_id: UUID
    trigger_event_id: str
    trigger_type: str
    payload: dict[str, Any]
    session_factory: SessionFactory
    gateways: AutomationGateways
    attribute_source: PatientAttributeSource
    clock: Clock
    idempotency_key: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


ActionHandler = Callable[[Any, ActionContext], Awaitable[dict[str, Any]]]

_HANDLERS: dict[AutomationActionType, ActionHandler] = {}


def register_handler(action_type: AutomationActionType) -> Callable[[ActionHandler], ActionHandler]:
    def decorator(handler: ActionHandler) -> ActionHandler:
        _HANDLERS[action_type] = handler
        return handler

    return decorator


def get_handler(action_type: AutomationActionType) -> ActionHandler:
    try:
        return _HANDLERS[action_type]
    except KeyError as exc:  # pragma: no cover - registry covers every kind
        raise ActionFailed(f"No handler registered for {action_type.value}") from exc


async def run_action(action: AutomationAction, context: ActionContext) -> dict[str, Any]:
    handler = get_handler(action.action_type)
    return await handler(action, context)


@register_handler(AutomationActionType.SEND_CAMPAIGN)
async def _send_campaign(action: SendCampaignAction, context: ActionContext) -> dict[str, Any]:
    params = action.params
    delivery_id = await context.gateways.delivery.send(
        params.channel.value,
        str(context.patient_id),
        {
            "campaign_id": params.campaign_id,
            "template_variables": params.template_variables,
            "trigger_type": context.trigger_type,
            "trigger": context.payload,
        },
        idempotency_key=context.idempotency_key,
    )
    return {"delivery_id": delivery_id, "channel": params.channel.value}


@register_handler(AutomationActionType.SEND_MESSAGE)
async def _send_message(action: SendMessageAction, context: ActionContext) -> dict[str, Any]:
    params = action.params
    recipient = params.recipient_patient_id or context.patient_id
    delivery_id = await context.gateways.delivery.send(
        params.channel.value,
        str(recipient),
        {"template": params.template, "subject": params.subject, "trigger": context.payload},
        idempotency_key=context.idempotency_key,
    )
    return {"delivery_id": delivery_id, "channel": params.channel.value, "recipient": str(recipient)}


@register_handler(AutomationActionType.ACCRUE_LOYALTY_POINTS)
async def _accrue_loyalty_points(action: AccrueLoyaltyPointsAction, context: ActionContext) -> dict[str, Any]:
    params = action.params
    session = await open_session(context.session_factory)
    async with session as managed_session:
        ledger = LoyaltyLedger(managed_session, clock=context.clock)
        try:
            account = await ledger.get_or_open_account(context.tenant_id, context.patient_id)
            transaction = await ledger.accrue(
                account.id,
                params.points,
                params.source,
                expiry_months=params.expiry_months or settings.loyalty_default_expiry_months,
                description=params.description or f"Automation rule {context.rule_id}",
                idempotency_key=context.idempotency_key,
                metadata={"rule_id": str(context.rule_id), "execution_id": str(context.execution_id)},
            )
        except LoyaltyLedgerError as exc:
            raise ActionFailed(str(exc), action_id=action.action_id) from exc
        return {
            "account_id": str(account.id),
            "transaction_id": str(transaction.id),
            "points": transaction.amount,
            "balance_before": transaction.balance_before,
            "balance_after": transaction.balance_after,
        }


@register_handler(AutomationActionType.CREATE_REFERRAL)
async def _create_referral(action: CreateReferralAction, context: ActionContext) -> dict[str, Any]:
    params = action.params
    expires_at = context.clock.now() + timedelta(days=params.expiry_days)
    code = await context.gateways.referrals.create_referral(
        context.tenant_id,
        context.patient_id,
        referrer_reward_points=params.referrer_reward_points,
        referee_reward_points=params.referee_reward_points,
        expires_at=expires_at,
        idempotency_key=context.idempotency_key,
    )
    return {"referral_code": code, "expires_at": expires_at.isoformat()}


@register_handler(AutomationActionType.SEND_NOTIFICATION)
async def _send_notification(action: SendNotificationAction, context: ActionContext) -> dict[str, Any]:
    params = action.params
    notification_id = await context.gateways.notifier.notify(
        params.recipient,
        params.title,
        params.message,
        priority=params.priority,
        idempotency_key=context.idempotency_key,
    )
    return {"notification_id": notification_id}


async def _change_segment_membership(
    action: AddToSegmentAction | RemoveFromSegmentAction,
    context: ActionContext,
    *,
    add: bool,
) -> dict[str, Any]:
    session = await open_session(context.session_factory)
    async with session as managed_session:
        service = SegmentService(managed_session, attribute_source=context.attribute_source, clock=context.clock)
        try:
            if add:
                changed = await service.add_member(
                    action.params.segment_id, context.patient_id, tenant_id=context.tenant_id
                )
            else:
                changed = await service.remove_member(
                    action.params.segment_id, context.patient_id, tenant_id=context.tenant_id
                )
        except (SegmentDefinitionError, SegmentNotFound) as exc:
            raise ActionFailed(str(exc), action_id=action.action_id) from exc
    return {"segment_id": str(action.params.segment_id), "changed": changed}


@register_handler(AutomationActionType.ADD_TO_SEGMENT)
async def _add_to_segment(action: AddToSegmentAction, context: ActionContext) -> dict[str, Any]:
    return await _change_segment_membership(action, context, add=True)


@register_handler(AutomationActionType.REMOVE_FROM_SEGMENT)
async def _remove_from_segment(action: RemoveFromSegmentAction, context: ActionContext) -> dict[str, Any]:
    return await _change_segment_membership(action, context, add=False)


@register_handler(AutomationActionType.CREATE_TASK)
async def _create_task(action: CreateTaskAction, context: ActionContext) -> dict[str, Any]:
    params = action.params
    due_at = context.clock.now() + timedelta(days=params.due_in_days) if params.due_in_days is not None else None
    task_id = await context.gateways.tasks.create_task(
        context.tenant_id,
        context.patient_id,
        title=params.title,
        description=params.description,
        assignee=params.assignee,
        due_at=due_at,
        priority=params.priority,
        idempotency_key=context.idempotency_key,
    )
    return {"task_id": task_id}


@register_handler(AutomationActionType.UPDATE_PATIENT_TAGS)
async def _update_patient_tags(action: UpdatePatientTagsAction, context: ActionContext) -> dict[str, Any]:
    params = action.params
    tags = await context.gateways.tags.update_tags(
        context.tenant_id,
        context.patient_id,
        add=list(params.add_tags),
        remove=list(params.remove_tags),
        idempotency_key=context.idempotency_key,
    )
    return {"tags": tags}


@register_handler(AutomationActionType.SEND_WEBHOOK)
async def _send_webhook(action: SendWebhookAction, context: ActionContext) -> dict[str, Any]:
    params = action.params
    body = params.body
    if body is None and params.method != "GET":
        body = {
            "ruleId": str(context.rule_id),
            "executionId": str(context.execution_id),
            "patientId": str(context.patient_id),
            "triggerType": context.trigger_type,
            "trigger": context.payload,
        }
    try:
        response = await context.gateways.webhooks.request(
            params.method,
            params.url,
            headers=params.headers,
            body=body,
            idempotency_key=context.idempotency_key,
        )
    except httpx.TimeoutException as exc:
        raise ActionTimeout(f"Webhook timed out: {exc}", action_id=action.action_id) from exc
    except httpx.HTTPError as exc:
        raise ActionFailed(f"Webhook request failed: {exc}", action_id=action.action_id) from exc
    except PermissionError as exc:
        raise ActionFailed(str(exc), action_id=action.action_id) from exc

    output = {"status_code": response.status_code}
    if not response.ok:
        logger.warning(
            "Webhook action returned non-success status",
            url=params.url,
            status_code=response.status_code,
        )
        raise ActionFailed(
            f"Webhook responded with HTTP {response.status_code}", action_id=action.action_id, output=output
        )
    return output


@register_handler(AutomationActionType.WAIT)
async def _wait(action: WaitAction, context: ActionContext) -> dict[str, Any]:
    await context.clock.sleep(action.params.duration_seconds)
    return {"waited_seconds": action.params.duration_seconds}


__all__ = [
    "ActionContext",
    "ActionHandler",
    "action_idempotency_key",
    "get_handler",
    "register_handler",
    "run_action",
]
