from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Iterable, Literal, Mapping, Union
from uuid import UUID, uuid4

from pydantic import AliasChoices, Field, TypeAdapter, ValidationError, field_validator

from dentalos_marketing.core.enums import TokenEnum
from dentalos_marketing.models.automation import AutomationTriggerType
from dentalos_marketing.models.loyalty import LoyaltyAccrualSource
from dentalos_marketing.schemas._base import CamelModel
from dentalos_marketing.schemas.rules import SegmentRule
from dentalos_marketing.services.errors import MalformedRule


class AutomationActionType(TokenEnum):
    SEND_CAMPAIGN = "send_campaign"
    SEND_MESSAGE = "send_message"
    ACCRUE_LOYALTY_POINTS = "accrue_loyalty_points"
    CREATE_REFERRAL = "create_referral"
    SEND_NOTIFICATION = "send_notification"
    ADD_TO_SEGMENT = "add_to_segment"
    REMOVE_FROM_SEGMENT = "remove_from_segment"
    CREATE_TASK = "create_task"
    UPDATE_PATIENT_TAGS = "update_patient_tags"
    SEND_WEBHOOK = "send_webhook"
    WAIT = "wait"


class CampaignChannel(TokenEnum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WHATSAPP = "whatsapp"


Priority = Literal["low", "medium", "high", "urgent"]


# Params


class SendCampaignParams(CamelModel):
    campaign_id: str = Field(..., min_length=1)
    channel: CampaignChannel = CampaignChannel.EMAIL
    template_variables: dict[str, Any] = Field(default_factory=dict)


class SendMessageParams(CamelModel):
    channel: CampaignChannel
    template: str = Field(..., min_length=1)
    subject: str | None = None
    recipient_patient_id: UUID | None = None


class AccrueLoyaltyPointsParams(CamelModel):
    points: int = Field(..., gt=0)
    source: LoyaltyAccrualSource = LoyaltyAccrualSource.AUTOMATION
    description: str | None = None
    expiry_months: int | None = Field(default=None, gt=0)


class CreateReferralParams(CamelModel):
    referrer_reward_points: int = Field(default=0, ge=0)
    referee_reward_points: int = Field(default=0, ge=0)
    expiry_days: int = Field(default=30, gt=0)


class SendNotificationParams(CamelModel):
    recipient: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    message: str = ""
    priority: Priority = "medium"

    @field_validator("priority", mode="before")
    @classmethod
    def _lower_priority(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class SegmentMembershipParams(CamelModel):
    segment_id: UUID


class CreateTaskParams(CamelModel):
    title: str = Field(..., min_length=1)
    description: str | None = None
    assignee: str | None = None
    due_in_days: int | None = Field(default=None, ge=0)
    priority: Priority = "medium"

    @field_validator("priority", mode="before")
    @classmethod
    def _lower_priority(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class UpdatePatientTagsParams(CamelModel):
    add_tags: list[str] = Field(default_factory=list)
    remove_tags: list[str] = Field(default_factory=list)


class SendWebhookParams(CamelModel):
    url: str = Field(..., min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None

    @field_validator("url")
    @classmethod
    def _require_http(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


class WaitParams(CamelModel):
    duration_seconds: float = Field(..., ge=0)


# Actions


class _ActionBase(CamelModel):
    action_id: str = Field(
        default_factory=lambda: uuid4().hex,
        validation_alias=AliasChoices("id", "action_id", "actionId"),
    )
    order: int = 0
    stop_on_failure: bool = False
    retry_attempts: int = Field(default=0, ge=0, le=10)
    retry_delay_seconds: float = Field(default=0, ge=0)

    @property
    def action_type(self) -> AutomationActionType:
        return AutomationActionType(self.type)  # type: ignore[attr-defined]


class SendCampaignAction(_ActionBase):
    type: Literal["send_campaign"]
    params: SendCampaignParams


class SendMessageAction(_ActionBase):
    type: Literal["send_message"]
    params: SendMessageParams


class AccrueLoyaltyPointsAction(_ActionBase):
    type: Literal["accrue_loyalty_points"]
    params: AccrueLoyaltyPointsParams


class CreateReferralAction(_ActionBase):
    type: Literal["create_referral"]
    params: CreateReferralParams = Field(default_factory=CreateReferralParams)


class SendNotificationAction(_ActionBase):
    type: Literal["send_notification"]
    params: SendNotificationParams


class AddToSegmentAction(_ActionBase):
    type: Literal["add_to_segment"]
    params: SegmentMembershipParams


class RemoveFromSegmentAction(_ActionBase):
    type: Literal["remove_from_segment"]
    params: SegmentMembershipParams


class CreateTaskAction(_ActionBase):
    type: Literal["create_task"]
    params: CreateTaskParams


class UpdatePatientTagsAction(_ActionBase):
    type: Literal["update_patient_tags"]
    params: UpdatePatientTagsParams


class SendWebhookAction(_ActionBase):
    type: Literal["send_webhook"]
    params: SendWebhookParams


class WaitAction(_ActionBase):
    type: Literal["wait"]
    params: WaitParams


AutomationAction = Annotated[
    Union[
        SendCampaignAction,
        SendMessageAction,
        AccrueLoyaltyPointsAction,
        CreateReferralAction,
        SendNotificationAction,
        AddToSegmentAction,
        RemoveFromSegmentAction,
        CreateTaskAction,
        UpdatePatientTagsAction,
        SendWebhookAction,
        WaitAction,
    ],
    Field(discriminator="type"),
]

_ACTION_LIST = TypeAdapter(list[AutomationAction])


def _lower_action_tags(raw: Any) -> Any:
    # Tagged unions match the tag exactly, so fold SEND_MESSAGE to send_message first.
    if not isinstance(raw, (list, tuple)):
        return raw
    return [
        {**item, "type": item["type"].strip().lower()}
        if isinstance(item, Mapping) and isinstance(item.get("type"), str)
        else item
        for item in raw
    ]


def parse_actions(raw: Iterable[Any] | None) -> list[AutomationAction]:
    """Validate persisted or submitted actions and return them in execution order."""

    if raw is None:
        return []
    items = _lower_action_tags(
        [item.model_dump(mode="json") if isinstance(item, _ActionBase) else item for item in raw]
    )
    try:
        actions = _ACTION_LIST.validate_python(items)
    except ValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error.get("loc", ()))
        raise MalformedRule(f"Invalid automation action at {location}: {error['msg']}") from exc

    seen: set[str] = set()
    for action in actions:
        if action.action_id in seen:
            raise MalformedRule(f"Duplicate action id '{action.action_id}'")
        seen.add(action.action_id)
    # sorted() is stable, so equal orders keep their declared position.
    return sorted(actions, key=lambda action: action.order)


def dump_actions(actions: Iterable[AutomationAction]) -> list[dict[str, Any]]:
    return [action.model_dump(mode="json") for action in actions]


# Triggers and rule definitions


class TriggerEvent(CamelModel):
    """Domain event delivered to the automation engine."""

    event_id: str = Field(..., min_length=1)
    trigger_type: AutomationTriggerType
    tenant_id: UUID
    patient_id: UUID
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)


class AutomationRuleDefinition(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    trigger_type: AutomationTriggerType
    conditions: list[SegmentRule] = Field(default_factory=list)
    actions: list[AutomationAction] = Field(..., min_length=1)
    is_active: bool = True
    max_executions_per_patient_per_day: int | None = Field(default=None, ge=1)
    execution_delay_seconds: int = Field(default=0, ge=0)

    @field_validator("actions", mode="before")
    @classmethod
    def _fold_action_tags(cls, value: Any) -> Any:
        return _lower_action_tags(value)


class AutomationRuleUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    conditions: list[SegmentRule] | None = None
    actions: list[AutomationAction] | None = None
    max_executions_per_patient_per_day: int | None = Field(default=None, ge=1)
    execution_delay_seconds: int | None = Field(default=None, ge=0)

    @field_validator("actions", mode="before")
    @classmethod
    def _fold_action_tags(cls, value: Any) -> Any:
        return _lower_action_tags(value)


__all__ = [
    "AccrueLoyaltyPointsAction",
    "AddToSegmentAction",
    "AutomationAction",
    "AutomationActionType",
    "AutomationRuleDefinition",
    "AutomationRuleUpdate",
    "CampaignChannel",
    "CreateReferralAction",
    "CreateTaskAction",
    "RemoveFromSegmentAction",
    "SendCampaignAction",
    "SendMessageAction",
    "SendNotificationAction",
    "SendWebhookAction",
    "TriggerEvent",
    "UpdatePatientTagsAction",
    "WaitAction",
    "dump_actions",
    "parse_actions",
]
