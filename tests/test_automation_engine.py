import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from dentalos_marketing.core.clock import FixedClock
from dentalos_marketing.core.settings import Settings
from dentalos_marketing.models.automation import AutomationExecutionStatus, AutomationRule, AutomationTriggerType
from dentalos_marketing.models.loyalty import LoyaltyTransactionType
from dentalos_marketing.models.segment import SegmentKind
from dentalos_marketing.observability.automation import get_automation_store
from dentalos_marketing.schemas.automation import TriggerEvent, dump_actions, parse_actions
from dentalos_marketing.services.automation import AutomationEngine, AutomationGateways, AutomationRuleService
from dentalos_marketing.services.automation.gateways import InMemoryDeliveryGateway, WebhookResponse
from dentalos_marketing.services.errors import AutomationRuleNotFound
from dentalos_marketing.services.loyalty import LoyaltyLedger
from dentalos_marketing.services.segments import InMemoryPatientAttributeSource, SegmentService
from dentalos_marketing.tasks.automation import process_trigger_event

TENANT = uuid4()
PATIENT = uuid4()
NOW = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)


class StubWebhookClient:
    def __init__(self, status_code: int = 200, *, statuses: list[int] | None = None, hang: bool = False) -> None:
        self.status_code = status_code
        self._statuses = list(statuses or [])
        self._hang = hang
        self.calls: list[dict] = []

    async def request(self, method, url, *, headers, body, idempotency_key) -> WebhookResponse:
        self.calls.append({"method": method, "url": url, "body": body, "idempotency_key": idempotency_key})
        if self._hang:
            await asyncio.sleep(5)
        status = self._statuses.pop(0) if self._statuses else self.status_code
        return WebhookResponse(status_code=status)


class DisablingClock(FixedClock):
    """Deactivates the rule the first time an action waits."""

    def __init__(self, session_factory, rule_id) -> None:
        super().__init__(NOW)
        self._session_factory = session_factory
        self._rule_id = rule_id
        self._pending = True

    async def sleep(self, seconds: float) -> None:
        await super().sleep(seconds)
        if self._pending:
            self._pending = False
            async with self._session_factory() as session:
                await AutomationRuleService(session).deactivate(self._rule_id)


def _message(action_id: str = "thanks", order: int = 0, **extra) -> dict:
    return {
        "id": action_id,
        "type": "send_message",
        "order": order,
        "params": {"channel": "sms", "template": "Thanks for your payment"},
        **extra,
    }


def _webhook(action_id: str = "crm", order: int = 0, **extra) -> dict:
    return {
        "id": action_id,
        "type": "send_webhook",
        "order": order,
        "params": {"url": "https://crm.example.com/hooks/paid"},
        **extra,
    }


def _event(event_id: str = "evt-1", *, patient_id=PATIENT, trigger_type: str = "invoice_paid", payload=None):
    return TriggerEvent(
        event_id=event_id,
        trigger_type=AutomationTriggerType(trigger_type),
        tenant_id=TENANT,
        patient_id=patient_id,
        occurred_at=NOW,
        payload=payload or {},
    )


def _engine(session_factory, *, clock=None, webhooks=None, delivery=None, patients=None, config=None):
    gateways = AutomationGateways(
        delivery=delivery or InMemoryDeliveryGateway(),
        webhooks=webhooks or StubWebhookClient(),
    )
    return AutomationEngine(
        session_factory,
        gateways=gateways,
        attribute_source=InMemoryPatientAttributeSource(patients or {}),
        clock=clock or FixedClock(NOW),
        config=config or Settings(),
    )


async def _create_rule(session_factory, **overrides):
    definition = {"name": "Invoice paid", "trigger_type": "invoice_paid", "actions": [_message()], **overrides}
    async with session_factory() as session:
        rule = await AutomationRuleService(session).create_rule(TENANT, definition)
        return rule.id


async def _load_rule(session_factory, rule_id):
    async with session_factory() as session:
        return await AutomationRuleService(session).get_rule(rule_id)


async def _load_execution(session_factory, execution_id):
    async with session_factory() as session:
        return await AutomationRuleService(session).get_execution(execution_id)


@pytest.mark.asyncio
async def test_trigger_runs_active_rules_and_orders_actions(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(
        session_factory,
        actions=[
            _message(order=1),
            {
                "id": "notify",
                "type": "send_notification",
                "order": 0,
                "params": {"recipient": "front-desk", "title": "Invoice paid"},
            },
        ],
    )
    paused_id = await _create_rule(session_factory, name="Paused")
    async with session_factory() as session:
        await AutomationRuleService(session).pause(paused_id)
    await _create_rule(session_factory, name="Other trigger", trigger_type="appointment_completed")

    engine = _engine(session_factory, delivery=delivery)
    result = await engine.handle_trigger(_event())

    assert result.matched_rule_ids == [rule_id]
    summary = result.for_rule(rule_id)
    assert summary.status == AutomationExecutionStatus.SUCCESS
    assert summary.conditions_met is True
    assert summary.actions_succeeded == 2

    execution = await _load_execution(session_factory, summary.execution_id)
    assert [item["action_id"] for item in execution.action_results] == ["notify", "thanks"]
    assert execution.duration_ms == 0
    assert len(delivery.sent_messages) == 1
    assert delivery.sent_messages[0]["recipient"] == str(PATIENT)

    rule = await _load_rule(session_factory, rule_id)
    assert (rule.total_executions, rule.successful_executions, rule.failed_executions) == (1, 1, 0)
    assert rule.last_executed_at is not None

    snapshot = get_automation_store().snapshot()
    assert snapshot.dispatch["triggers"] == 1
    assert snapshot.dispatch["trigger:invoice_paid"] == 1
    assert snapshot.executions == {"success": 1}


@pytest.mark.asyncio
async def test_duplicate_delivery_is_reported_not_rerun(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(session_factory)
    engine = _engine(session_factory, delivery=delivery)

    first = await engine.handle_trigger(_event("evt-dup"))
    second = await engine.handle_trigger(_event("evt-dup"))

    assert len(first.executions) == 1
    assert second.executions == []
    assert second.duplicate_rule_ids == [rule_id]
    assert len(delivery.sent_messages) == 1
    assert get_automation_store().snapshot().dispatch["duplicates"] == 1

    async with session_factory() as session:
        assert len(await AutomationRuleService(session).list_executions(rule_id)) == 1


@pytest.mark.asyncio
async def test_daily_cap_skips_extra_executions_until_next_day(session_factory) -> None:
    clock = FixedClock(NOW)
    rule_id = await _create_rule(session_factory, max_executions_per_patient_per_day=2)
    engine = _engine(session_factory, clock=clock)

    statuses = []
    for index in range(3):
        result = await engine.handle_trigger(_event(f"evt-{index}"))
        statuses.append(result.for_rule(rule_id).status)

    assert statuses == [
        AutomationExecutionStatus.SUCCESS,
        AutomationExecutionStatus.SUCCESS,
        AutomationExecutionStatus.SKIPPED,
    ]

    other_patient = await engine.handle_trigger(_event("evt-other", patient_id=uuid4()))
    assert other_patient.for_rule(rule_id).status == AutomationExecutionStatus.SUCCESS

    clock.advance(days=1)
    next_day = await engine.handle_trigger(_event("evt-next-day"))
    assert next_day.for_rule(rule_id).status == AutomationExecutionStatus.SUCCESS

    async with session_factory() as session:
        skipped = await AutomationRuleService(session).list_executions(
            rule_id, status=AutomationExecutionStatus.SKIPPED
        )
    assert len(skipped) == 1
    assert skipped[0].error == "Daily execution cap reached"

    rule = await _load_rule(session_factory, rule_id)
    assert rule.total_executions == 4


@pytest.mark.asyncio
async def test_unmet_conditions_finish_successfully_without_actions(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(
        session_factory,
        conditions=[{"field": "invoice_amount", "operator": "greater_than", "value": 100}],
    )
    engine = _engine(session_factory, delivery=delivery)

    small = await engine.handle_trigger(_event("evt-small", payload={"invoiceAmount": 80}))
    large = await engine.handle_trigger(_event("evt-large", payload={"invoiceAmount": 250}))

    small_summary = small.for_rule(rule_id)
    assert small_summary.status == AutomationExecutionStatus.SUCCESS
    assert small_summary.conditions_met is False
    assert small_summary.actions_executed == 0

    assert large.for_rule(rule_id).conditions_met is True
    assert len(delivery.sent_messages) == 1

    execution = await _load_execution(session_factory, small_summary.execution_id)
    assert execution.condition_results[0]["matched"] is False
    assert execution.condition_results[0]["actual"] == 80


@pytest.mark.asyncio
async def test_patient_attribute_conditions(session_factory) -> None:
    gold, bronze = uuid4(), uuid4()
    rule_id = await _create_rule(
        session_factory,
        conditions=[{"field": "loyalty_tier", "operator": "in", "value": ["gold", "platinum"]}],
    )
    engine = _engine(
        session_factory,
        patients={gold: {"loyalty_tier": "gold"}, bronze: {"loyalty_tier": "bronze"}},
    )

    gold_result = await engine.handle_trigger(_event("evt-gold", patient_id=gold))
    bronze_result = await engine.handle_trigger(_event("evt-bronze", patient_id=bronze))

    assert gold_result.for_rule(rule_id).conditions_met is True
    assert bronze_result.for_rule(rule_id).conditions_met is False


@pytest.mark.asyncio
async def test_segment_membership_condition(session_factory) -> None:
    member, outsider = uuid4(), uuid4()
    async with session_factory() as session:
        segment = await SegmentService(session, attribute_source=InMemoryPatientAttributeSource()).create_segment(
            tenant_id=TENANT, name="VIP", kind=SegmentKind.STATIC, member_ids=[member]
        )
        segment_id = segment.id

    rule_id = await _create_rule(
        session_factory,
        conditions=[{"field": "segment_ids", "operator": "contains", "value": str(segment_id)}],
    )
    engine = _engine(session_factory)

    assert (await engine.handle_trigger(_event("evt-m", patient_id=member))).for_rule(rule_id).conditions_met
    assert not (await engine.handle_trigger(_event("evt-o", patient_id=outsider))).for_rule(rule_id).conditions_met


@pytest.mark.asyncio
async def test_condition_error_fails_execution(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(
        session_factory,
        conditions=[{"field": "age", "operator": "greater_than", "value": 30}],
    )
    engine = _engine(session_factory, delivery=delivery, patients={PATIENT: {"age": "thirty"}})

    result = await engine.handle_trigger(_event())
    summary = result.for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.FAILED
    assert summary.conditions_met is None
    assert "TypeMismatch" in summary.error
    assert delivery.sent_messages == []

    rule = await _load_rule(session_factory, rule_id)
    assert rule.failed_executions == 1


@pytest.mark.asyncio
async def test_failing_action_retries_with_linear_backoff(session_factory) -> None:
    clock = FixedClock(NOW)
    webhooks = StubWebhookClient(statuses=[500, 502, 200])
    rule_id = await _create_rule(
        session_factory,
        actions=[_webhook(retry_attempts=2, retry_delay_seconds=10)],
    )
    engine = _engine(session_factory, clock=clock, webhooks=webhooks)

    result = await engine.handle_trigger(_event())
    summary = result.for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.SUCCESS
    assert clock.sleeps == [10, 20]
    assert len(webhooks.calls) == 3
    assert len({call["idempotency_key"] for call in webhooks.calls}) == 1

    execution = await _load_execution(session_factory, summary.execution_id)
    assert execution.action_results[0]["attempts"] == 3
    assert execution.action_results[0]["output"] == {"status_code": 200}
    assert execution.duration_ms == 30_000
    assert get_automation_store().snapshot().actions["retries"] == {"send_webhook": 2}


@pytest.mark.asyncio
async def test_exponential_backoff_is_capped(session_factory) -> None:
    clock = FixedClock(NOW)
    rule_id = await _create_rule(
        session_factory,
        actions=[_webhook(retry_attempts=3, retry_delay_seconds=10)],
    )
    engine = _engine(
        session_factory,
        clock=clock,
        webhooks=StubWebhookClient(503),
        config=Settings(automation_retry_backoff="exponential", automation_max_retry_delay_seconds=25),
    )

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert clock.sleeps == [10, 20, 25]
    assert summary.status == AutomationExecutionStatus.FAILED
    assert summary.error == "All actions failed"

    execution = await _load_execution(session_factory, summary.execution_id)
    assert execution.action_results[0]["error"] == "Webhook responded with HTTP 503"
    assert execution.action_results[0]["output"] == {"status_code": 503}


@pytest.mark.asyncio
async def test_hanging_action_times_out(session_factory) -> None:
    rule_id = await _create_rule(session_factory, actions=[_webhook()])
    engine = _engine(
        session_factory,
        webhooks=StubWebhookClient(hang=True),
        config=Settings(automation_action_timeout_seconds=0.05),
    )

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.FAILED
    execution = await _load_execution(session_factory, summary.execution_id)
    assert "timed out" in execution.action_results[0]["error"]
    assert get_automation_store().snapshot().actions["timeouts"] == {"send_webhook": 1}


@pytest.mark.asyncio
async def test_stop_on_failure_skips_remaining_actions(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(
        session_factory,
        actions=[_webhook(order=0, stop_on_failure=True), _message(order=1)],
    )
    engine = _engine(session_factory, delivery=delivery, webhooks=StubWebhookClient(500))

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.FAILED
    assert summary.actions_executed == 1
    assert delivery.sent_messages == []

    execution = await _load_execution(session_factory, summary.execution_id)
    assert [item["status"] for item in execution.action_results] == ["failed", "skipped"]


@pytest.mark.asyncio
async def test_mixed_outcomes_are_partial(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(session_factory, actions=[_webhook(order=0), _message(order=1)])
    engine = _engine(session_factory, delivery=delivery, webhooks=StubWebhookClient(500))

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.PARTIAL
    assert summary.error == "1 action(s) failed"
    assert (summary.actions_succeeded, summary.actions_failed) == (1, 1)
    assert len(delivery.sent_messages) == 1

    rule = await _load_rule(session_factory, rule_id)
    assert (rule.total_executions, rule.successful_executions, rule.failed_executions) == (1, 0, 0)


@pytest.mark.asyncio
async def test_every_action_failing_without_stop_fails_execution(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(session_factory, actions=[_webhook("first", order=0), _webhook("second", order=1)])
    webhooks = StubWebhookClient(500)
    engine = _engine(session_factory, delivery=delivery, webhooks=webhooks)

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.FAILED
    assert summary.error == "All actions failed"
    assert (summary.actions_executed, summary.actions_failed) == (2, 2)
    assert len(webhooks.calls) == 2

    execution = await _load_execution(session_factory, summary.execution_id)
    assert [item["status"] for item in execution.action_results] == ["failed", "failed"]
    rule = await _load_rule(session_factory, rule_id)
    assert (rule.total_executions, rule.successful_executions, rule.failed_executions) == (1, 0, 1)


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_event_run_once(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(session_factory)
    engine = _engine(session_factory, delivery=delivery)

    results = await asyncio.gather(
        engine.handle_trigger(_event("evt-race")),
        engine.handle_trigger(_event("evt-race")),
    )

    assert sorted(len(result.executions) for result in results) == [0, 1]
    assert sorted(len(result.duplicate_rule_ids) for result in results) == [0, 1]
    assert len(delivery.sent_messages) == 1
    assert get_automation_store().snapshot().dispatch["duplicates"] == 1

    async with session_factory() as session:
        assert len(await AutomationRuleService(session).list_executions(rule_id)) == 1


@pytest.mark.asyncio
async def test_concurrent_triggers_respect_daily_cap(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(session_factory, max_executions_per_patient_per_day=1)
    engine = _engine(session_factory, delivery=delivery)

    results = await asyncio.gather(
        engine.handle_trigger(_event("evt-a")),
        engine.handle_trigger(_event("evt-b")),
    )

    statuses = sorted(result.for_rule(rule_id).status.value for result in results)
    assert statuses == [AutomationExecutionStatus.SKIPPED.value, AutomationExecutionStatus.SUCCESS.value]
    assert len(delivery.sent_messages) == 1

    rule = await _load_rule(session_factory, rule_id)
    assert (rule.total_executions, rule.successful_executions) == (1, 1)


@pytest.mark.asyncio
async def test_execution_delay_runs_before_actions(session_factory) -> None:
    clock = FixedClock(NOW)
    rule_id = await _create_rule(session_factory, execution_delay_seconds=900)
    engine = _engine(session_factory, clock=clock)

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.SUCCESS
    assert clock.sleeps == [900]


@pytest.mark.asyncio
async def test_rule_disabled_during_wait_is_cancelled_when_configured(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(
        session_factory,
        actions=[{"id": "pause", "type": "wait", "order": 0, "params": {"duration_seconds": 3600}}, _message(order=1)],
    )
    engine = _engine(
        session_factory,
        delivery=delivery,
        clock=DisablingClock(session_factory, rule_id),
        config=Settings(automation_abort_inflight_on_disable=True),
    )

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.CANCELLED
    assert delivery.sent_messages == []
    execution = await _load_execution(session_factory, summary.execution_id)
    assert [item["status"] for item in execution.action_results] == ["success", "skipped"]


@pytest.mark.asyncio
async def test_rule_disabled_during_wait_finishes_by_default(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    rule_id = await _create_rule(
        session_factory,
        actions=[{"id": "pause", "type": "wait", "order": 0, "params": {"duration_seconds": 3600}}, _message(order=1)],
    )
    clock = DisablingClock(session_factory, rule_id)
    engine = _engine(session_factory, delivery=delivery, clock=clock)

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.SUCCESS
    assert clock.sleeps == [3600]
    assert len(delivery.sent_messages) == 1
    assert (await _load_rule(session_factory, rule_id)).is_active is False


@pytest.mark.asyncio
async def test_retry_creates_linked_generation_and_keeps_side_effects_single(session_factory) -> None:
    webhooks = StubWebhookClient(500)
    rule_id = await _create_rule(
        session_factory,
        actions=[
            {"id": "points", "type": "accrue_loyalty_points", "order": 0, "params": {"points": 50}},
            _webhook(order=1),
        ],
    )
    engine = _engine(session_factory, webhooks=webhooks)

    first = (await engine.handle_trigger(_event())).for_rule(rule_id)
    assert first.status == AutomationExecutionStatus.PARTIAL

    webhooks.status_code = 200
    second = await engine.retry_execution(first.execution_id)
    assert second.status == AutomationExecutionStatus.SUCCESS
    assert second.retry_attempt == 1
    assert second.parent_execution_id == first.execution_id

    third = await engine.retry_execution(second.execution_id)
    assert third.retry_attempt == 2

    async with session_factory() as session:
        lineage = await AutomationRuleService(session).execution_lineage(third.execution_id)
        assert [item.id for item in lineage] == [first.execution_id, second.execution_id, third.execution_id]

        ledger = LoyaltyLedger(session, clock=FixedClock(NOW))
        account = await ledger.get_account_for_patient(TENANT, PATIENT)
        assert account.current_points == 50
        transactions = await ledger.list_transactions(account.id)
        assert [t.transaction_type for t in transactions] == [LoyaltyTransactionType.ACCRUAL]
        assert transactions[0].expiry_date is not None


@pytest.mark.asyncio
async def test_retry_requires_active_rule(session_factory) -> None:
    rule_id = await _create_rule(session_factory)
    engine = _engine(session_factory)
    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    async with session_factory() as session:
        await AutomationRuleService(session).deactivate(rule_id)

    with pytest.raises(AutomationRuleNotFound):
        await engine.retry_execution(summary.execution_id)
    with pytest.raises(AutomationRuleNotFound):
        await engine.retry_execution(uuid4())


@pytest.mark.asyncio
async def test_gateway_actions_reach_their_collaborators(session_factory) -> None:
    async with session_factory() as session:
        segments = SegmentService(session, attribute_source=InMemoryPatientAttributeSource())
        vip = await segments.create_segment(tenant_id=TENANT, name="VIP", kind=SegmentKind.STATIC)
        lapsed = await segments.create_segment(
            tenant_id=TENANT, name="Lapsed", kind=SegmentKind.STATIC, member_ids=[PATIENT]
        )
        vip_id, lapsed_id = vip.id, lapsed.id

    rule_id = await _create_rule(
        session_factory,
        actions=[
            {"id": "campaign", "type": "send_campaign", "order": 0, "params": {"campaignId": "spring-clean"}},
            {"id": "referral", "type": "create_referral", "order": 1, "params": {"referrerRewardPoints": 100}},
            {"id": "task", "type": "create_task", "order": 2, "params": {"title": "Call patient", "dueInDays": 2}},
            {"id": "tags", "type": "update_patient_tags", "order": 3, "params": {"addTags": ["recall"]}},
            {"id": "join", "type": "add_to_segment", "order": 4, "params": {"segmentId": str(vip_id)}},
            {"id": "leave", "type": "remove_from_segment", "order": 5, "params": {"segmentId": str(lapsed_id)}},
        ],
    )
    gateways = AutomationGateways(webhooks=StubWebhookClient())
    engine = AutomationEngine(
        session_factory,
        gateways=gateways,
        attribute_source=InMemoryPatientAttributeSource(),
        clock=FixedClock(NOW),
        config=Settings(),
    )

    summary = (await engine.handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.SUCCESS
    assert summary.actions_succeeded == 6
    assert gateways.delivery.sent_messages[0]["content"]["campaign_id"] == "spring-clean"
    assert gateways.delivery.sent_messages[0]["channel"] == "email"
    assert gateways.referrals.referrals[0]["referrer_reward_points"] == 100
    assert gateways.tasks.tasks[0]["due_at"] == datetime(2024, 5, 8, 10, 0, tzinfo=timezone.utc)
    assert gateways.tags.tags[PATIENT] == {"recall"}

    async with session_factory() as session:
        segments = SegmentService(session, attribute_source=InMemoryPatientAttributeSource())
        assert await segments.members_of(vip_id) == {PATIENT}
        assert await segments.members_of(lapsed_id) == set()


@pytest.mark.asyncio
async def test_process_trigger_event_task_summary(session_factory) -> None:
    rule_id = await _create_rule(session_factory)
    engine = _engine(session_factory)

    summary = await process_trigger_event(
        {
            "eventId": "evt-task",
            "triggerType": "invoice_paid",
            "tenantId": str(TENANT),
            "patientId": str(PATIENT),
            "occurredAt": NOW.isoformat(),
        },
        session_factory=session_factory,
        engine=engine,
    )

    assert summary["eventId"] == "evt-task"
    assert summary["matchedRules"] == 1
    assert summary["executions"][0]["ruleId"] == str(rule_id)
    assert summary["executions"][0]["status"] == "success"


@pytest.mark.asyncio
async def test_segment_actions_stay_inside_the_rule_tenant(session_factory) -> None:
    outsider = uuid4()
    async with session_factory() as session:
        segments = SegmentService(session, attribute_source=InMemoryPatientAttributeSource())
        foreign = await segments.create_segment(
            tenant_id=uuid4(), name="VIP", kind=SegmentKind.STATIC, member_ids=[outsider]
        )
        foreign_id = foreign.id
        # Stored directly, as a row written before segment references were checked would be.
        rule = AutomationRule(
            tenant_id=TENANT,
            name="Legacy",
            trigger_type=AutomationTriggerType.INVOICE_PAID,
            conditions=[],
            actions=dump_actions(
                parse_actions(
                    [{"id": "join", "type": "add_to_segment", "params": {"segmentId": str(foreign_id)}}]
                )
            ),
        )
        session.add(rule)
        await session.commit()
        rule_id = rule.id

    summary = (await _engine(session_factory).handle_trigger(_event())).for_rule(rule_id)

    assert summary.status == AutomationExecutionStatus.FAILED
    execution = await _load_execution(session_factory, summary.execution_id)
    assert "not found" in execution.action_results[0]["error"]

    async with session_factory() as session:
        segments = SegmentService(session, attribute_source=InMemoryPatientAttributeSource())
        assert await segments.members_of(foreign_id) == {outsider}


@pytest.mark.asyncio
async def test_upper_case_rule_and_event_tokens_run_end_to_end(session_factory) -> None:
    delivery = InMemoryDeliveryGateway()
    async with session_factory() as session:
        rule = await AutomationRuleService(session).create_rule(
            TENANT,
            {
                "name": "Big invoice thank you",
                "triggerType": "INVOICE_PAID",
                "conditions": [{"field": "INVOICE_AMOUNT", "operator": "GREATER_THAN", "value": 100}],
                "actions": [
                    {
                        "id": "thanks",
                        "type": "SEND_MESSAGE",
                        "params": {"channel": "SMS", "template": "Thank you for your visit"},
                    },
                    {
                        "id": "points",
                        "type": "ACCRUE_LOYALTY_POINTS",
                        "order": 1,
                        "params": {"points": 25, "source": "INVOICE"},
                    },
                ],
            },
        )
        rule_id = rule.id
        assert rule.trigger_type is AutomationTriggerType.INVOICE_PAID
        assert [action["type"] for action in rule.actions] == ["send_message", "accrue_loyalty_points"]

    summary = await process_trigger_event(
        {
            "eventId": "evt-upper",
            "triggerType": "INVOICE_PAID",
            "tenantId": str(TENANT),
            "patientId": str(PATIENT),
            "occurredAt": NOW.isoformat(),
            "payload": {"invoiceAmount": 180},
        },
        session_factory=session_factory,
        engine=_engine(session_factory, delivery=delivery),
    )

    assert summary["executions"][0]["ruleId"] == str(rule_id)
    assert summary["executions"][0]["status"] == "success"
    assert delivery.sent_messages[0]["channel"] == "sms"

    async with session_factory() as session:
        account = await LoyaltyLedger(session, clock=FixedClock(NOW)).get_account_for_patient(TENANT, PATIENT)
        assert account.current_points == 25


@pytest.mark.asyncio
async def test_rule_with_execution_history_cannot_be_deleted(session_factory) -> None:
    rule_id = await _create_rule(session_factory)
    await _engine(session_factory).handle_trigger(_event())

    async with session_factory() as session:
        # SQLite leaves foreign keys unenforced unless the connection opts in.
        await session.execute(text("PRAGMA foreign_keys=ON"))
        rule = await session.get(AutomationRule, rule_id)
        await session.delete(rule)
        with pytest.raises(IntegrityError):
            await session.flush()
        await session.rollback()

    async with session_factory() as session:
        assert len(await AutomationRuleService(session).list_executions(rule_id)) == 1
