import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from dentalos_marketing.core.clock import FixedClock
from dentalos_marketing.models.loyalty import (
    LedgerImmutableError,
    LoyaltyAccrualSource,
    LoyaltyPointLot,
    LoyaltyPointLotStatus,
    LoyaltyTier,
    LoyaltyTierConfig,
    LoyaltyTransactionType,
)
from dentalos_marketing.observability.loyalty import get_loyalty_store
from dentalos_marketing.services.errors import (
    AccountInactive,
    AccountSuspended,
    InsufficientBalance,
    LoyaltyAccountNotFound,
)
from dentalos_marketing.services.loyalty import LoyaltyLedger, TierPolicy

TENANT = uuid4()
START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_open_account_is_idempotent_per_patient(session_factory) -> None:
    patient_id = uuid4()
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=FixedClock(START))
        first = await ledger.open_account(TENANT, patient_id)
        second = await ledger.get_or_open_account(TENANT, patient_id)

        assert first.id == second.id
        assert first.tier == LoyaltyTier.BRONZE
        assert first.current_points == 0

        with pytest.raises(LoyaltyAccountNotFound):
            await ledger.get_account(uuid4())


@pytest.mark.asyncio
async def test_redemption_consumes_earliest_expiring_lot_first(session_factory) -> None:
    clock = FixedClock(START)
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        account = await ledger.open_account(TENANT, uuid4())

        long_lived = await ledger.accrue(account.id, 100, LoyaltyAccrualSource.INVOICE, expiry_months=12)
        clock.advance(days=31)
        short_lived = await ledger.accrue(account.id, 50, LoyaltyAccrualSource.PROMOTION, expiry_months=3)
        await ledger.adjust(account.id, 25, "Goodwill credit")

        redemption = await ledger.redeem(account.id, 120, description="Whitening voucher")

        assert redemption.amount == -120
        assert redemption.balance_before == 175
        assert redemption.balance_after == 55

        lots = {
            lot.id: lot
            for lot in (await session.execute(select(LoyaltyPointLot))).scalars().all()
        }
        assert lots[short_lived.lot_id].status == LoyaltyPointLotStatus.CONSUMED
        assert lots[long_lived.lot_id].remaining == 30
        non_expiring = [lot for lot in lots.values() if lot.expires_at is None]
        assert non_expiring[0].remaining == 25

        assert await ledger.check_invariants(account.id) == []


@pytest.mark.asyncio
async def test_accrual_sets_expiry_from_months(session_factory) -> None:
    clock = FixedClock(datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc))
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        account = await ledger.open_account(TENANT, uuid4())

        transaction = await ledger.accrue(account.id, 10, LoyaltyAccrualSource.SIGNUP, expiry_months=1)
        assert _aware(transaction.expiry_date) == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)

        forever = await ledger.accrue(account.id, 10, LoyaltyAccrualSource.SIGNUP)
        assert forever.expiry_date is None


@pytest.mark.asyncio
async def test_expire_emits_one_transaction_per_lapsed_lot(session_factory) -> None:
    clock = FixedClock(START)
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        account = await ledger.open_account(TENANT, uuid4())

        await ledger.accrue(account.id, 100, LoyaltyAccrualSource.INVOICE, expiry_months=1)
        await ledger.accrue(account.id, 40, LoyaltyAccrualSource.INVOICE, expiry_months=2)
        await ledger.accrue(account.id, 10, LoyaltyAccrualSource.INVOICE, expiry_months=12)
        await ledger.redeem(account.id, 30)

        clock.set(datetime(2024, 4, 1, tzinfo=timezone.utc))
        expiries = await ledger.expire(account.id)

        assert [transaction.amount for transaction in expiries] == [-70, -40]
        assert all(t.transaction_type == LoyaltyTransactionType.EXPIRY for t in expiries)
        assert _aware(expiries[0].transaction_date) == datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc)

        refreshed = await ledger.get_account(account.id)
        assert refreshed.current_points == 10
        assert refreshed.total_expired == 110

        assert await ledger.expire(account.id) == []
        assert await ledger.check_invariants(account.id) == []


@pytest.mark.asyncio
async def test_redeem_counts_lapsed_points_as_unavailable(session_factory) -> None:
    clock = FixedClock(START)
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        account = await ledger.open_account(TENANT, uuid4())
        await ledger.accrue(account.id, 100, LoyaltyAccrualSource.INVOICE, expiry_months=1)

        clock.advance(days=45)
        with pytest.raises(InsufficientBalance) as excinfo:
            await ledger.redeem(account.id, 50)

        assert excinfo.value.available == 0
        assert excinfo.value.requested == 50
        assert get_loyalty_store().snapshot().rejections == {"insufficient_balance": 1}


@pytest.mark.asyncio
async def test_accounts_with_lapsed_points_and_upcoming_expirations(session_factory) -> None:
    clock = FixedClock(START)
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        lapsing = await ledger.open_account(TENANT, uuid4())
        steady = await ledger.open_account(TENANT, uuid4())
        await ledger.accrue(lapsing.id, 20, LoyaltyAccrualSource.INVOICE, expiry_months=1)
        await ledger.accrue(steady.id, 20, LoyaltyAccrualSource.INVOICE)

        clock.set(datetime(2024, 1, 20, tzinfo=timezone.utc))
        upcoming = await ledger.upcoming_expirations(lapsing.id, within_days=30)
        assert [(item.points, item.expires_at) for item in upcoming] == [
            (20, datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc))
        ]
        assert await ledger.upcoming_expirations(steady.id) == []

        assert await ledger.accounts_with_lapsed_points(datetime(2024, 3, 1, tzinfo=timezone.utc)) == [lapsing.id]
        assert await ledger.accounts_with_lapsed_points(datetime(2024, 1, 15, tzinfo=timezone.utc)) == []


@pytest.mark.asyncio
async def test_idempotency_key_replays_original_transaction(session_factory) -> None:
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=FixedClock(START))
        account = await ledger.open_account(TENANT, uuid4())

        first = await ledger.accrue(account.id, 75, LoyaltyAccrualSource.REFERRAL, idempotency_key="referral-1")
        second = await ledger.accrue(account.id, 75, LoyaltyAccrualSource.REFERRAL, idempotency_key="referral-1")

        assert first.id == second.id
        assert (await ledger.get_account(account.id)).current_points == 75
        assert len(await ledger.list_transactions(account.id)) == 1


@pytest.mark.asyncio
async def test_suspended_accounts_accrue_but_cannot_redeem(session_factory) -> None:
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=FixedClock(START))
        account = await ledger.open_account(TENANT, uuid4())
        await ledger.accrue(account.id, 50, LoyaltyAccrualSource.INVOICE)

        await ledger.suspend(account.id, "Fraud review")
        with pytest.raises(AccountSuspended):
            await ledger.redeem(account.id, 10)

        await ledger.adjust(account.id, -80, "Reverse fraudulent accrual")
        assert (await ledger.get_account(account.id)).current_points == -30
        assert await ledger.check_invariants(account.id) == []

        await ledger.accrue(account.id, 100, LoyaltyAccrualSource.INVOICE)
        reinstated = await ledger.reinstate(account.id)
        assert reinstated.is_suspended is False
        assert reinstated.current_points == 70
        assert await ledger.check_invariants(account.id) == []

        redemption = await ledger.redeem(account.id, 70)
        assert redemption.balance_after == 0


@pytest.mark.asyncio
async def test_adjustment_validation(session_factory) -> None:
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=FixedClock(START))
        account = await ledger.open_account(TENANT, uuid4())
        await ledger.accrue(account.id, 10, LoyaltyAccrualSource.INVOICE)

        with pytest.raises(ValueError):
            await ledger.adjust(account.id, 0, "nothing")
        with pytest.raises(ValueError):
            await ledger.adjust(account.id, 5, "   ")
        with pytest.raises(InsufficientBalance):
            await ledger.adjust(account.id, -11, "Overdraw")

        adjustment = await ledger.adjust(account.id, -4, "Data entry error")
        assert adjustment.reason == "Data entry error"
        assert adjustment.balance_after == 6


@pytest.mark.asyncio
async def test_closed_accounts_reject_mutations_but_still_expire(session_factory) -> None:
    clock = FixedClock(START)
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        account = await ledger.open_account(TENANT, uuid4())
        await ledger.accrue(account.id, 30, LoyaltyAccrualSource.INVOICE, expiry_months=1)

        closed = await ledger.close_account(account.id, "Patient request")
        assert closed.is_active is False

        with pytest.raises(AccountInactive):
            await ledger.accrue(account.id, 10, LoyaltyAccrualSource.INVOICE)
        with pytest.raises(AccountInactive):
            await ledger.redeem(account.id, 10)

        clock.advance(days=60)
        expiries = await ledger.expire(account.id)
        assert [transaction.amount for transaction in expiries] == [-30]


@pytest.mark.asyncio
async def test_tier_promotion_uses_lifetime_points(session_factory) -> None:
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=FixedClock(START), tier_policy=TierPolicy(basis="lifetime"))
        account = await ledger.open_account(TENANT, uuid4())

        await ledger.accrue(account.id, 1_200, LoyaltyAccrualSource.PROCEDURE)
        assert (await ledger.get_account(account.id)).tier == LoyaltyTier.SILVER

        await ledger.redeem(account.id, 1_000)
        assert (await ledger.get_account(account.id)).tier == LoyaltyTier.SILVER

    assert get_loyalty_store().snapshot().tier_changes == {"bronze->silver": 1}


@pytest.mark.asyncio
async def test_tier_follows_current_points_when_configured(session_factory) -> None:
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=FixedClock(START), tier_policy=TierPolicy(basis="current"))
        account = await ledger.open_account(TENANT, uuid4())

        await ledger.accrue(account.id, 1_200, LoyaltyAccrualSource.PROCEDURE)
        await ledger.redeem(account.id, 1_000)

        assert (await ledger.get_account(account.id)).tier == LoyaltyTier.BRONZE


@pytest.mark.asyncio
async def test_tenant_tier_config_multiplier_rounds_down(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                LoyaltyTierConfig(tenant_id=TENANT, tier=LoyaltyTier.BRONZE, point_threshold=0),
                LoyaltyTierConfig(
                    tenant_id=TENANT,
                    tier=LoyaltyTier.SILVER,
                    point_threshold=100,
                    accrual_multiplier=Decimal("1.5"),
                ),
            ]
        )
        await session.commit()

        ledger = LoyaltyLedger(session, clock=FixedClock(START))
        account = await ledger.open_account(TENANT, uuid4())

        first = await ledger.accrue(account.id, 100, LoyaltyAccrualSource.INVOICE)
        assert first.amount == 100

        second = await ledger.accrue(account.id, 15, LoyaltyAccrualSource.INVOICE)
        assert second.amount == 22
        assert second.metadata_json["base_amount"] == 15


@pytest.mark.asyncio
async def test_recorded_transactions_cannot_be_rewritten(session_factory) -> None:
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=FixedClock(START))
        account = await ledger.open_account(TENANT, uuid4())
        transaction = await ledger.accrue(account.id, 10, LoyaltyAccrualSource.INVOICE)

        transaction.amount = 1_000
        with pytest.raises(LedgerImmutableError):
            await session.flush()


@pytest.mark.asyncio
async def test_rejected_mutations_leave_loaded_account_usable(session_factory) -> None:
    clock = FixedClock(START)
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        account = await ledger.open_account(TENANT, uuid4())
        await ledger.accrue(account.id, 40, LoyaltyAccrualSource.INVOICE, expiry_months=1)

        clock.advance(days=45)
        with pytest.raises(InsufficientBalance):
            await ledger.redeem(account.id, 10)
        # No expiry was written by the rejected redemption.
        assert account.current_points == 40
        assert len(await ledger.list_transactions(account.id)) == 1

        await ledger.suspend(account.id, "Chargeback")
        with pytest.raises(AccountSuspended):
            await ledger.redeem(account.id, 5)
        assert account.is_suspended is True

        await ledger.close_account(account.id, "Patient request")
        with pytest.raises(AccountInactive):
            await ledger.adjust(account.id, 5, "Goodwill")
        assert account.is_active is False

        expiries = await ledger.expire(account.id)
        assert [transaction.amount for transaction in expiries] == [-40]
        assert await ledger.check_invariants(account.id) == []


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_overdraw(session_factory) -> None:
    clock = FixedClock(START)
    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        account = await ledger.open_account(TENANT, uuid4())
        await ledger.accrue(account.id, 100, LoyaltyAccrualSource.INVOICE)
        account_id = account.id

    async def redeem(amount: int):
        async with session_factory() as session:
            return await LoyaltyLedger(session, clock=clock).redeem(account_id, amount)

    results = await asyncio.gather(redeem(70), redeem(60), return_exceptions=True)

    failures = [result for result in results if isinstance(result, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientBalance)
    assert get_loyalty_store().snapshot().rejections == {"insufficient_balance": 1}

    async with session_factory() as session:
        ledger = LoyaltyLedger(session, clock=clock)
        refreshed = await ledger.get_account(account_id)
        assert refreshed.current_points in (30, 40)
        assert len(await ledger.list_transactions(account_id)) == 2
        assert await ledger.check_invariants(account_id) == []
