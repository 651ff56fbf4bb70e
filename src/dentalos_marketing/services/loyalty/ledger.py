"""Append-only loyalty ledger with FIFO point lots and tier recomputation.

Every mutation runs inside a per-account critical section: an in-process
``asyncio.Lock`` plus ``SELECT ... FOR UPDATE`` on the account row where the
database supports it, with the account's ``version`` column as the optimistic
guard between processes. Balances and the appended transaction are committed
together.

Credits open a :class:`LoyaltyPointLot`; redemptions, expiries and negative
adjustments consume lots oldest-expiry first (non-expiring lots last, ties by
creation order), so the unexpired remainder of every accrual is always known.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Any
from uuid import UUID, uuid4
from weakref import WeakValueDictionary

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dentalos_marketing.core.clock import Clock, SystemClock, add_months, ensure_aware
from dentalos_marketing.models.loyalty import (
    LoyaltyAccount,
    LoyaltyAccrualSource,
    LoyaltyPointLot,
    LoyaltyPointLotStatus,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from dentalos_marketing.observability.loyalty import get_loyalty_store
from dentalos_marketing.services.errors import (
    AccountInactive,
    AccountSuspended,
    InsufficientBalance,
    LoyaltyAccountNotFound,
    LoyaltyLedgerError,
)
from dentalos_marketing.services.loyalty.tiers import TierPolicy, load_tier_policy

_ACCOUNT_LOCKS: "WeakValueDictionary[UUID, asyncio.Lock]" = WeakValueDictionary()


def _account_lock(account_id: UUID) -> asyncio.Lock:
    lock = _ACCOUNT_LOCKS.get(account_id)
    if lock is None:
        lock = asyncio.Lock()
        _ACCOUNT_LOCKS[account_id] = lock
    return lock


@dataclass(slots=True)
class ExpiringPoints:
    lot_id: UUID
    points: int
    expires_at: datetime


class LoyaltyLedger:
    """Account lifecycle and balance mutations for patient loyalty points."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Clock | None = None,
        tier_policy: TierPolicy | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._tier_policy = tier_policy
        self._policies: dict[UUID, TierPolicy] = {}
        self._store = get_loyalty_store()

    # Account lifecycle

    async def open_account(self, tenant_id: UUID, patient_id: UUID) -> LoyaltyAccount:
        existing = await self.get_account_for_patient(tenant_id, patient_id)
        if existing is not None:
            return existing

        now = self._clock.now()
        policy = await self._policy_for(tenant_id)
        account = LoyaltyAccount(
            tenant_id=tenant_id,
            patient_id=patient_id,
            tier=policy.tier_for(0),
            tier_achieved_at=now,
        )
        self._session.add(account)
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            logger.warning(
                "Detected race when opening loyalty account",
                tenant_id=str(tenant_id),
                patient_id=str(patient_id),
            )
            existing = await self.get_account_for_patient(tenant_id, patient_id)
            if existing is None:  # pragma: no cover - defensive
                raise
            return existing

        await self._session.commit()
        logger.info(
            "Opened loyalty account",
            account_id=str(account.id),
            tenant_id=str(tenant_id),
            patient_id=str(patient_id),
        )
        return account

    async def get_or_open_account(self, tenant_id: UUID, patient_id: UUID) -> LoyaltyAccount:
        return await self.open_account(tenant_id, patient_id)

    async def get_account(self, account_id: UUID) -> LoyaltyAccount:
        account = await self._session.get(LoyaltyAccount, account_id, populate_existing=True)
        if account is None:
            raise LoyaltyAccountNotFound(f"Loyalty account {account_id} not found", account_id=account_id)
        return account

    async def get_account_for_patient(self, tenant_id: UUID, patient_id: UUID) -> LoyaltyAccount | None:
        result = await self._session.execute(
            select(LoyaltyAccount)
            .where(LoyaltyAccount.tenant_id == tenant_id, LoyaltyAccount.patient_id == patient_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def suspend(self, account_id: UUID, reason: str) -> LoyaltyAccount:
        async with _account_lock(account_id):
            account = await self._lock_account(account_id)
            account.is_suspended = True
            account.suspension_reason = reason
            await self._session.commit()
        logger.info("Suspended loyalty account", account_id=str(account_id), reason=reason)
        return account

    async def reinstate(self, account_id: UUID) -> LoyaltyAccount:
        async with _account_lock(account_id):
            account = await self._lock_account(account_id)
            account.is_suspended = False
            account.suspension_reason = None
            await self._session.commit()
        logger.info("Reinstated loyalty account", account_id=str(account_id))
        return account

    async def close_account(self, account_id: UUID, reason: str) -> LoyaltyAccount:
        """Close on patient request; history is retained and the account stops accepting mutations."""

        async with _account_lock(account_id):
            account = await self._lock_account(account_id)
            account.is_active = False
            account.closed_at = self._clock.now()
            account.closure_reason = reason
            await self._session.commit()
        logger.info("Closed loyalty account", account_id=str(account_id), reason=reason)
        return account

    # Balance mutations

    async def accrue(
        self,
        account_id: UUID,
        amount: int,
        source: LoyaltyAccrualSource,
        *,
        expiry_months: int | None = None,
        description: str | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LoyaltyTransaction:
        """Credit points, applying the current tier's accrual multiplier."""

        if amount <= 0:
            raise ValueError("Accrual amount must be positive")
        if expiry_months is not None and expiry_months <= 0:
            raise ValueError("expiry_months must be positive when provided")
        source = LoyaltyAccrualSource(source)

        async with _account_lock(account_id):
            replay = await self._find_by_idempotency_key(idempotency_key)
            if replay is not None:
                return replay

            try:
                account = await self._lock_account(account_id)
                self._ensure_open(account)
                policy = await self._policy_for(account.tenant_id)
                multiplier = policy.multiplier_for(account.tier)
                points = int((Decimal(amount) * multiplier).to_integral_value(rounding=ROUND_FLOOR))
                if points <= 0:
                    raise ValueError("Accrual amount rounds to zero points")
            except Exception as exc:
                await self._end_rejected(exc)
                raise

            try:
                now = self._clock.now()
                expiry_date = add_months(now, expiry_months) if expiry_months else None
                lot = self._open_lot(account, points, expires_at=expiry_date)
                transaction = self._append(
                    account,
                    LoyaltyTransactionType.ACCRUAL,
                    points,
                    source=source,
                    expiry_date=expiry_date,
                    description=description,
                    idempotency_key=idempotency_key,
                    lot=lot,
                    metadata={**(metadata or {}), "base_amount": amount, "multiplier": str(multiplier)},
                )
                self._recompute_tier(account, policy)
                await self._session.commit()
            except IntegrityError:
                await self._session.rollback()
                replay = await self._find_by_idempotency_key(idempotency_key)
                if replay is None:
                    raise
                return replay
            except Exception:
                await self._session.rollback()
                raise
        return transaction

    async def redeem(
        self,
        account_id: UUID,
        amount: int,
        *,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> LoyaltyTransaction:
        """Debit points oldest-expiry first; lapsed lots are expired before the balance check."""

        if amount <= 0:
            raise ValueError("Redemption amount must be positive")

        async with _account_lock(account_id):
            replay = await self._find_by_idempotency_key(idempotency_key)
            if replay is not None:
                return replay

            now = self._clock.now()
            try:
                account = await self._lock_account(account_id)
                self._ensure_open(account)
                if account.is_suspended:
                    self._store.record_rejection("suspended")
                    raise AccountSuspended(f"Loyalty account {account_id} is suspended", account_id=account_id)

                available = await self._available_after_expiry(account, now)
                if amount > available:
                    self._store.record_rejection("insufficient_balance")
                    raise InsufficientBalance(
                        f"Cannot redeem {amount} points; {available} available",
                        account_id=account_id,
                        requested=amount,
                        available=available,
                    )
            except Exception as exc:
                await self._end_rejected(exc)
                raise

            try:
                await self._expire_lots(account, now)
                await self._consume_lots(account, amount)
                transaction = self._append(
                    account,
                    LoyaltyTransactionType.REDEMPTION,
                    -amount,
                    description=description,
                    idempotency_key=idempotency_key,
                )
                self._recompute_tier(account, await self._policy_for(account.tenant_id))
                await self._session.commit()
            except Exception:
                await self._session.rollback()
                raise
        return transaction

    async def expire(self, account_id: UUID, as_of: datetime | None = None) -> list[LoyaltyTransaction]:
        """Emit one EXPIRY per lapsed lot, covering exactly its unconsumed remainder."""

        horizon = as_of or self._clock.now()
        async with _account_lock(account_id):
            try:
                account = await self._lock_account(account_id)
            except Exception as exc:
                await self._end_rejected(exc)
                raise

            try:
                transactions = await self._expire_lots(account, horizon)
                if transactions:
                    self._recompute_tier(account, await self._policy_for(account.tenant_id))
                await self._session.commit()
            except Exception:
                await self._session.rollback()
                raise
        return transactions

    async def adjust(
        self,
        account_id: UUID,
        amount: int,
        reason: str,
        *,
        idempotency_key: str | None = None,
    ) -> LoyaltyTransaction:
        """Manual correction; a negative balance is only allowed on suspended accounts."""

        if amount == 0:
            raise ValueError("Adjustments require a non-zero amount")
        if not reason or not reason.strip():
            raise ValueError("Adjustments require a reason")

        async with _account_lock(account_id):
            replay = await self._find_by_idempotency_key(idempotency_key)
            if replay is not None:
                return replay

            try:
                account = await self._lock_account(account_id)
                self._ensure_open(account)
                if amount < 0 and account.current_points + amount < 0 and not account.is_suspended:
                    self._store.record_rejection("negative_adjustment")
                    raise InsufficientBalance(
                        "Negative adjustment would overdraw an unsuspended account",
                        account_id=account_id,
                        requested=-amount,
                        available=account.current_points,
                    )
            except Exception as exc:
                await self._end_rejected(exc)
                raise

            try:
                lot = None
                if amount > 0:
                    lot = self._open_lot(account, amount, expires_at=None)
                else:
                    await self._consume_lots(account, min(-amount, max(account.current_points, 0)))

                transaction = self._append(
                    account,
                    LoyaltyTransactionType.ADJUSTMENT,
                    amount,
                    source=LoyaltyAccrualSource.ADJUSTMENT,
                    reason=reason.strip(),
                    description=reason.strip(),
                    idempotency_key=idempotency_key,
                    lot=lot,
                )
                self._recompute_tier(account, await self._policy_for(account.tenant_id))
                await self._session.commit()
            except Exception:
                await self._session.rollback()
                raise
        return transaction

    # Queries

    async def list_transactions(self, account_id: UUID) -> list[LoyaltyTransaction]:
        result = await self._session.execute(
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.account_id == account_id)
            .order_by(LoyaltyTransaction.sequence.asc())
        )
        return list(result.scalars().all())

    async def upcoming_expirations(self, account_id: UUID, *, within_days: int = 30) -> list[ExpiringPoints]:
        horizon = self._clock.now() + timedelta(days=within_days)
        lots = await self._open_lots(account_id)
        return [
            ExpiringPoints(lot_id=lot.id, points=lot.remaining, expires_at=ensure_aware(lot.expires_at))
            for lot in lots
            if lot.expires_at is not None and ensure_aware(lot.expires_at) <= horizon and lot.remaining > 0
        ]

    async def accounts_with_lapsed_points(self, as_of: datetime, *, limit: int = 500) -> list[UUID]:
        result = await self._session.execute(
            select(LoyaltyPointLot.account_id)
            .where(
                LoyaltyPointLot.status == LoyaltyPointLotStatus.OPEN,
                LoyaltyPointLot.expires_at.is_not(None),
                LoyaltyPointLot.expires_at <= as_of,
            )
            .distinct()
            .limit(limit)
        )
        return list(result.scalars().all())

    async def check_invariants(self, account_id: UUID) -> list[str]:
        """Return human-readable invariant violations for the account (empty when healthy)."""

        account = await self.get_account(account_id)
        problems: list[str] = []
        expected = (
            account.total_earned - account.total_redeemed - account.total_expired + account.total_adjusted
        )
        if account.current_points != expected:
            problems.append(f"current_points {account.current_points} != totals {expected}")
        if account.current_points < 0 and not account.is_suspended:
            problems.append("negative balance on unsuspended account")

        previous_after: int | None = None
        for transaction in await self.list_transactions(account_id):
            if transaction.balance_after != transaction.balance_before + transaction.amount:
                problems.append(f"transaction {transaction.sequence} does not balance")
            if previous_after is not None and transaction.balance_before != previous_after:
                problems.append(f"transaction {transaction.sequence} breaks the balance chain")
            previous_after = transaction.balance_after

        lot_total = sum(lot.remaining for lot in await self._open_lots(account_id))
        if lot_total != max(account.current_points, 0):
            problems.append(f"open lots hold {lot_total} points, balance is {account.current_points}")
        return problems

    # Internals

    async def _end_rejected(self, exc: BaseException) -> None:
        # Nothing has been written yet; committing keeps the caller's loaded objects usable.
        if isinstance(exc, (LoyaltyLedgerError, ValueError)):
            await self._session.commit()
        else:
            await self._session.rollback()

    async def _available_after_expiry(self, account: LoyaltyAccount, horizon: datetime) -> int:
        """Balance left once lots lapsed by ``horizon`` are expired, without writing anything."""

        horizon = ensure_aware(horizon)
        lapsed = sum(
            lot.remaining
            for lot in await self._open_lots(account.id)
            if lot.expires_at is not None and ensure_aware(lot.expires_at) <= horizon
        )
        balance = account.current_points or 0
        return balance - min(lapsed, max(balance, 0))

    async def _lock_account(self, account_id: UUID) -> LoyaltyAccount:
        result = await self._session.execute(
            select(LoyaltyAccount)
            .where(LoyaltyAccount.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise LoyaltyAccountNotFound(f"Loyalty account {account_id} not found", account_id=account_id)
        return account

    async def _policy_for(self, tenant_id: UUID) -> TierPolicy:
        if self._tier_policy is not None:
            return self._tier_policy
        if tenant_id not in self._policies:
            self._policies[tenant_id] = await load_tier_policy(self._session, tenant_id)
        return self._policies[tenant_id]

    async def _find_by_idempotency_key(self, idempotency_key: str | None) -> LoyaltyTransaction | None:
        if not idempotency_key:
            return None
        result = await self._session.execute(
            select(LoyaltyTransaction).where(LoyaltyTransaction.idempotency_key == idempotency_key)
        )
        transaction = result.scalar_one_or_none()
        if transaction is not None:
            logger.info(
                "Replayed loyalty transaction for idempotency key",
                transaction_id=str(transaction.id),
                idempotency_key=idempotency_key,
            )
        return transaction

    @staticmethod
    def _ensure_open(account: LoyaltyAccount) -> None:
        if not account.is_active:
            raise AccountInactive(f"Loyalty account {account.id} is closed", account_id=account.id)

    def _next_sequence(self, account: LoyaltyAccount) -> int:
        account.transaction_sequence = (account.transaction_sequence or 0) + 1
        return account.transaction_sequence

    def _open_lot(self, account: LoyaltyAccount, points: int, *, expires_at: datetime | None) -> LoyaltyPointLot:
        # A credit first covers any deficit left by a corrective adjustment.
        deficit = max(-account.current_points, 0)
        consumed = min(points, deficit)
        lot = LoyaltyPointLot(
            id=uuid4(),
            account_id=account.id,
            sequence=(account.transaction_sequence or 0) + 1,
            points=points,
            consumed_points=consumed,
            expires_at=expires_at,
            status=LoyaltyPointLotStatus.CONSUMED if consumed == points else LoyaltyPointLotStatus.OPEN,
        )
        self._session.add(lot)
        return lot

    async def _open_lots(self, account_id: UUID) -> list[LoyaltyPointLot]:
        result = await self._session.execute(
            select(LoyaltyPointLot)
            .where(
                LoyaltyPointLot.account_id == account_id,
                LoyaltyPointLot.status == LoyaltyPointLotStatus.OPEN,
            )
            .execution_options(populate_existing=True)
        )
        lots = list(result.scalars().all())
        lots.sort(key=_fifo_key)
        return lots

    async def _consume_lots(self, account: LoyaltyAccount, amount: int) -> None:
        remaining = amount
        for lot in await self._open_lots(account.id):
            if remaining <= 0:
                break
            take = min(lot.remaining, remaining)
            lot.consumed_points = (lot.consumed_points or 0) + take
            remaining -= take
            if lot.remaining == 0:
                lot.status = LoyaltyPointLotStatus.CONSUMED
        if remaining > 0:
            logger.warning(
                "Open lots did not cover debit",
                account_id=str(account.id),
                uncovered=remaining,
            )

    async def _expire_lots(self, account: LoyaltyAccount, horizon: datetime) -> list[LoyaltyTransaction]:
        horizon = ensure_aware(horizon)
        transactions: list[LoyaltyTransaction] = []
        for lot in await self._open_lots(account.id):
            if lot.expires_at is None or ensure_aware(lot.expires_at) > horizon:
                continue
            expire_amount = min(lot.remaining, max(account.current_points, 0))
            lot.consumed_points = (lot.consumed_points or 0) + expire_amount
            lot.status = LoyaltyPointLotStatus.EXPIRED
            if expire_amount <= 0:
                continue
            transactions.append(
                self._append(
                    account,
                    LoyaltyTransactionType.EXPIRY,
                    -expire_amount,
                    description="Loyalty points expiration",
                    lot=lot,
                    transaction_date=ensure_aware(lot.expires_at),
                )
            )
        return transactions

    def _append(
        self,
        account: LoyaltyAccount,
        transaction_type: LoyaltyTransactionType,
        amount: int,
        *,
        source: LoyaltyAccrualSource | None = None,
        expiry_date: datetime | None = None,
        description: str | None = None,
        reason: str | None = None,
        idempotency_key: str | None = None,
        lot: LoyaltyPointLot | None = None,
        metadata: dict[str, Any] | None = None,
        transaction_date: datetime | None = None,
    ) -> LoyaltyTransaction:
        balance_before = account.current_points or 0
        balance_after = balance_before + amount

        account.current_points = balance_after
        if transaction_type is LoyaltyTransactionType.ACCRUAL:
            account.total_earned = (account.total_earned or 0) + amount
        elif transaction_type is LoyaltyTransactionType.REDEMPTION:
            account.total_redeemed = (account.total_redeemed or 0) - amount
        elif transaction_type is LoyaltyTransactionType.EXPIRY:
            account.total_expired = (account.total_expired or 0) - amount
        else:
            account.total_adjusted = (account.total_adjusted or 0) + amount

        transaction = LoyaltyTransaction(
            account_id=account.id,
            sequence=self._next_sequence(account),
            transaction_type=transaction_type,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            source=source,
            expiry_date=expiry_date,
            transaction_date=transaction_date or self._clock.now(),
            description=description,
            reason=reason,
            idempotency_key=idempotency_key,
            lot_id=lot.id if lot is not None else None,
            metadata_json=metadata or {},
        )
        self._session.add(transaction)
        self._store.record_transaction(transaction_type.value, amount)
        logger.info(
            "Recorded loyalty transaction",
            account_id=str(account.id),
            transaction_type=transaction_type.value,
            amount=amount,
            balance_after=balance_after,
        )
        return transaction

    def _recompute_tier(self, account: LoyaltyAccount, policy: TierPolicy) -> None:
        qualifying = policy.qualifying_points(
            total_earned=account.total_earned or 0,
            current_points=account.current_points or 0,
        )
        new_tier = policy.tier_for(qualifying)
        if new_tier == account.tier:
            return
        previous = account.tier
        account.tier = new_tier
        account.tier_achieved_at = self._clock.now()
        self._store.record_tier_change(getattr(previous, "value", str(previous)), new_tier.value)
        logger.info(
            "Loyalty tier changed",
            account_id=str(account.id),
            previous_tier=getattr(previous, "value", str(previous)),
            tier=new_tier.value,
        )


def _fifo_key(lot: LoyaltyPointLot) -> tuple[bool, float, int]:
    expires_at = ensure_aware(lot.expires_at)
    return (expires_at is None, expires_at.timestamp() if expires_at else 0.0, lot.sequence)


__all__ = ["ExpiringPoints", "LoyaltyLedger"]
