"""Jobs that expire lapsed loyalty points and announce upcoming expirations."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict

from loguru import logger
from sqlalchemy import select

from dentalos_marketing.core.clock import Clock, SystemClock
from dentalos_marketing.db.session import SessionFactory, open_session
from dentalos_marketing.models.automation import AutomationTriggerType
from dentalos_marketing.models.loyalty import LoyaltyAccount, LoyaltyPointLot, LoyaltyPointLotStatus
from dentalos_marketing.schemas.automation import TriggerEvent
from dentalos_marketing.services.automation.engine import AutomationEngine
from dentalos_marketing.services.errors import LoyaltyLedgerError
from dentalos_marketing.services.loyalty import LoyaltyLedger


async def run_loyalty_expiry_sweep(
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
    batch_size: int = 500,
) -> Dict[str, Any]:
    """Expire every lapsed point lot; one account failing does not stop the sweep."""

    clock = clock or SystemClock()
    session = await open_session(session_factory)

    async with session as managed_session:
        ledger = LoyaltyLedger(managed_session, clock=clock)
        now = clock.now()
        account_ids = await ledger.accounts_with_lapsed_points(now, limit=batch_size)

        expired_transactions = 0
        expired_points = 0
        failed = 0
        for account_id in account_ids:
            try:
                transactions = await ledger.expire(account_id, now)
            except LoyaltyLedgerError as exc:
                failed += 1
                logger.warning("Loyalty expiry failed for account", account_id=str(account_id), error=str(exc))
                continue
            expired_transactions += len(transactions)
            expired_points += sum(-transaction.amount for transaction in transactions)

        summary = {
            "accounts_scanned": len(account_ids),
            "expired_transactions": expired_transactions,
            "expired_points": expired_points,
            "failed": failed,
        }
        logger.bind(summary=summary).info("Loyalty expiry sweep completed")
        return summary


async def dispatch_points_expiring_triggers(
    *,
    session_factory: SessionFactory,
    clock: Clock | None = None,
    within_days: int = 30,
    engine: AutomationEngine | None = None,
) -> Dict[str, Any]:
    """Emit one ``loyalty_points_expiring`` trigger per patient and day with points about to lapse."""

    clock = clock or SystemClock()
    now = clock.now()
    horizon = now + timedelta(days=within_days)

    session = await open_session(session_factory)
    async with session as managed_session:
        result = await managed_session.execute(
            select(
                LoyaltyAccount.id,
                LoyaltyAccount.tenant_id,
                LoyaltyAccount.patient_id,
                LoyaltyPointLot.points,
                LoyaltyPointLot.consumed_points,
                LoyaltyPointLot.expires_at,
            )
            .join(LoyaltyPointLot, LoyaltyPointLot.account_id == LoyaltyAccount.id)
            .where(
                LoyaltyAccount.is_active.is_(True),
                LoyaltyPointLot.status == LoyaltyPointLotStatus.OPEN,
                LoyaltyPointLot.expires_at.is_not(None),
                LoyaltyPointLot.expires_at > now,
                LoyaltyPointLot.expires_at <= horizon,
            )
        )
        expiring: dict[Any, dict[str, Any]] = {}
        for row in result.all():
            entry = expiring.setdefault(
                row.id,
                {"tenant_id": row.tenant_id, "patient_id": row.patient_id, "points": 0, "earliest": row.expires_at},
            )
            entry["points"] += row.points - (row.consumed_points or 0)
            entry["earliest"] = min(entry["earliest"], row.expires_at)

    runner = engine or AutomationEngine(session_factory, clock=clock)
    dispatched = 0
    for account_id, entry in expiring.items():
        if entry["points"] <= 0:
            continue
        event = TriggerEvent(
            event_id=f"loyalty-expiring:{account_id}:{now.date().isoformat()}",
            trigger_type=AutomationTriggerType.LOYALTY_POINTS_EXPIRING,
            tenant_id=entry["tenant_id"],
            patient_id=entry["patient_id"],
            occurred_at=now,
            payload={"points_expiring": entry["points"], "expires_at": entry["earliest"]},
        )
        await runner.handle_trigger(event)
        dispatched += 1

    summary = {"accounts_with_expiring_points": len(expiring), "triggers_dispatched": dispatched}
    logger.bind(summary=summary).info("Loyalty expiring-points triggers dispatched")
    return summary


__all__ = ["dispatch_points_expiring_triggers", "run_loyalty_expiry_sweep"]
