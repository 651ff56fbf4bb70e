from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    transactions: Dict[str, int]
    points: Dict[str, int]
    tier_changes: Dict[str, int]
    rejections: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "transactions": dict(self.transactions),
            "points": dict(self.points),
            "tier_changes": dict(self.tier_changes),
            "rejections": dict(self.rejections),
        }


class LoyaltyObservabilityStore:
    """Collect ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._transactions: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._tier_changes: Dict[str, int] = defaultdict(int)
        self._rejections: Dict[str, int] = defaultdict(int)

    def record_transaction(self, transaction_type: str, amount: int) -> None:
        with self._lock:
            self._transactions[transaction_type] += 1
            self._points[transaction_type] += amount

    def record_tier_change(self, previous: str, current: str) -> None:
        with self._lock:
            self._tier_changes[f"{previous}->{current}"] += 1

    def record_rejection(self, reason: str) -> None:
        with self._lock:
            self._rejections[reason] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                transactions=dict(self._transactions),
                points=dict(self._points),
                tier_changes=dict(self._tier_changes),
                rejections=dict(self._rejections),
            )

    def reset(self) -> None:
        with self._lock:
            self._transactions.clear()
            self._points.clear()
            self._tier_changes.clear()
            self._rejections.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
