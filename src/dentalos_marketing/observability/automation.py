from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class AutomationSnapshot:
    executions: Dict[str, int]
    actions: Dict[str, Dict[str, int]]
    dispatch: Dict[str, int]
    last_durations_ms: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "executions": dict(self.executions),
            "actions": {key: dict(value) for key, value in self.actions.items()},
            "dispatch": dict(self.dispatch),
            "last_durations_ms": dict(self.last_durations_ms),
        }


class AutomationObservabilityStore:
    """Thread-safe counters for trigger dispatch, executions and action attempts."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._executions: Dict[str, int] = defaultdict(int)
        self._action_outcomes: Dict[str, int] = defaultdict(int)
        self._action_retries: Dict[str, int] = defaultdict(int)
        self._action_timeouts: Dict[str, int] = defaultdict(int)
        self._dispatch: Dict[str, int] = defaultdict(int)
        self._durations: Dict[str, int] = {}

    def record_trigger(self, trigger_type: str, matched_rules: int) -> None:
        with self._lock:
            self._dispatch["triggers"] += 1
            self._dispatch[f"trigger:{trigger_type}"] += 1
            self._dispatch["matched_rules"] += matched_rules

    def record_duplicate(self) -> None:
        with self._lock:
            self._dispatch["duplicates"] += 1

    def record_execution(self, status: str, *, rule_id: str | None = None, duration_ms: int | None = None) -> None:
        with self._lock:
            self._executions[status] += 1
            if rule_id and duration_ms is not None:
                self._durations[rule_id] = duration_ms

    def record_action(self, action_type: str, status: str) -> None:
        with self._lock:
            self._action_outcomes[f"{action_type}:{status}"] += 1

    def record_retry(self, action_type: str) -> None:
        with self._lock:
            self._action_retries[action_type] += 1

    def record_timeout(self, action_type: str) -> None:
        with self._lock:
            self._action_timeouts[action_type] += 1

    def snapshot(self) -> AutomationSnapshot:
        with self._lock:
            return AutomationSnapshot(
                executions=dict(self._executions),
                actions={
                    "outcomes": dict(self._action_outcomes),
                    "retries": dict(self._action_retries),
                    "timeouts": dict(self._action_timeouts),
                },
                dispatch=dict(self._dispatch),
                last_durations_ms=dict(self._durations),
            )

    def reset(self) -> None:
        with self._lock:
            self._executions.clear()
            self._action_outcomes.clear()
            self._action_retries.clear()
            self._action_timeouts.clear()
            self._dispatch.clear()
            self._durations.clear()


_STORE = AutomationObservabilityStore()


def get_automation_store() -> AutomationObservabilityStore:
    return _STORE


__all__ = ["AutomationObservabilityStore", "AutomationSnapshot", "get_automation_store"]
