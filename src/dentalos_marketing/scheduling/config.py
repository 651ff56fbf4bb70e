"""Load recurring marketing job schedules from TOML."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 0.0


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]

    @property
    def enabled_jobs(self) -> list[JobDefinition]:
        return [job for job in self.jobs if job.enabled]


def _job_from_table(key: str, table: dict[str, Any]) -> JobDefinition | None:
    task = table.get("task")
    cron = table.get("cron")
    if not isinstance(task, str) or not isinstance(cron, str):
        return None
    kwargs = table.get("kwargs")
    return JobDefinition(
        id=str(table.get("id") or key),
        task=task,
        cron=cron,
        kwargs=kwargs if isinstance(kwargs, dict) else {},
        enabled=bool(table.get("enabled", True)),
        max_attempts=max(int(table.get("max_attempts", 1) or 1), 1),
        base_backoff_seconds=max(float(table.get("base_backoff_seconds", 5.0) or 0), 0.0),
        backoff_multiplier=max(float(table.get("backoff_multiplier", 2.0) or 1), 1.0),
        max_backoff_seconds=max(float(table.get("max_backoff_seconds", 60.0) or 0), 0.0),
        jitter_seconds=max(float(table.get("jitter_seconds", 0.0) or 0), 0.0),
    )


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Parse ``[jobs.<id>]`` tables; entries without a task path or cron are ignored."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    jobs: list[JobDefinition] = []
    for key, table in (data.get("jobs") or {}).items():
        if not isinstance(table, dict):
            continue
        job = _job_from_table(key, table)
        if job is not None:
            jobs.append(job)
    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions"]
