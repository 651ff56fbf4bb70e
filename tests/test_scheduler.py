from pathlib import Path

import pytest

from dentalos_marketing.observability.scheduler import get_scheduler_store
from dentalos_marketing.scheduling.config import JobDefinition, ScheduleConfig, load_job_definitions
from dentalos_marketing.scheduling.runner import MarketingJobScheduler


def _job(job_id: str, **overrides) -> JobDefinition:
    values = {
        "id": job_id,
        "task": f"tests.{job_id}",
        "cron": "* * * * *",
        "kwargs": {},
        "max_attempts": 1,
        "base_backoff_seconds": 0.0,
        "backoff_multiplier": 1.0,
        "max_backoff_seconds": 0.0,
        "jitter_seconds": 0.0,
    }
    values.update(overrides)
    return JobDefinition(**values)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_scheduler_retries_with_capped_backoff(tmp_path: Path) -> None:
    store = get_scheduler_store()
    sleep = RecordingSleep()
    scheduler = MarketingJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml", sleep=sleep)

    attempts = 0

    async def flaky_job(*, session_factory, limit: int) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise RuntimeError("boom")
        return {"limit": limit}

    job = _job(
        "flaky",
        kwargs={"limit": 5},
        max_attempts=3,
        base_backoff_seconds=10.0,
        backoff_multiplier=2.0,
        max_backoff_seconds=15.0,
    )

    result = await scheduler._wrap_callable(flaky_job, job)()

    assert result == {"limit": 5}
    assert sleep.delays == [10.0, 15.0]
    snapshot = store.snapshot()
    assert snapshot.totals == {"runs": 1, "retries": 2, "success": 1}
    job_snapshot = snapshot.jobs["flaky"]
    assert job_snapshot["last_attempts"] == 3
    assert job_snapshot["last_error"] is None
    assert job_snapshot["last_success_at"] is not None


@pytest.mark.asyncio
async def test_scheduler_backoff_adds_bounded_jitter(tmp_path: Path) -> None:
    sleep = RecordingSleep()
    scheduler = MarketingJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml", sleep=sleep)

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = _job("jittery", max_attempts=2, base_backoff_seconds=4.0, max_backoff_seconds=60.0, jitter_seconds=2.0)
    await scheduler._wrap_callable(failing_job, job)()

    assert len(sleep.delays) == 1
    assert 4.0 <= sleep.delays[0] <= 6.0


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = MarketingJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = _job("failure", max_attempts=2)
    assert await scheduler._wrap_callable(failing_job, job)() is None

    snapshot = store.snapshot()
    assert snapshot.totals["failures"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs["failure"]
    assert job_snapshot["last_error"] == "RuntimeError: boom"
    assert job_snapshot["last_error_at"] is not None
    assert job_snapshot["last_attempts"] == 2


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path) -> None:
    scheduler = MarketingJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("health")
    await scheduler._wrap_callable(successful_job, job)()
    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job, _job("disabled", enabled=False)])

    health = scheduler.health()
    assert health["running"] is False
    assert health["configured_jobs"] == 2
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["counters"]["success"] == 1
    assert health["jobs"][1]["enabled"] is False
    assert health["jobs"][1]["metrics"] is None


def test_load_job_definitions_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "Europe/Berlin"

        [jobs.sample]
        task = "module.task"
        cron = "*/5 * * * *"
        kwargs = { batch_size = 50 }
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5

        [jobs.off]
        task = "module.other"
        cron = "0 * * * *"
        enabled = false

        [jobs.broken]
        cron = "0 * * * *"
        """
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "Europe/Berlin"
    assert [job.id for job in config.jobs] == ["sample", "off"]
    assert [job.id for job in config.enabled_jobs] == ["sample"]
    job = config.jobs[0]
    assert job.kwargs == {"batch_size": 50}
    assert job.max_attempts == 5
    assert job.base_backoff_seconds == 2.0
    assert job.backoff_multiplier == 3.0
    assert job.max_backoff_seconds == 30.0
    assert job.jitter_seconds == 1.5


def test_load_job_definitions_requires_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


@pytest.mark.asyncio
async def test_bundled_schedule_resolves_job_callables(tmp_path: Path) -> None:
    config_path = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"
    scheduler = MarketingJobScheduler(session_factory=lambda: None, config_path=config_path)

    config = scheduler.load()
    assert {job.id for job in config.enabled_jobs} == {
        "loyalty_expiry_sweep",
        "loyalty_expiring_points",
        "segment_refresh",
    }

    with pytest.raises(KeyError):
        await scheduler.run_job("unknown")
