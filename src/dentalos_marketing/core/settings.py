from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "dentalos-marketing"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./dentalos_marketing.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "marketing-default"

    # Automation engine
    automation_task_queue: str = "marketing-automation"
    automation_worker_enabled: bool = False
    automation_worker_concurrency: int = 4
    automation_action_timeout_seconds: float = 30.0
    automation_retry_backoff: Literal["linear", "exponential"] = "linear"
    automation_max_retry_delay_seconds: float = 300.0
    automation_abort_inflight_on_disable: bool = False
    automation_webhook_timeout_seconds: float = 10.0
    automation_webhook_allowed_hosts: Annotated[list[str], NoDecode] = Field(default_factory=list)

    @field_validator("automation_webhook_allowed_hosts", mode="before")
    @classmethod
    def _parse_allowed_hosts(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return []

    # Segmentation
    segment_rule_max_depth: int = 3
    segment_default_refresh_interval_seconds: int = 3600
    patient_attributes_url: str | None = None
    patient_attributes_api_key: str | None = None
    patient_attributes_timeout_seconds: float = 10.0

    # Loyalty
    loyalty_tier_basis: Literal["lifetime", "current"] = "lifetime"
    loyalty_default_expiry_months: int | None = 12

    # Scheduler
    scheduler_enabled: bool = False
    schedule_path: str = "config/schedules.toml"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
