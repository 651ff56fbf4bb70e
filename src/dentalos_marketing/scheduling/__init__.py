"""Scheduling utilities for recurring marketing jobs."""

from .config import JobDefinition, ScheduleConfig, load_job_definitions
from .runner import MarketingJobScheduler

__all__ = ["JobDefinition", "MarketingJobScheduler", "ScheduleConfig", "load_job_definitions"]
