"""Background workers supporting async processing."""

from .automation import AutomationTriggerWorker

__all__ = ["AutomationTriggerWorker"]
